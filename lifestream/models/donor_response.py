from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from lifestream.database import Base, enum_column, utcnow
import enum


class ResponseStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DonorResponse(Base):
    __tablename__ = "donor_responses"
    __table_args__ = (
        # A donor responds at most once per request; the store is the arbiter
        UniqueConstraint("request_id", "donor_id", name="uq_donor_responses_request_donor"),
        # At most one accepted response per request
        Index(
            "uq_donor_responses_one_accepted",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("blood_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    donor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    message = Column(Text, nullable=True)
    availability = Column(DateTime(timezone=True), nullable=True)
    status = Column(enum_column(ResponseStatus), nullable=False, default=ResponseStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    # Relationships
    request = relationship("BloodRequest", back_populates="responses")
    donor = relationship("User", lazy="joined")

    @property
    def donor_name(self) -> str | None:
        return self.donor.name if self.donor is not None else None
