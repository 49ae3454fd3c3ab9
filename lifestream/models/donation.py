from sqlalchemy import Column, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from lifestream.database import Base, enum_column, utcnow
import enum


class DonationStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Donation(Base):
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True)
    # One donation per request, created with the donor selection
    request_id = Column(Integer, ForeignKey("blood_requests.id", ondelete="CASCADE"), nullable=False, unique=True)
    donor_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(enum_column(DonationStatus), nullable=False, default=DonationStatus.SCHEDULED)
    units_donated = Column(Integer, nullable=True)
    donation_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    request = relationship("BloodRequest", lazy="joined")

    @property
    def patient_name(self) -> str | None:
        return self.request.patient_name if self.request is not None else None

    @property
    def hospital(self) -> str | None:
        return self.request.hospital if self.request is not None else None

    @property
    def blood_type(self) -> str | None:
        return self.request.blood_type if self.request is not None else None
