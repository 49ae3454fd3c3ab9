from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, ForeignKey, case
from sqlalchemy.orm import relationship
from lifestream.database import Base, enum_column, utcnow
import enum


class RequestStatus(str, enum.Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = (RequestStatus.FULFILLED, RequestStatus.CANCELLED, RequestStatus.EXPIRED)


class Urgency(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Dispatch priority: lower rank is served first
URGENCY_RANK = {
    Urgency.CRITICAL: 1,
    Urgency.HIGH: 2,
    Urgency.MEDIUM: 3,
    Urgency.LOW: 4,
}


class BloodRequest(Base):
    __tablename__ = "blood_requests"

    id = Column(Integer, primary_key=True, index=True)
    requester_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_name = Column(String, nullable=False)
    blood_type = Column(String(8), nullable=False, index=True)
    units_needed = Column(Integer, nullable=False)
    hospital = Column(String, nullable=True)
    urgency = Column(enum_column(Urgency), nullable=False, default=Urgency.MEDIUM)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    additional_notes = Column(Text, nullable=True)
    status = Column(enum_column(RequestStatus), nullable=False, default=RequestStatus.ACTIVE, index=True)
    is_emergency = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    # Relationships
    requester = relationship("User", lazy="joined")
    responses = relationship("DonorResponse", back_populates="request", cascade="all, delete-orphan")

    @property
    def requester_name(self) -> str | None:
        return self.requester.name if self.requester is not None else None


def urgency_rank_expression():
    """SQL expression ordering critical first, for ORDER BY."""
    return case(
        {urgency: rank for urgency, rank in URGENCY_RANK.items()},
        value=BloodRequest.urgency,
        else_=len(URGENCY_RANK) + 1,
    )
