from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float
from lifestream.database import Base, enum_column, utcnow
import enum

class UserRole(str, enum.Enum):
    DONOR = "donor"
    RECIPIENT = "recipient"
    BOTH = "both"

DONOR_ROLES = (UserRole.DONOR, UserRole.BOTH)

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(enum_column(UserRole), nullable=False, default=UserRole.DONOR)
    blood_type = Column(String(8), nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    @property
    def can_donate(self) -> bool:
        return self.role in DONOR_ROLES
