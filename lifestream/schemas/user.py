from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from lifestream.models.user import UserRole


class UserProfile(BaseModel):
    id: int
    email: str
    name: str
    phone: Optional[str] = None
    role: UserRole
    blood_type: Optional[str] = None
    is_verified: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
