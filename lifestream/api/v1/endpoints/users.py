from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.api.deps import get_connection_manager, get_current_identity, get_db
from lifestream.realtime import notifications
from lifestream.realtime.manager import ConnectionManager
from lifestream.schemas.user import LocationUpdate, UserProfile
from lifestream.services.identity import Identity
from lifestream.services.user_service import user_service

router = APIRouter()


@router.get("/me", response_model=UserProfile)
async def read_current_user(
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    """Get current user information."""
    return await user_service.get_profile(db, current_user)


@router.post("/location", response_model=UserProfile)
async def update_location(
    location: LocationUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Store the caller's last known location and share it with connected sessions."""
    user = await user_service.update_location(db, current_user, location.latitude, location.longitude)
    await notifications.notify_location(
        manager, current_user.id, location.latitude, location.longitude, user.location_updated_at
    )
    return user
