from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.core.exceptions import UnknownIdentityError
from lifestream.database import utcnow
from lifestream.models.user import User
from lifestream.services.identity import Identity
from lifestream.services.persistence import reading, unit_of_work
import logging

logger = logging.getLogger(__name__)


class UserService:
    """Profile reads and last-known-location writes."""

    @staticmethod
    async def get_profile(db: AsyncSession, user: Identity) -> User:
        async with reading("load user profile"):
            profile = await db.get(User, user.id, populate_existing=True)
        if profile is None or not profile.is_active:
            raise UnknownIdentityError()
        return profile

    @staticmethod
    async def update_location(db: AsyncSession, user: Identity, latitude: float, longitude: float) -> User:
        """Store the user's last known location. Ranges are checked by the caller's schema."""
        async with unit_of_work(db, "update location"):
            profile = await db.get(User, user.id)
            if profile is None:
                raise UnknownIdentityError()
            profile.latitude = latitude
            profile.longitude = longitude
            profile.location_updated_at = utcnow()
        logger.debug(f"Location updated for user {user.id}")
        return profile


user_service = UserService()
