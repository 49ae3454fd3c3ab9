"""Resolve a bearer credential to the user it identifies."""
from dataclasses import dataclass
from typing import Optional
from fastapi import WebSocket
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.core.exceptions import InvalidCredentialError, PersistenceError, UnknownIdentityError
from lifestream.core.security import decode_access_token, parse_bearer
from lifestream.database import MAX_RECORD_ID
from lifestream.models.user import DONOR_ROLES, User, UserRole
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    name: str
    role: UserRole
    blood_type: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=UserRole(user.role),
            blood_type=user.blood_type,
        )

    @property
    def can_donate(self) -> bool:
        return self.role in DONOR_ROLES


async def authenticate(credential: Optional[str], db: AsyncSession) -> Identity:
    """Verify the credential and load the active user behind it."""
    payload = decode_access_token(credential)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidCredentialError("Token subject is not a user id")
    if not 0 < user_id <= MAX_RECORD_ID:
        raise UnknownIdentityError()

    try:
        user = await db.get(User, user_id)
    except SQLAlchemyError as e:
        logger.error(f"Identity lookup failed for user {user_id}: {e}")
        raise PersistenceError()

    if user is None or not user.is_active:
        raise UnknownIdentityError()
    return Identity.from_user(user)


def socket_credential(websocket: WebSocket) -> Optional[str]:
    """The handshake credential: ``?token=`` first, then the Authorization header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    return parse_bearer(websocket.headers.get("authorization"))
