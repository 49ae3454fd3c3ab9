from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import ExpiredSignatureError, JWTError, jwt
from lifestream.core.config import settings
from lifestream.core.exceptions import (
    ExpiredCredentialError,
    InvalidCredentialError,
    MissingCredentialError,
)
import logging

logger = logging.getLogger(__name__)


def create_access_token(subject, expires_delta: Optional[timedelta] = None, extra_claims: Optional[dict] = None) -> str:
    """Create a JWT access token for the given user id."""
    now = datetime.now(timezone.utc)
    if expires_delta is not None:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = dict(extra_claims or {})
    to_encode.update({
        "sub": str(subject),
        "exp": expire,
        "iat": now,
        "iss": settings.APP_NAME,
        "aud": settings.APP_NAME
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: Optional[str]) -> dict:
    """Verify and decode a JWT access token.

    Raises MissingCredentialError, ExpiredCredentialError or
    InvalidCredentialError; never returns a partially verified payload.
    """
    if not token or not token.strip():
        raise MissingCredentialError()
    try:
        payload = jwt.decode(
            token.strip(),
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.APP_NAME,
            issuer=settings.APP_NAME
        )
    except ExpiredSignatureError:
        raise ExpiredCredentialError()
    except JWTError as e:
        logger.warning(f"Token verification failed: {e}")
        raise InvalidCredentialError()

    if not payload.get("sub"):
        raise InvalidCredentialError("Token has no subject")
    return payload


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredentialError("Authorization header must use the Bearer scheme")
    return token.strip()
