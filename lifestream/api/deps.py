from typing import AsyncGenerator, Optional
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.realtime.manager import ConnectionManager
from lifestream.services.identity import Identity, authenticate

# auto_error=False so a missing header is reported through our own error payload
security = HTTPBearer(auto_error=False)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession from the application's session factory."""
    async with request.app.state.session_factory() as session:
        yield session


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Identity:
    """Get the authenticated caller from the bearer token."""
    return await authenticate(credentials.credentials if credentials else None, db)


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager
