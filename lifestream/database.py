"""Async database engine and session for PostgreSQL."""
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy import Enum
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from lifestream.core.config import settings

# asyncpg does not support libpq params like sslmode; strip them and use connect_args for SSL
ASYNCPG_UNSUPPORTED_QUERY_KEYS = frozenset({"sslmode", "ssl_mode"})

# Primary keys are 32-bit Integer columns on PostgreSQL
MAX_RECORD_ID = 2**31 - 1


def _async_engine_url_and_connect_args(raw: str):
    if not raw.startswith("postgresql"):
        return raw, {}
    parsed = urlparse(raw)
    query = parse_qs(parsed.query, keep_blank_values=True)
    sslmode = None
    for key in list(query.keys()):
        if key.lower() in ASYNCPG_UNSUPPORTED_QUERY_KEYS:
            vals = query.pop(key)
            if vals and sslmode is None:
                sslmode = vals[0]
    new_query = urlencode(query, doseq=True)
    url = urlunparse(parsed._replace(query=new_query))
    connect_args = {}
    if sslmode and str(sslmode).lower() in ("require", "verify-ca", "verify-full"):
        connect_args["ssl"] = True
    return url, connect_args


def get_engine(url: str | None = None) -> AsyncEngine:
    url, connect_args = _async_engine_url_and_connect_args(url or settings.database_url_async)
    kwargs = {"echo": False}
    if connect_args:
        kwargs["connect_args"] = connect_args
    if url.startswith("postgresql"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = get_engine()
async_session_factory = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


def enum_column(enum_cls) -> Enum:
    """Store a str-Enum by its value ("active"), not its member name."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables if they do not exist."""
    from lifestream import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
