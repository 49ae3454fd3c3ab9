"""Pytest configuration and fixtures."""
import os

# Settings are read at import time
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "true"
os.environ["AUTO_CREATE_TABLES"] = "true"

import asyncio
import itertools
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from lifestream.core.security import create_access_token
from lifestream.database import init_db, make_session_factory
from lifestream.main import create_app
from lifestream.models.user import User, UserRole
from lifestream.schemas.blood_request import BloodRequestCreate
from lifestream.services.identity import Identity


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database per test."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lifestream.db'}", poolclass=NullPool)
    asyncio.run(init_db(eng))
    yield eng
    asyncio.run(eng.dispose())


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def call(session_factory):
    """Run ``fn(db, *args)`` on its own session and return the result."""
    def _call(fn, *args, **kwargs):
        async def _run():
            async with session_factory() as db:
                return await fn(db, *args, **kwargs)
        return asyncio.run(_run())
    return _call


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    def _make(name=None, role=UserRole.DONOR, blood_type="O+", is_active=True) -> Identity:
        n = next(counter)

        async def _create():
            async with session_factory() as db:
                user = User(
                    email=f"user{n}@example.com",
                    name=name or f"User {n}",
                    role=role,
                    blood_type=blood_type,
                    is_active=is_active,
                )
                db.add(user)
                await db.commit()
                return Identity.from_user(user)

        return asyncio.run(_create())
    return _make


@pytest.fixture
def requester(make_user):
    return make_user(name="Alice Requester", role=UserRole.RECIPIENT, blood_type="A+")


@pytest.fixture
def donor(make_user):
    return make_user(name="Bob Donor", role=UserRole.DONOR, blood_type="O+")


def token_for(user: Identity, **kwargs) -> str:
    return create_access_token(user.id, **kwargs)


def auth_headers(user: Identity) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


def expired_token(user: Identity) -> str:
    return create_access_token(user.id, expires_delta=timedelta(minutes=-5))


def request_data(**overrides) -> BloodRequestCreate:
    data = {
        "patient_name": "Jane Patient",
        "blood_type": "O+",
        "units_needed": 2,
        "hospital": "City General",
        "urgency": "high",
        "location": {"latitude": 12.97, "longitude": 77.59},
    }
    data.update(overrides)
    return BloodRequestCreate(**data)


@pytest.fixture
def app(engine):
    return create_app(engine)


@pytest.fixture
def client(app):
    # One portal for HTTP and every websocket so they share the event loop
    with TestClient(app) as test_client:
        yield test_client
