"""Shared pytest fixtures for Ecosystem tests."""
import os

# Settings are read once and cached; fix the environment before any import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["CLOUD_SQL_USE_UNIX_SOCKET"] = "false"
os.environ["EMBEDDING_DIMENSION"] = "8"
os.environ["HUGGINGFACE_API_KEY"] = "hf-test-key"
os.environ["OPENAI_API_KEY"] = "sk-test-key"
os.environ["PROVIDER_BACKOFF_BASE"] = "0"
os.environ["REDIS_URL"] = ""

import math
import uuid

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ecosystem.config import get_settings
from ecosystem.database import Base
from ecosystem.models import Profile, User

DIMENSION = 8


def unit_vector(*weights: float) -> list[float]:
    """Normalised 8-d vector from up to 8 leading weights."""
    raw = list(weights) + [0.0] * (DIMENSION - len(weights))
    norm = math.sqrt(sum(v * v for v in raw)) or 1.0
    return [v / norm for v in raw]


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def sample_user_id():
    return str(uuid.uuid4())


@pytest.fixture
def sample_user_id_b():
    return str(uuid.uuid4())


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db_session):
    """Factory: ``await make_user(strengths=[...], onboarded=True)``."""
    counter = {"n": 0}

    async def _make(onboarded: bool = True, is_active: bool = True, **profile_fields) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}-{uuid.uuid4().hex[:6]}@example.com",
            display_name=f"User {counter['n']}",
            onboarding_completed=onboarded,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.flush()
        if profile_fields:
            profile = Profile(
                user_id=user.id,
                strengths=profile_fields.pop("strengths", []),
                needs=profile_fields.pop("needs", []),
                goal_categories=profile_fields.pop("goal_categories", []),
                shared_values=profile_fields.pop("shared_values", []),
                connection_preferences=profile_fields.pop("connection_preferences", []),
                **profile_fields,
            )
            db_session.add(profile)
            await db_session.flush()
        return user

    return _make


@pytest.fixture
def js_react_profile():
    """Frontend developer looking for backend help."""
    return {
        "strengths": ["JavaScript", "React"],
        "needs": ["Python", "backend architecture"],
        "goal_categories": ["launch a product"],
        "shared_values": ["craftsmanship"],
        "industry": "software",
    }


@pytest.fixture
def python_profile():
    """Backend developer looking for frontend help."""
    return {
        "strengths": ["Python", "Django"],
        "needs": ["React"],
        "goal_categories": ["launch a product"],
        "shared_values": ["craftsmanship"],
        "industry": "software",
    }
