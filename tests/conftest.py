"""
Shared pytest fixtures: a file-backed SQLite database per test, seeded users,
bearer tokens, and an HTTP client bound to the app with its session overridden.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date
from typing import Any

# Settings are read at import time; configure before importing the app.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest-mediflow.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENV"] = "test"
os.environ["REMINDERS_ENABLED"] = "false"
os.environ["SMTP_HOST"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import app.models  # noqa: F401 - register tables
from app.core.db import get_session
from app.core.security import create_access_token
from app.main import app as fastapi_app
from app.models.appointment import Appointment, AppointmentStatus
from app.models.user import Role, User
from app.services.appointment_service import scheduled_at_for


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite on disk so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mediflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


# ============================================================================
# DATA FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def users(session_maker) -> dict[str, User]:
    seeded = {
        "patient": User(name="Alice Moreau", email="alice@example.com", role=Role.patient.value, phone="+15550001111"),
        "other_patient": User(name="Bruno Diaz", email="bruno@example.com", role=Role.patient.value),
        "doctor": User(name="Grace Okafor", email="grace@example.com", role=Role.doctor.value, specialization="Cardiology"),
        "other_doctor": User(name="Ivan Petrov", email="ivan@example.com", role=Role.doctor.value),
        "receptionist": User(name="Rita Lane", email="rita@example.com", role=Role.receptionist.value),
        "admin": User(name="Adam Stone", email="adam@example.com", role=Role.admin.value),
    }
    async with session_maker() as s:
        s.add_all(seeded.values())
        await s.commit()
    return seeded


@pytest.fixture
def visit_date() -> date:
    return date(2030, 1, 15)


@pytest.fixture
def make_appointment(
    session_maker, users, visit_date
) -> Callable[..., Awaitable[Appointment]]:
    """Insert an appointment row directly, bypassing the booking checks."""

    async def _make(**overrides: Any) -> Appointment:
        d = overrides.pop("date", visit_date)
        t = overrides.pop("time", "10:00")
        fields: dict[str, Any] = {
            "patient_id": users["patient"].id,
            "doctor_id": users["doctor"].id,
            "date": d,
            "time": t,
            "scheduled_at": scheduled_at_for(d, t),
            "status": AppointmentStatus.pending.value,
        }
        fields.update(overrides)
        appointment = Appointment(**fields)
        async with session_maker() as s:
            s.add(appointment)
            await s.commit()
        return appointment

    return _make


# ============================================================================
# HTTP FIXTURES
# ============================================================================


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest_asyncio.fixture
async def client(session_maker) -> AsyncGenerator[AsyncClient, None]:
    async def _get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_session] = _get_session
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as ac:
        yield ac
    fastapi_app.dependency_overrides.clear()
