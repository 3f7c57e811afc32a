"""Pytest configuration and shared fixtures."""

import os

# Point the app at an in-memory database BEFORE importing it
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("POLICY_MIGRATION_PHASE", "migration")

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.api import deps
from app.compat.config import PHASE_DEFAULTS
from app.core.constants import MigrationPhase
from app.db.models import Base
from app.db.session import build_session_factory
from app.main import app
from app.repositories.clients import create_client
from app.repositories.legacy_policies import insert_legacy

TODAY = date(2025, 6, 15)

CLIENT_IDS = ("client-a", "client-b", "client-c")


def phase_config(phase: MigrationPhase | str, **batch_overrides):
    """Phase defaults, optionally with batch knobs overridden."""
    config = PHASE_DEFAULTS[MigrationPhase(phase)]
    if batch_overrides:
        config = replace(config, batch=replace(config.batch, **batch_overrides))
    return config


def legacy_fields(client_id: str = "client-a", policy_number: str = "LEG-001", **overrides) -> dict:
    fields = {
        "client_id": client_id,
        "policy_number": policy_number,
        "policy_type": "Life",
        "provider": "Acme Life",
        "description": None,
        "premium_amount": Decimal("1000.00"),
        "commission_amount": Decimal("100.00"),
        "start_date": date(2025, 1, 1),
        "expiry_date": date(2026, 1, 1),
        "duration_months": 12,
        "status": "Active",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test; one shared connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db:
        yield db


@pytest.fixture
async def clients(session_factory):
    """Registered clients, committed so every session can see them."""
    async with session_factory() as db:
        for client_id in CLIENT_IDS:
            await create_client(db, client_id=client_id, name=client_id.replace("-", " ").title())
        await db.commit()
    return CLIENT_IDS


@pytest.fixture
def add_legacy(session_factory):
    """Insert and commit legacy rows; returns their ids."""

    async def _add(*rows: dict) -> list[int]:
        async with session_factory() as db:
            created = [await insert_legacy(db, **row) for row in rows]
            ids = [row.id for row in created]
            await db.commit()
        return ids

    return _add


class ScheduledJobs:
    """Collects migrate-on-read jobs so a test can run them after the request."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job):
        self.jobs.append(job)

    async def run_all(self):
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            await job()


@pytest.fixture
def scheduled_jobs() -> ScheduledJobs:
    return ScheduledJobs()


@pytest.fixture
def api_config():
    """Mutable holder for the phase config the API sees."""
    return {"config": phase_config(MigrationPhase.MIGRATION)}


@pytest.fixture
async def api(session_factory, clients, scheduled_jobs, api_config):
    """HTTP client against the app, wired to the test database."""

    async def override_get_db():
        async with session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_today] = lambda: TODAY
    app.dependency_overrides[deps.get_scheduler] = lambda: scheduled_jobs
    app.dependency_overrides[deps.get_policy_config] = lambda: api_config["config"]

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides = {}
