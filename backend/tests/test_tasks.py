"""Celery tasks run eagerly against a throwaway database."""

from contextlib import asynccontextmanager
from datetime import date, timedelta
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.constants import MigrationPhase
from app.db.models import Base
from app.db.session import build_session_factory
from app.repositories.clients import create_client
from app.repositories.legacy_policies import insert_legacy
from app.tasks import expiry_tasks, migration_tasks

from conftest import legacy_fields, phase_config


def schema_factory(legacy_rows=()):
    """Stand-in for ``fresh_session_factory``: a new in-memory schema, optionally seeded."""

    @asynccontextmanager
    async def _factory():
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = build_session_factory(engine)
        async with factory() as db:
            await create_client(db, client_id="client-a", name="Client A")
            for row in legacy_rows:
                await insert_legacy(db, **row)
            await db.commit()
        try:
            yield factory
        finally:
            await engine.dispose()

    return _factory


def recent_legacy(policy_number):
    start = date.today() - timedelta(days=30)
    return legacy_fields("client-a", policy_number, start_date=start, expiry_date=start + timedelta(days=365))


class TestExpiryTasks:
    def test_sweep_task(self):
        with patch.object(expiry_tasks, "fresh_session_factory", schema_factory()):
            result = expiry_tasks.sweep_expired_policies.apply().get()

        assert result["updated"] == 0
        assert result["instanceIds"] == []

    def test_purge_task(self):
        with patch.object(expiry_tasks, "fresh_session_factory", schema_factory()):
            result = expiry_tasks.purge_migration_backups.apply().get()

        assert result == {"deleted": 0}


class TestMigrationTasks:
    def test_auto_migrate_is_off_outside_transition(self):
        with patch.object(migration_tasks, "get_migration_config", lambda: phase_config(MigrationPhase.MIGRATION)):
            result = migration_tasks.auto_migrate.apply().get()

        assert result["started"] is False

    def test_auto_migrate_converts_in_transition(self):
        factory = schema_factory([recent_legacy("LEG-001"), recent_legacy("LEG-002")])
        with patch.object(migration_tasks, "fresh_session_factory", factory), patch.object(
            migration_tasks, "get_migration_config", lambda: phase_config(MigrationPhase.TRANSITION)
        ):
            result = migration_tasks.auto_migrate.apply().get()

        assert result["started"] is True
        assert result["run"]["status"] == "COMPLETED"
        assert result["run"]["converted"] == 2

    def test_auto_migrate_with_nothing_left(self):
        with patch.object(migration_tasks, "fresh_session_factory", schema_factory()), patch.object(
            migration_tasks, "get_migration_config", lambda: phase_config(MigrationPhase.TRANSITION)
        ):
            result = migration_tasks.auto_migrate.apply().get()

        assert result == {
            "started": False,
            "reason": "Automatic migration is disabled or nothing is left to migrate",
        }
