"""
MigrationRun / MigrationBackup repository.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import MigrationRunStatus
from app.db.models.migration_backup import MigrationBackup
from app.db.models.migration_run import MigrationRun


# ─── Runs ─────────────────────────────────────

async def create_run(db: AsyncSession, **fields: Any) -> MigrationRun:
    run = MigrationRun(**fields)
    db.add(run)
    await db.flush()
    return run


async def get_run(db: AsyncSession, run_id: uuid.UUID) -> MigrationRun | None:
    return await db.get(MigrationRun, run_id)


async def update_run(db: AsyncSession, run: MigrationRun, **fields: Any) -> MigrationRun:
    for key, value in fields.items():
        setattr(run, key, value)
    await db.flush()
    return run


async def is_cancel_requested(db: AsyncSession, run_id: uuid.UUID) -> bool:
    """Read the cancel flag straight from the table (never from a cached object)."""
    stmt = select(MigrationRun.cancel_requested).where(MigrationRun.id == run_id)
    return bool((await db.execute(stmt)).scalar_one_or_none())


async def find_active_run(db: AsyncSession) -> MigrationRun | None:
    """The oldest run still PENDING or RUNNING, if any."""
    stmt = (
        select(MigrationRun)
        .where(MigrationRun.status.in_([MigrationRunStatus.PENDING.value, MigrationRunStatus.RUNNING.value]))
        .order_by(MigrationRun.created_at)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_runs(db: AsyncSession, *, limit: int = 20) -> list[MigrationRun]:
    stmt = select(MigrationRun).order_by(MigrationRun.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ─── Backups ──────────────────────────────────

async def insert_backup(db: AsyncSession, **fields: Any) -> MigrationBackup:
    backup = MigrationBackup(**fields)
    db.add(backup)
    await db.flush()
    return backup


async def get_backup(db: AsyncSession, backup_id: uuid.UUID) -> MigrationBackup | None:
    return await db.get(MigrationBackup, backup_id)


async def update_backup(db: AsyncSession, backup: MigrationBackup, **fields: Any) -> MigrationBackup:
    for key, value in fields.items():
        setattr(backup, key, value)
    await db.flush()
    return backup


async def list_backups_for_run(
    db: AsyncSession, run_id: uuid.UUID, *, restorable_only: bool = True
) -> list[MigrationBackup]:
    """A run's backups, newest conversion first (reverse order of creation)."""
    stmt = select(MigrationBackup).where(MigrationBackup.run_id == run_id)
    if restorable_only:
        stmt = stmt.where(MigrationBackup.restored_at.is_(None))
    stmt = stmt.order_by(MigrationBackup.legacy_policy_id.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def delete_expired_backups(db: AsyncSession, *, now: datetime) -> int:
    stmt = (
        delete(MigrationBackup)
        .where(MigrationBackup.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.flush()
    return result.rowcount or 0


async def count_backups(db: AsyncSession, *, restorable_only: bool = True) -> int:
    stmt = select(func.count(MigrationBackup.id))
    if restorable_only:
        stmt = stmt.where(MigrationBackup.restored_at.is_(None))
    return (await db.execute(stmt)).scalar_one()
