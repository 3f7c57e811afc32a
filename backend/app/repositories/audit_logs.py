"""
AuditLog repository — insert and read-only queries over audit_logs.

There is deliberately no update or delete here: the audit log is
append-only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.audit_log import AuditLog


async def insert_audit(db: AsyncSession, **fields: Any) -> AuditLog:
    entry = AuditLog(**fields)
    db.add(entry)
    await db.flush()
    return entry


def _filters(
    *,
    client_id: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list:
    conditions = []
    if client_id:
        conditions.append(AuditLog.client_id == client_id)
    if action:
        conditions.append(AuditLog.action == action)
    if entity_type:
        conditions.append(AuditLog.entity_type == entity_type)
    if start is not None:
        conditions.append(AuditLog.created_at >= start)
    if end is not None:
        conditions.append(AuditLog.created_at <= end)
    return conditions


async def list_entries(
    db: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 50,
    **filters: Any,
) -> tuple[list[AuditLog], int]:
    """Newest-first page of entries plus the total matching count."""
    conditions = _filters(**filters)
    total = (await db.execute(select(func.count(AuditLog.id)).where(*conditions))).scalar_one()
    stmt = (
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all()), total


async def count_entries(db: AsyncSession, **filters: Any) -> int:
    stmt = select(func.count(AuditLog.id)).where(*_filters(**filters))
    return (await db.execute(stmt)).scalar_one()


async def count_by(db: AsyncSession, column: str, **filters: Any) -> dict[str, int]:
    """Entry counts grouped by ``action``, ``entity_type`` or ``client_id``."""
    group_column = getattr(AuditLog, column)
    stmt = (
        select(group_column, func.count(AuditLog.id))
        .where(*_filters(**filters))
        .group_by(group_column)
    )
    result = await db.execute(stmt)
    return {str(key): count for key, count in result.all() if key is not None}


async def latest_entry(db: AsyncSession, **filters: Any) -> AuditLog | None:
    stmt = (
        select(AuditLog)
        .where(*_filters(**filters))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def created_timestamps(db: AsyncSession, **filters: Any) -> list[datetime]:
    """Timestamps of matching entries (for per-day bucketing)."""
    stmt = select(AuditLog.created_at).where(*_filters(**filters)).order_by(AuditLog.created_at)
    result = await db.execute(stmt)
    return list(result.scalars().all())
