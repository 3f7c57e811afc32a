"""
Read-only projections over the audit log.

Nothing here mutates; every function is a query plus some shaping.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.audit_log import AuditLog
from app.repositories import audit_logs as audit_repository

RECENT_DAYS = 30
MAX_PAGE_SIZE = 100


def serialize_entry(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "actorId": entry.actor_id,
        "action": entry.action,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "clientId": entry.client_id,
        "description": entry.description,
        "details": entry.details or {},
        "timestamp": entry.created_at.isoformat() if entry.created_at else None,
    }


async def audit_log_for_client(
    db: AsyncSession,
    client_id: str,
    *,
    page: int = 1,
    limit: int = 50,
    action: str | None = None,
    entity_type: str | None = None,
) -> dict[str, Any]:
    """Paginated audit trail for one client, newest first."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    entries, total = await audit_repository.list_entries(
        db,
        offset=(page - 1) * limit,
        limit=limit,
        client_id=client_id,
        action=action,
        entity_type=entity_type,
    )
    return {
        "entries": [serialize_entry(entry) for entry in entries],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


async def audit_stats_for_client(
    db: AsyncSession,
    client_id: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Totals for one client: overall, last 30 days, by action/entity, last change."""
    now = now or datetime.now(timezone.utc)
    latest = await audit_repository.latest_entry(db, client_id=client_id)
    return {
        "totalEntries": await audit_repository.count_entries(db, client_id=client_id),
        "recentEntries": await audit_repository.count_entries(
            db, client_id=client_id, start=now - timedelta(days=RECENT_DAYS)
        ),
        "byAction": await audit_repository.count_by(db, "action", client_id=client_id),
        "byEntityType": await audit_repository.count_by(db, "entity_type", client_id=client_id),
        "lastModified": latest.created_at.isoformat() if latest else None,
    }


async def audit_report(
    db: AsyncSession,
    *,
    start: date,
    end: date,
    client_id: str | None = None,
) -> dict[str, Any]:
    """Activity between two dates (inclusive), grouped every useful way."""
    start_at = datetime.combine(start, time.min, tzinfo=timezone.utc)
    end_at = datetime.combine(end, time.max, tzinfo=timezone.utc)
    filters: dict[str, Any] = {"start": start_at, "end": end_at, "client_id": client_id}

    daily: dict[str, int] = {}
    for created_at in await audit_repository.created_timestamps(db, **filters):
        key = created_at.date().isoformat()
        daily[key] = daily.get(key, 0) + 1

    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "totalEntries": await audit_repository.count_entries(db, **filters),
        "byAction": await audit_repository.count_by(db, "action", **filters),
        "byClient": await audit_repository.count_by(db, "client_id", **filters),
        "byEntityType": await audit_repository.count_by(db, "entity_type", **filters),
        "dailyActivity": [{"date": day, "count": count} for day, count in sorted(daily.items())],
    }
