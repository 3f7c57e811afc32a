"""
Audit Recorder — one append-only entry per successful mutation.

Entries are written in the same transaction as the mutation they
describe: if the mutation rolls back, so does its entry, which is how
failed operations end up with no audit record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import SYSTEM_ACTOR, AuditAction, AuditEntityType
from app.core.logging import get_logger
from app.db.models.audit_log import AuditLog
from app.repositories import audit_logs as audit_repository

logger = get_logger(__name__)


async def record(
    db: AsyncSession,
    *,
    actor_id: str | None,
    action: AuditAction,
    entity_type: AuditEntityType,
    entity_id: Any,
    description: str,
    client_id: str | None = None,
    details: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """Append one audit entry inside the caller's transaction."""
    fields: dict[str, Any] = {
        "actor_id": actor_id or SYSTEM_ACTOR,
        "action": action.value,
        "entity_type": entity_type.value,
        "entity_id": str(entity_id),
        "client_id": client_id,
        "description": description,
        "details": _jsonable(details or {}),
    }
    if timestamp is not None:
        fields["created_at"] = timestamp
    entry = await audit_repository.insert_audit(db, **fields)
    logger.debug(
        "Audit recorded",
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
    )
    return entry


def _jsonable(value: Any) -> Any:
    """Make dates, decimals and UUIDs JSON-safe for the details column."""
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def describe_changes(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Field → {old, new} for every field whose value changed."""
    changes: dict[str, dict[str, Any]] = {}
    for key, new in after.items():
        old = before.get(key)
        if old != new:
            changes[key] = {"old": _jsonable(old), "new": _jsonable(new)}
    return changes
