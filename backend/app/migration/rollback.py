"""
Undo legacy → template conversions from their backups.

Restoring a backup puts the legacy row back under its original id,
deletes the instance the conversion created and, when the conversion
also created the template and nothing else uses it, the template.
Everything for one backup happens in the caller's transaction.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import recorder
from app.compat.config import PolicyMigrationConfig
from app.core.constants import AuditAction, AuditEntityType
from app.core.errors import ConflictError, MigrationError, NotFoundError
from app.core.logging import get_logger
from app.db.models.migration_backup import MigrationBackup
from app.repositories import legacy_policies as legacy_repository
from app.repositories import migration_runs as run_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository

logger = get_logger(__name__)


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything here is UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _require_rollback(config: PolicyMigrationConfig) -> None:
    if not config.batch.enable_rollback:
        raise MigrationError(
            f"Rollback is disabled in the '{config.phase.value}' phase",
            status_code=409,
        )


def _legacy_fields(snapshot: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": snapshot["id"],
        "client_id": snapshot["client_id"],
        "policy_number": snapshot["policy_number"],
        "policy_type": snapshot["policy_type"],
        "provider": snapshot["provider"],
        "description": snapshot.get("description"),
        "premium_amount": Decimal(snapshot["premium_amount"]),
        "commission_amount": Decimal(snapshot["commission_amount"]),
        "start_date": date.fromisoformat(snapshot["start_date"]),
        "expiry_date": date.fromisoformat(snapshot["expiry_date"]),
        "duration_months": snapshot.get("duration_months"),
        "status": snapshot["status"],
    }


async def _restore(
    db: AsyncSession, backup: MigrationBackup, now: datetime, actor_id: str | None
) -> dict[str, Any]:
    if backup.restored_at is not None:
        raise ConflictError("Backup has already been restored", field="backupId")
    if _aware(backup.expires_at) <= now:
        raise ConflictError("Backup has expired", field="backupId")

    fields = _legacy_fields(backup.snapshot)
    if await legacy_repository.get_legacy(db, fields["id"]) is not None:
        raise ConflictError(f"Legacy policy {fields['id']} already exists", field="backupId")

    instance_deleted = False
    if backup.instance_id is not None:
        instance = await instance_repository.get_instance(db, backup.instance_id)
        if instance is not None:
            await instance_repository.delete_instance(db, instance)
            instance_deleted = True

    template_deleted = False
    if backup.template_created and await template_repository.get_template(db, backup.template_id) is not None:
        if await template_repository.count_instances(db, backup.template_id) == 0:
            await template_repository.delete_template_cascade(db, backup.template_id)
            template_deleted = True

    legacy = await legacy_repository.insert_legacy(db, **fields)
    await run_repository.update_backup(db, backup, restored_at=now)

    await recorder.record(
        db,
        actor_id=actor_id,
        action=AuditAction.ROLLBACK,
        entity_type=AuditEntityType.LEGACY_POLICY,
        entity_id=legacy.id,
        client_id=legacy.client_id,
        description=f"Restored legacy policy {legacy.policy_number} from migration backup",
        details={
            "backupId": backup.id,
            "runId": backup.run_id,
            "instanceDeleted": instance_deleted,
            "templateDeleted": template_deleted,
        },
    )
    return {
        "backupId": str(backup.id),
        "legacyId": legacy.id,
        "instanceDeleted": instance_deleted,
        "templateDeleted": template_deleted,
    }


async def rollback_backup(
    db: AsyncSession,
    backup_id: uuid.UUID,
    config: PolicyMigrationConfig,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Undo the single conversion recorded by ``backup_id``."""
    _require_rollback(config)
    backup = await run_repository.get_backup(db, backup_id)
    if backup is None:
        raise NotFoundError("Migration backup", backup_id)
    restored = await _restore(db, backup, _aware(now or datetime.now(timezone.utc)), actor_id)
    logger.info("Migration backup restored", **restored)
    return restored


async def rollback_run(
    db: AsyncSession,
    run_id: uuid.UUID,
    config: PolicyMigrationConfig,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Undo every still-restorable conversion of a run, newest first. Expired backups are skipped."""
    _require_rollback(config)
    if await run_repository.get_run(db, run_id) is None:
        raise NotFoundError("Migration run", run_id)
    now = _aware(now or datetime.now(timezone.utc))

    restored, expired = [], []
    for backup in await run_repository.list_backups_for_run(db, run_id):
        if _aware(backup.expires_at) <= now:
            expired.append(str(backup.id))
            continue
        restored.append(await _restore(db, backup, now, actor_id))

    logger.info("Migration run rolled back", run_id=str(run_id), restored=len(restored), expired=len(expired))
    return {"runId": str(run_id), "restored": restored, "expiredBackups": expired}


async def purge_expired_backups(db: AsyncSession, *, now: datetime | None = None) -> int:
    """Delete backups past their retention window."""
    deleted = await run_repository.delete_expired_backups(db, now=_aware(now or datetime.now(timezone.utc)))
    logger.info("Expired migration backups purged", deleted=deleted)
    return deleted
