"""Legacy → template migration: status, checks, runs and rollback."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_actor_id, get_db, get_policy_config, get_session_factory, get_today
from app.api.responses import ok
from app.api.schemas.policies import MigrationRunCreate
from app.compat.config import PolicyMigrationConfig
from app.migration import checks, rollback
from app.migration.engine import MigrationEngine

router = APIRouter(prefix="/migration", tags=["Migration"])


def get_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
    today: date | None = Depends(get_today),
) -> MigrationEngine:
    return MigrationEngine(session_factory, config, actor_id=actor_id, today=today)


@router.get("/status")
async def migration_status(
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
) -> dict[str, object]:
    """Phase config, what is left to migrate and the latest runs."""
    return ok(await checks.migration_status(db, config))


@router.get("/preflight")
async def preflight(
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    today: date | None = Depends(get_today),
) -> dict[str, object]:
    return ok(await checks.preflight_check(db, config, today=today))


@router.get("/verify")
async def verify(db: AsyncSession = Depends(get_db)) -> dict[str, object]:
    return ok(await checks.verify_migration_integrity(db))


@router.post("/runs", status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    payload: MigrationRunCreate,
    response: Response,
    engine: MigrationEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
) -> dict[str, object]:
    """Create a run and queue it on the migration worker (or run it inline)."""
    run = await engine.create_run(dry_run=payload.dry_run, batch_size=payload.batch_size)
    if payload.inline:
        result = await engine.run(UUID(run["id"]))
        response.status_code = status.HTTP_200_OK
        return ok(result.to_dict(), message=f"Migration run {result.status}")

    from app.tasks.migration_tasks import run_migration

    run_migration.delay(run["id"], actor_id)
    return ok(run, message="Migration run queued")


@router.get("/runs/{run_id}")
async def get_run(run_id: UUID, engine: MigrationEngine = Depends(get_engine)) -> dict[str, object]:
    return ok(await engine.get_run(run_id))


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: UUID, engine: MigrationEngine = Depends(get_engine)) -> dict[str, object]:
    """Stop the run before its next batch."""
    return ok(await engine.request_cancel(run_id), message="Cancellation requested")


@router.post("/runs/{run_id}/rollback")
async def rollback_run(
    run_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
) -> dict[str, object]:
    result = await rollback.rollback_run(db, run_id, config, actor_id=actor_id)
    return ok(result, message=f"Restored {len(result['restored'])} legacy policies")


@router.post("/backups/{backup_id}/rollback")
async def rollback_backup(
    backup_id: UUID,
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
) -> dict[str, object]:
    result = await rollback.rollback_backup(db, backup_id, config, actor_id=actor_id)
    return ok(result, message="Legacy policy restored")
