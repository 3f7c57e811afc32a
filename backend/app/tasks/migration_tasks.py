"""
Celery tasks — batch legacy → template migration.

The engine commits after every batch and keeps its own high-water
mark, so a worker crash or a redelivered task simply resumes the run.
"""

import asyncio
import uuid

import structlog

from app.compat.config import get_migration_config
from app.core.constants import MigrationRunStatus
from app.core.errors import ConflictError
from app.db.session import fresh_session_factory
from app.migration.engine import MigrationEngine
from app.repositories import legacy_policies as legacy_repository
from app.tasks import celery_app

logger = structlog.get_logger("tasks.migration")


async def _run(run_id: str, actor_id: str | None) -> dict:
    async with fresh_session_factory() as factory:
        engine = MigrationEngine(factory, get_migration_config(), actor_id=actor_id)
        result = await engine.run(uuid.UUID(run_id))
        return result.to_dict()


@celery_app.task(bind=True, name="app.tasks.migration_tasks.run_migration")
def run_migration(self, run_id: str, actor_id: str | None = None) -> dict:
    """Run (or resume) a migration run until it completes, halts or is cancelled."""
    task_log = logger.bind(task_id=self.request.id, run_id=run_id)
    task_log.info("Migration task started")
    result = asyncio.run(_run(run_id, actor_id))
    if result["status"] == MigrationRunStatus.FAILED:
        task_log.error("Migration run halted", error=result.get("errorMessage"))
    else:
        task_log.info("Migration task finished", status=result["status"], converted=result["converted"])
    return result


async def _auto_migrate() -> dict | None:
    config = get_migration_config()
    if not (config.batch.enable_auto_migration and config.compatibility.use_template_system):
        return None
    async with fresh_session_factory() as factory:
        async with factory() as session:
            if await legacy_repository.count_legacy(session) == 0:
                return None
        engine = MigrationEngine(factory, config)
        run = await engine.create_run()
        result = await engine.run(uuid.UUID(run["id"]))
        return result.to_dict()


@celery_app.task(bind=True, name="app.tasks.migration_tasks.auto_migrate")
def auto_migrate(self) -> dict:
    """Beat entry point: start a run when the phase enables automatic migration."""
    task_log = logger.bind(task_id=self.request.id)
    try:
        result = asyncio.run(_auto_migrate())
    except ConflictError as exc:
        task_log.info("Auto-migration skipped", reason=exc.message)
        return {"started": False, "reason": exc.message}
    if result is None:
        return {"started": False, "reason": "Automatic migration is disabled or nothing is left to migrate"}
    task_log.info("Auto-migration finished", status=result["status"], converted=result["converted"])
    return {"started": True, "run": result}
