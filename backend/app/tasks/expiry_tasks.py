"""
Celery tasks — periodic expiry sweep and backup retention.

Both are idempotent: the sweep is a conditional write and the purge
deletes by expiry timestamp, so overlapping beat schedulers are safe.
"""

import asyncio

import structlog

from app.core.constants import SYSTEM_ACTOR
from app.core.retry import backoff_delay, is_retryable
from app.db.session import fresh_session_factory
from app.migration.rollback import purge_expired_backups
from app.policies.expiry_service import sweep_expired
from app.tasks import celery_app

logger = structlog.get_logger("tasks.expiry")


async def _sweep() -> dict:
    async with fresh_session_factory() as factory:
        async with factory() as session:
            async with session.begin():
                return await sweep_expired(session, actor_id=SYSTEM_ACTOR)


async def _purge() -> int:
    async with fresh_session_factory() as factory:
        async with factory() as session:
            async with session.begin():
                return await purge_expired_backups(session)


@celery_app.task(bind=True, name="app.tasks.expiry_tasks.sweep_expired_policies", max_retries=3)
def sweep_expired_policies(self) -> dict:
    """Mark lapsed Active instances as Expired."""
    task_log = logger.bind(task_id=self.request.id)
    try:
        result = asyncio.run(_sweep())
    except Exception as exc:
        if is_retryable(exc):
            task_log.warning("Expiry sweep failed, retrying", error=str(exc), attempt=self.request.retries + 1)
            raise self.retry(exc=exc, countdown=backoff_delay(self.request.retries + 1))
        task_log.exception("Expiry sweep failed")
        raise
    task_log.info("Expiry sweep task finished", updated=result["updated"])
    return result


@celery_app.task(bind=True, name="app.tasks.expiry_tasks.purge_migration_backups", max_retries=3)
def purge_migration_backups(self) -> dict:
    """Drop migration backups whose retention window has passed."""
    task_log = logger.bind(task_id=self.request.id)
    try:
        deleted = asyncio.run(_purge())
    except Exception as exc:
        if is_retryable(exc):
            task_log.warning("Backup purge failed, retrying", error=str(exc))
            raise self.retry(exc=exc, countdown=backoff_delay(self.request.retries + 1))
        task_log.exception("Backup purge failed")
        raise
    return {"deleted": deleted}
