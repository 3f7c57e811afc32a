"""
MigrationEngine — resumable, batched legacy → template migration.

Responsibilities:
    - Create a run row carrying the phase and batch size in effect
    - Walk the legacy table in id order above the run's high-water mark
    - Convert each batch in its own transaction under a bounded timeout
    - Retry transient batch failures with exponential backoff
    - Record skipped records and failed batches without stopping
    - Commit progress (counters + high-water mark) after every batch
    - Stop between batches when cancellation is requested
    - Halt on a data-corrupting batch when rollback is disabled
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.audit import recorder
from app.compat.config import PolicyMigrationConfig
from app.core.config import settings
from app.core.constants import AuditAction, AuditEntityType, MigrationRunStatus
from app.core.errors import ConflictError, MigrationError, MigrationHaltedError, NotFoundError
from app.core.logging import get_logger
from app.core.retry import backoff_delay, should_retry
from app.migration import checks
from app.migration.context import BatchResult, RunResult, serialize_run
from app.migration.converter import convert_legacy_record
from app.repositories import legacy_policies as legacy_repository
from app.repositories import migration_runs as run_repository

ACTIVE = {MigrationRunStatus.PENDING, MigrationRunStatus.RUNNING}
RESUMABLE = ACTIVE | {
    MigrationRunStatus.PARTIALLY_COMPLETED,
    MigrationRunStatus.FAILED,
    MigrationRunStatus.CANCELLED,
}


class MigrationEngine:
    """
    Runs batch migrations against a session factory.

    Every batch opens its own session, so no transaction ever spans more
    than one batch and committed progress survives a crash.

    Usage::

        engine = MigrationEngine(async_session, get_migration_config())
        run = await engine.create_run()
        result = await engine.run(run["id"])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PolicyMigrationConfig,
        *,
        actor_id: str | None = None,
        today: date | None = None,
        batch_timeout: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.actor_id = actor_id
        self.today = today
        self.batch_timeout = batch_timeout or settings.MIGRATION_BATCH_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.MIGRATION_BATCH_MAX_ATTEMPTS
        self.sleep = sleep
        self.logger = get_logger("migration.engine")

    # ── Run lifecycle ──────────────────────────────

    async def create_run(self, *, dry_run: bool = False, batch_size: int | None = None) -> dict[str, Any]:
        """Register a new run. Refused while the template system is off or another run is active."""
        if not self.config.compatibility.use_template_system:
            raise MigrationError(
                f"Batch migration is not available in the '{self.config.phase.value}' phase",
                status_code=409,
            )
        async with self.session_factory() as session:
            async with session.begin():
                active = await run_repository.find_active_run(session)
                if active is not None:
                    raise ConflictError(f"Migration run {active.id} is already running", field="runId")
                run = await run_repository.create_run(
                    session,
                    phase=self.config.phase.value,
                    status=MigrationRunStatus.PENDING.value,
                    batch_size=batch_size or self.config.batch.batch_size,
                    dry_run=dry_run,
                    failed_record_ids=[],
                    skipped_reasons={},
                )
            self.logger.info("Migration run created", run_id=str(run.id), dry_run=dry_run, batch_size=run.batch_size)
            return serialize_run(run)

    async def request_cancel(self, run_id: uuid.UUID) -> dict[str, Any]:
        """Flag a run for cancellation; the engine stops before its next batch."""
        async with self.session_factory() as session:
            async with session.begin():
                run = await self._load(session, run_id)
                if run.status in ACTIVE:
                    await run_repository.update_run(session, run, cancel_requested=True)
            return serialize_run(run)

    async def get_run(self, run_id: uuid.UUID) -> dict[str, Any]:
        async with self.session_factory() as session:
            return serialize_run(await self._load(session, run_id))

    async def run(self, run_id: uuid.UUID) -> RunResult:
        """Process batches until the legacy table is exhausted, the run is cancelled or it halts."""
        async with self.session_factory() as session:
            async with session.begin():
                run = await self._load(session, run_id)
                if run.status not in RESUMABLE:
                    raise ConflictError(f"Migration run is {run.status} and cannot be resumed", field="runId")
                await run_repository.update_run(
                    session,
                    run,
                    status=MigrationRunStatus.RUNNING.value,
                    cancel_requested=False,
                    completed_at=None,
                    started_at=run.started_at or datetime.now(timezone.utc),
                )
                high_water_mark = run.high_water_mark
                batch_size = run.batch_size
                dry_run = run.dry_run
                batch_number = run.batches_completed

        log = self.logger.bind(run_id=str(run_id), dry_run=dry_run, batch_size=batch_size)
        log.info("Migration run started", high_water_mark=high_water_mark, phase=self.config.phase.value)

        batches: list[BatchResult] = []
        final_status: MigrationRunStatus | None = None
        error_message = None
        halted: MigrationHaltedError | None = None

        while True:
            async with self.session_factory() as session:
                if await run_repository.is_cancel_requested(session, run_id):
                    log.info("Migration run cancelled", high_water_mark=high_water_mark)
                    final_status = MigrationRunStatus.CANCELLED
                    break
                rows = await legacy_repository.fetch_batch_after(session, high_water_mark, batch_size)
                legacy_ids = [row.id for row in rows]
            if not legacy_ids:
                break

            batch_number += 1
            batch = await self._run_batch(run_id, batch_number, legacy_ids, dry_run, log)
            batches.append(batch)

            if batch.integrity_problems and not self.config.batch.enable_rollback:
                halted = MigrationHaltedError(
                    "; ".join(batch.integrity_problems),
                    failed_record_ids=batch.legacy_ids,
                    high_water_mark=high_water_mark,
                )
                error_message = halted.message
                log.error(
                    "Data-corrupting batch with rollback disabled, halting run",
                    batch_number=batch_number,
                    problems=batch.integrity_problems,
                    **halted.details,
                )
                await self._record_progress(run_id, batch, advance=False, error_message=error_message)
                final_status = MigrationRunStatus.FAILED
                break

            high_water_mark = batch.high_water_mark
            await self._record_progress(run_id, batch, advance=True)

        result = await self._finish(run_id, batches, final_status, error_message, log)
        result.halted = halted
        return result

    # ── Batches ────────────────────────────────────

    async def _run_batch(
        self,
        run_id: uuid.UUID,
        batch_number: int,
        legacy_ids: list[int],
        dry_run: bool,
        log,
    ) -> BatchResult:
        """One batch, retried on transient failure, each attempt bounded by the batch timeout."""
        batch = BatchResult(batch_number=batch_number, legacy_ids=legacy_ids)
        batch.started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        batch_log = log.bind(batch_number=batch_number, first_id=legacy_ids[0], last_id=legacy_ids[-1])

        for attempt in range(1, self.max_attempts + 1):
            batch.attempts = attempt
            try:
                batch.results = await asyncio.wait_for(
                    self._convert_batch(run_id, batch_number, legacy_ids, dry_run),
                    timeout=self.batch_timeout,
                )
                batch.completed = True
                batch.error = None
                break
            except Exception as exc:
                batch.error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
                if should_retry(exc, attempt, self.max_attempts):
                    delay = backoff_delay(attempt)
                    batch_log.warning(
                        f"Batch failed (attempt {attempt}/{self.max_attempts}), retrying in {delay}s",
                        error=batch.error,
                    )
                    await self.sleep(delay)
                    continue
                batch_log.error("Batch failed", attempts=attempt, error=batch.error)
                break

        if batch.completed and not dry_run:
            async with self.session_factory() as session:
                batch.integrity_problems = await checks.verify_batch(session, batch.results)

        batch.completed_at = datetime.now(timezone.utc)
        batch.duration_ms = int((time.monotonic() - start) * 1000)
        if batch.completed:
            batch_log.info("Batch completed", duration_ms=batch.duration_ms, **batch.counters())
        return batch

    async def _convert_batch(
        self,
        run_id: uuid.UUID,
        batch_number: int,
        legacy_ids: list[int],
        dry_run: bool,
    ) -> list:
        """Convert one batch in a single transaction; a dry run rolls it back."""
        async with self.session_factory() as session:
            try:
                results = []
                for legacy in await legacy_repository.list_by_ids(session, legacy_ids):
                    results.append(
                        await convert_legacy_record(session, legacy, self.config, run_id=run_id, today=self.today)
                    )
                if dry_run:
                    await session.rollback()
                    return results

                await recorder.record(
                    session,
                    actor_id=self.actor_id,
                    action=AuditAction.MIGRATE,
                    entity_type=AuditEntityType.MIGRATION_BATCH,
                    entity_id=run_id,
                    description=f"Migration batch {batch_number} completed ({len(results)} records)",
                    details={
                        "batchNumber": batch_number,
                        "legacyIds": legacy_ids,
                        "outcomes": {str(r.legacy_id): r.outcome.value for r in results},
                    },
                )
                await session.commit()
                return results
            except BaseException:
                await session.rollback()
                raise

    async def _record_progress(
        self,
        run_id: uuid.UUID,
        batch: BatchResult,
        *,
        advance: bool,
        error_message: str | None = None,
    ) -> None:
        """Fold one batch into the run row and commit, so a crash resumes after it."""
        async with self.session_factory() as session:
            async with session.begin():
                run = await self._load(session, run_id)
                fields: dict[str, Any] = {
                    name: getattr(run, name) + value for name, value in batch.counters().items()
                }
                if advance:
                    fields["high_water_mark"] = batch.high_water_mark
                    fields["batches_completed"] = run.batches_completed + 1
                if not batch.completed:
                    fields["failed_record_ids"] = list(run.failed_record_ids or []) + batch.legacy_ids
                if batch.skipped_reasons:
                    fields["skipped_reasons"] = {**(run.skipped_reasons or {}), **batch.skipped_reasons}
                if batch.integrity_problems or error_message:
                    problems = [run.error_message] if run.error_message else []
                    problems.append(error_message or "; ".join(batch.integrity_problems))
                    fields["error_message"] = "; ".join(problems)
                await run_repository.update_run(session, run, **fields)

    async def _finish(
        self,
        run_id: uuid.UUID,
        batches: list[BatchResult],
        final_status: MigrationRunStatus | None,
        error_message: str | None,
        log,
    ) -> RunResult:
        async with self.session_factory() as session:
            async with session.begin():
                run = await self._load(session, run_id)
                if final_status is None:
                    clean = not run.failed and not run.skipped and not run.error_message
                    final_status = MigrationRunStatus.COMPLETED if clean else MigrationRunStatus.PARTIALLY_COMPLETED
                await run_repository.update_run(
                    session, run, status=final_status.value, completed_at=datetime.now(timezone.utc)
                )
            summary = serialize_run(run)

        log_method = log.error if final_status == MigrationRunStatus.FAILED else log.info
        log_method(
            "Migration run finished",
            status=final_status.value,
            batches=len(batches),
            high_water_mark=summary["highWaterMark"],
            converted=summary["converted"],
            skipped=summary["skipped"],
            failed=summary["failed"],
            error=error_message,
        )
        return RunResult(run=summary, batches=batches)

    async def _load(self, session: AsyncSession, run_id: uuid.UUID):
        run = await run_repository.get_run(session, run_id)
        if run is None:
            raise NotFoundError("Migration run", run_id)
        return run
