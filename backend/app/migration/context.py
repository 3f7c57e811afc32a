"""
Batch and run results for the legacy → template migration engine.

BatchResult is the outcome of one batch (one transaction); RunResult is
what ``MigrationEngine.run`` returns once the loop stops.  Both
serialise to camelCase dicts for the API and the run's audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.core.constants import ConversionOutcome
from app.core.errors import MigrationHaltedError
from app.db.models.migration_run import MigrationRun
from app.migration.converter import ConversionResult


# ═══════════════════════════════════════════════════════════
#  BatchResult
# ═══════════════════════════════════════════════════════════

@dataclass
class BatchResult:
    """Outcome of one batch of legacy records."""

    batch_number: int
    legacy_ids: list[int]
    completed: bool = False
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error: str | None = None
    results: list[ConversionResult] = field(default_factory=list)
    integrity_problems: list[str] = field(default_factory=list)

    def count(self, outcome: ConversionOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def high_water_mark(self) -> int:
        return max(self.legacy_ids) if self.legacy_ids else 0

    @property
    def templates_created(self) -> int:
        return sum(1 for r in self.results if r.template_created)

    @property
    def instances_created(self) -> int:
        return sum(1 for r in self.results if r.instance_id is not None)

    @property
    def skipped_reasons(self) -> dict[str, str]:
        return {
            str(r.legacy_id): r.reason or ""
            for r in self.results
            if r.outcome == ConversionOutcome.SKIPPED
        }

    def counters(self) -> dict[str, int]:
        """Increments to add to the run row once this batch is settled."""
        return {
            "total_read": len(self.legacy_ids),
            "converted": self.count(ConversionOutcome.CONVERTED),
            "duplicates": self.count(ConversionOutcome.DUPLICATE),
            "skipped": self.count(ConversionOutcome.SKIPPED),
            "failed": 0 if self.completed else len(self.legacy_ids),
            "templates_created": self.templates_created,
            "instances_created": self.instances_created,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchNumber": self.batch_number,
            "legacyIds": self.legacy_ids,
            "completed": self.completed,
            "attempts": self.attempts,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
            "error": self.error,
            "converted": self.count(ConversionOutcome.CONVERTED),
            "duplicates": self.count(ConversionOutcome.DUPLICATE),
            "skipped": self.count(ConversionOutcome.SKIPPED),
            "templatesCreated": self.templates_created,
            "instancesCreated": self.instances_created,
            "integrityProblems": self.integrity_problems,
        }


# ═══════════════════════════════════════════════════════════
#  RunResult
# ═══════════════════════════════════════════════════════════

@dataclass
class RunResult:
    """Final outcome of a migration run invocation."""

    run: dict[str, Any]
    batches: list[BatchResult] = field(default_factory=list)
    halted: MigrationHaltedError | None = None

    @property
    def status(self) -> str:
        return self.run["status"]

    def to_dict(self) -> dict[str, Any]:
        data = {**self.run, "batches": [batch.to_dict() for batch in self.batches]}
        if self.halted is not None:
            data["halt"] = {"message": self.halted.message, **self.halted.details}
        return data


def serialize_run(run: MigrationRun) -> dict[str, Any]:
    return {
        "id": str(run.id),
        "phase": run.phase,
        "status": run.status,
        "dryRun": run.dry_run,
        "batchSize": run.batch_size,
        "cancelRequested": run.cancel_requested,
        "highWaterMark": run.high_water_mark,
        "batchesCompleted": run.batches_completed,
        "totalRead": run.total_read,
        "converted": run.converted,
        "duplicates": run.duplicates,
        "skipped": run.skipped,
        "failed": run.failed,
        "templatesCreated": run.templates_created,
        "instancesCreated": run.instances_created,
        "failedRecordIds": list(run.failed_record_ids or []),
        "skippedReasons": dict(run.skipped_reasons or {}),
        "errorMessage": run.error_message,
        "startedAt": run.started_at.isoformat() if run.started_at else None,
        "completedAt": run.completed_at.isoformat() if run.completed_at else None,
        "createdAt": run.created_at.isoformat() if run.created_at else None,
    }
