"""
Pre- and post-migration checks.

``preflight_check`` reads the legacy table and predicts what a batch run
would do; ``verify_migration_integrity`` inspects the template shape for
damage afterwards.  Neither writes.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.compat.config import PolicyMigrationConfig
from app.core.constants import ConversionOutcome
from app.core.logging import get_logger
from app.migration.context import serialize_run
from app.migration.converter import ConversionResult, legacy_payload
from app.policies.status import utc_today
from app.repositories import clients as client_repository
from app.repositories import legacy_policies as legacy_repository
from app.repositories import migration_runs as run_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository
from app.validation import schema_validator as sv
from app.validation.duplicate_detector import find_duplicate_keys, policy_number_key
from app.validation.policy_validator import validate_instance, validate_template

logger = get_logger(__name__)

REQUIRED_LEGACY_FIELDS = ("policyNumber", "policyType", "provider", "clientId")
SAMPLE_LIMIT = 20


async def preflight_check(
    db: AsyncSession,
    config: PolicyMigrationConfig,
    *,
    today: date | None = None,
) -> dict[str, Any]:
    """Summarise the legacy table before a run: what converts, what would be skipped and why."""
    today = today or utc_today()
    rows = await legacy_repository.list_all(db)
    known_clients = await client_repository.existing_client_ids(db, {row.client_id for row in rows})

    missing_required: list[int] = []
    orphaned: list[int] = []
    invalid: dict[str, str] = {}
    future_starts: list[int] = []
    negative_amounts: list[int] = []
    new_keys: set[str] = set()

    for row in rows:
        payload = legacy_payload(row)
        if any(sv.is_blank(payload[name]) for name in REQUIRED_LEGACY_FIELDS):
            missing_required.append(row.id)
        if row.client_id not in known_clients:
            orphaned.append(row.id)
        if row.start_date > today:
            future_starts.append(row.id)
        if row.premium_amount < 0 or row.commission_amount < 0:
            negative_amounts.append(row.id)

        template_result = validate_template(payload, config.validation)
        instance_result = validate_instance(payload, config.validation, today=today, require_references=False)
        errors = {**instance_result.errors, **template_result.errors}
        if errors:
            invalid[str(row.id)] = "; ".join(f"{name}: {message}" for name, message in errors.items())
        elif row.policy_number:
            new_keys.add(policy_number_key(row.policy_number))

    existing_keys = {
        key for key in new_keys if await template_repository.get_by_number_key(db, key) is not None
    }
    duplicates = find_duplicate_keys([{"id": row.id, "policy_number": row.policy_number} for row in rows])

    blocked = set(missing_required) | set(orphaned) | {int(key) for key in invalid}
    report = {
        "totalLegacyRecords": len(rows),
        "convertible": len(rows) - len(blocked),
        "missingRequiredData": len(missing_required),
        "orphanedClientReferences": len(orphaned),
        "invalidRecords": len(invalid),
        "duplicatePolicyNumbers": len(duplicates),
        "templatesToCreate": len(new_keys - existing_keys),
        "futureStartDates": len(future_starts),
        "negativeAmounts": len(negative_amounts),
        "samples": {
            "missingRequiredData": missing_required[:SAMPLE_LIMIT],
            "orphanedClientReferences": orphaned[:SAMPLE_LIMIT],
            "invalidRecords": dict(list(invalid.items())[:SAMPLE_LIMIT]),
            "duplicatePolicyNumbers": dict(list(duplicates.items())[:SAMPLE_LIMIT]),
        },
        "ready": not blocked,
        "phase": config.phase.value,
    }
    logger.info(
        "Migration preflight",
        total=report["totalLegacyRecords"],
        convertible=report["convertible"],
        templates_to_create=report["templatesToCreate"],
    )
    return report


async def verify_migration_integrity(db: AsyncSession) -> dict[str, Any]:
    """Look for orphaned instances, duplicate templates and broken instance invariants."""
    orphans = await instance_repository.find_orphans(db)
    duplicate_templates = await template_repository.find_duplicate_number_keys(db)
    duplicate_instances = await instance_repository.find_duplicate_pairs(db)
    violations = await instance_repository.find_invariant_violations(db)

    issues = len(orphans) + len(duplicate_templates) + len(duplicate_instances) + len(violations)
    if issues:
        logger.warning("Migration integrity issues found", issues=issues)
    return {
        "healthy": issues == 0,
        "orphanedInstances": orphans,
        "duplicateTemplates": duplicate_templates,
        "duplicateInstances": duplicate_instances,
        "invariantViolations": violations,
        "legacyRemaining": await legacy_repository.count_legacy(db),
    }


async def verify_batch(db: AsyncSession, results: list[ConversionResult]) -> list[str]:
    """
    Check a committed batch did what its results claim.

    A record reported converted (or duplicate) whose legacy row is still
    present, or whose new instance is missing, means the batch wrote
    something other than what it reported.
    """
    settled = [r for r in results if r.outcome != ConversionOutcome.SKIPPED]
    problems = []

    lingering = await legacy_repository.existing_ids(db, [r.legacy_id for r in settled])
    for legacy_id in sorted(lingering):
        problems.append(f"Legacy record {legacy_id} still present after conversion")

    created = [r.instance_id for r in settled if r.instance_id is not None]
    present = await instance_repository.existing_ids(db, created)
    for result in settled:
        if result.instance_id is not None and result.instance_id not in present:
            problems.append(f"Instance {result.instance_id} for legacy record {result.legacy_id} is missing")
    return problems


async def migration_status(db: AsyncSession, config: PolicyMigrationConfig) -> dict[str, Any]:
    runs = await run_repository.list_runs(db, limit=5)
    return {
        "config": config.to_dict(),
        "legacyRemaining": await legacy_repository.count_legacy(db),
        "templates": await template_repository.count_templates(db),
        "restorableBackups": await run_repository.count_backups(db),
        "recentRuns": [serialize_run(run) for run in runs],
    }
