"""
Legacy → template conversion of a single record.

Shared by the batch migration engine and the migrate-on-read path so
both apply identical rules.  Runs inside the caller's transaction and
never commits.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.compat.config import PolicyMigrationConfig
from app.core.constants import ConversionOutcome, PolicyStatus
from app.core.logging import get_logger
from app.db.models.base import utcnow
from app.db.models.legacy_policy import LegacyPolicy
from app.repositories import clients as client_repository
from app.repositories import legacy_policies as legacy_repository
from app.repositories import migration_runs as run_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository
from app.validation.duplicate_detector import TemplateMatch, match_template, policy_number_key
from app.validation.policy_validator import validate_instance, validate_template

logger = get_logger(__name__)


@dataclass
class ConversionResult:
    """What happened to one legacy record."""

    legacy_id: int
    outcome: ConversionOutcome
    reason: str | None = None
    template_id: uuid.UUID | None = None
    instance_id: uuid.UUID | None = None
    template_created: bool = False
    backup_id: uuid.UUID | None = None
    warnings: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "legacyId": self.legacy_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "templateId": str(self.template_id) if self.template_id else None,
            "instanceId": str(self.instance_id) if self.instance_id else None,
            "templateCreated": self.template_created,
            "warnings": self.warnings,
        }


def legacy_payload(legacy: LegacyPolicy) -> dict[str, Any]:
    """Legacy row as a validation payload."""
    return {
        "policyNumber": legacy.policy_number,
        "policyType": legacy.policy_type,
        "provider": legacy.provider,
        "description": legacy.description,
        "clientId": legacy.client_id,
        "premiumAmount": legacy.premium_amount,
        "commissionAmount": legacy.commission_amount,
        "startDate": legacy.start_date,
        "expiryDate": legacy.expiry_date,
        "durationMonths": legacy.duration_months,
        "status": legacy.status,
    }


def legacy_snapshot(legacy: LegacyPolicy) -> dict[str, Any]:
    """JSON-safe copy of every column, enough to restore the row."""
    return {
        "id": legacy.id,
        "client_id": legacy.client_id,
        "policy_number": legacy.policy_number,
        "policy_type": legacy.policy_type,
        "provider": legacy.provider,
        "description": legacy.description,
        "premium_amount": str(legacy.premium_amount),
        "commission_amount": str(legacy.commission_amount),
        "start_date": legacy.start_date.isoformat(),
        "expiry_date": legacy.expiry_date.isoformat(),
        "duration_months": legacy.duration_months,
        "status": legacy.status,
    }


def _reason(errors: dict[str, str]) -> str:
    return "; ".join(f"{name}: {message}" for name, message in errors.items())


async def convert_legacy_record(
    db: AsyncSession,
    legacy: LegacyPolicy,
    config: PolicyMigrationConfig,
    *,
    run_id: uuid.UUID | None = None,
    today: date | None = None,
) -> ConversionResult:
    """
    Convert one legacy row into template + instance form.

    Invalid records, missing clients and policy-number conflicts are
    skipped with a reason and the legacy row is left in place.  A client
    that already holds the template counts as already migrated
    (``duplicate``): the legacy row is retired without a new instance.
    """
    legacy_id = legacy.id
    payload = legacy_payload(legacy)

    template_result = validate_template(payload, config.validation)
    instance_result = validate_instance(payload, config.validation, today=today, require_references=False)
    errors = {**instance_result.errors, **template_result.errors}
    if errors:
        return ConversionResult(legacy_id, ConversionOutcome.SKIPPED, reason=_reason(errors))

    if not await client_repository.client_exists(db, legacy.client_id):
        return ConversionResult(legacy_id, ConversionOutcome.SKIPPED, reason=f"Client {legacy.client_id} not found")

    warnings = {**template_result.warnings, **instance_result.warnings}
    fields = template_result.cleaned
    key = policy_number_key(fields["policy_number"])
    existing = await template_repository.get_by_number_key(db, key)
    decision = match_template(existing, fields, allow_duplicates=config.validation.allow_duplicates)

    if decision == TemplateMatch.CONFLICT:
        return ConversionResult(
            legacy_id,
            ConversionOutcome.SKIPPED,
            reason=f"Policy number {fields['policy_number']} is already registered with a different type or provider",
        )

    template_created = decision == TemplateMatch.CREATE
    if template_created:
        template = await template_repository.insert_template(
            db,
            policy_number=fields["policy_number"],
            policy_number_key=key,
            policy_type=fields["policy_type"],
            provider=fields["provider"],
            description=fields.get("description"),
        )
    else:
        template = existing
        if decision == TemplateMatch.MERGE:
            warnings["policyNumber"] = (
                f"Merged into existing template {template.policy_number} "
                f"({template.policy_type}, {template.provider})"
            )

    outcome = ConversionOutcome.CONVERTED
    instance_id = None
    if await instance_repository.find_for_client_template(db, legacy.client_id, template.id) is not None:
        outcome = ConversionOutcome.DUPLICATE
    else:
        terms = instance_result.cleaned
        instance = await instance_repository.insert_instance(
            db,
            template_id=template.id,
            client_id=legacy.client_id,
            premium_amount=terms["premium_amount"],
            commission_amount=terms["commission_amount"],
            start_date=terms["start_date"],
            expiry_date=terms["expiry_date"],
            duration_months=terms.get("duration_months"),
            status=terms.get("status") or PolicyStatus.ACTIVE.value,
        )
        instance_id = instance.id

    backup_id = None
    if config.batch.enable_rollback:
        now = utcnow()
        backup = await run_repository.insert_backup(
            db,
            legacy_policy_id=legacy_id,
            run_id=run_id,
            template_id=template.id,
            instance_id=instance_id,
            template_created=template_created,
            snapshot=legacy_snapshot(legacy),
            created_at=now,
            expires_at=now + timedelta(days=config.batch.backup_retention_days),
        )
        backup_id = backup.id

    await legacy_repository.delete_legacy(db, legacy)
    logger.debug(
        "Legacy record converted",
        legacy_id=legacy_id,
        outcome=outcome.value,
        template_id=str(template.id),
        template_created=template_created,
    )
    return ConversionResult(
        legacy_id,
        outcome,
        template_id=template.id,
        instance_id=instance_id,
        template_created=template_created,
        backup_id=backup_id,
        warnings=warnings,
    )
