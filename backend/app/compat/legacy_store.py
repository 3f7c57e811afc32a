"""
Legacy Policy Store — validated writes to the single-table legacy shape.

Used by the compatibility strategies while the legacy shape is still
live.  Applies the same rule engine and audit trail as the template
stores.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import recorder
from app.core.constants import AuditAction, AuditEntityType, PolicyStatus
from app.core.errors import ConflictError, NotFoundError
from app.core.logging import get_logger
from app.db.models.legacy_policy import LegacyPolicy
from app.policies.status import utc_today
from app.repositories import clients as client_repository
from app.repositories import legacy_policies as legacy_repository
from app.validation import schema_validator as sv
from app.validation.policy_validator import ValidationConfig, ValidationResult, validate_instance, validate_template

logger = get_logger(__name__)

DUPLICATE_LEGACY_MESSAGE = "Client already has a policy with this policy number"
TEMPLATE_FIELDS = ("policy_number", "policy_type", "provider", "description")
TERM_FIELDS = ("premium_amount", "commission_amount", "start_date", "expiry_date", "duration_months")


def validate_combined(
    payload: Mapping[str, Any],
    config: ValidationConfig,
    *,
    today: date,
    check_fields: set[str] | None = None,
) -> ValidationResult:
    """Template and instance rules over one flat legacy-shaped payload."""
    template_part = validate_template(payload, config)
    instance_part = validate_instance(
        payload, config, today=today, check_fields=check_fields, require_references=False
    )
    result = ValidationResult(
        errors={**instance_part.errors, **template_part.errors},
        warnings={**instance_part.warnings, **template_part.warnings},
        cleaned={**instance_part.cleaned, **template_part.cleaned},
    )
    raw_client = sv.pick(payload, "clientId")
    if sv.is_blank(raw_client):
        result.error("clientId", "Client ID is required")
    else:
        client_id = str(raw_client).strip()
        problem = sv.client_id_problem(client_id)
        if problem:
            result.error("clientId", problem)
        else:
            result.cleaned["client_id"] = client_id
    return result


class LegacyStore:
    def __init__(
        self,
        db: AsyncSession,
        *,
        validation: ValidationConfig | None = None,
        actor_id: str | None = None,
        today: date | None = None,
    ) -> None:
        self.db = db
        self.validation = validation or ValidationConfig()
        self.actor_id = actor_id
        self._today = today

    @property
    def today(self) -> date:
        return self._today or utc_today()

    async def get(self, legacy_id: int) -> LegacyPolicy:
        legacy = await legacy_repository.get_legacy(self.db, legacy_id)
        if legacy is None:
            raise NotFoundError("Policy", legacy_id)
        return legacy

    async def create(self, payload: Mapping[str, Any]) -> tuple[LegacyPolicy, dict[str, str]]:
        result = validate_combined(payload, self.validation, today=self.today)
        result.raise_for_errors()
        fields = result.cleaned

        if not await client_repository.client_exists(self.db, fields["client_id"]):
            raise NotFoundError("Client", fields["client_id"])
        if await legacy_repository.find_by_client_number(self.db, fields["client_id"], fields["policy_number"]):
            raise ConflictError(DUPLICATE_LEGACY_MESSAGE, field="policyNumber")

        try:
            async with self.db.begin_nested():
                legacy = await legacy_repository.insert_legacy(
                    self.db,
                    client_id=fields["client_id"],
                    status=fields.get("status") or PolicyStatus.ACTIVE.value,
                    **{name: fields.get(name) for name in TEMPLATE_FIELDS + TERM_FIELDS},
                )
        except IntegrityError:
            raise ConflictError(DUPLICATE_LEGACY_MESSAGE, field="policyNumber") from None

        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.LEGACY_POLICY,
            entity_id=legacy.id,
            client_id=legacy.client_id,
            description=f"Created legacy policy {legacy.policy_number} for client {legacy.client_id}",
        )
        logger.info("Legacy policy created", legacy_id=legacy.id, client_id=legacy.client_id)
        return legacy, result.warnings

    async def update(self, legacy_id: int, payload: Mapping[str, Any]) -> tuple[LegacyPolicy, dict[str, str]]:
        legacy = await self.get(legacy_id)
        incoming = {sv.SNAKE_TO_CAMEL.get(key, key): value for key, value in payload.items()}
        incoming.pop("clientId", None)

        merged = {
            "clientId": legacy.client_id,
            "policyNumber": legacy.policy_number,
            "policyType": legacy.policy_type,
            "provider": legacy.provider,
            "description": legacy.description,
            "premiumAmount": legacy.premium_amount,
            "commissionAmount": legacy.commission_amount,
            "startDate": legacy.start_date,
            "expiryDate": legacy.expiry_date,
            "durationMonths": legacy.duration_months,
            "status": legacy.status,
        }
        merged.update(incoming)
        result = validate_combined(merged, self.validation, today=self.today, check_fields=set(incoming))
        result.raise_for_errors()
        fields = result.cleaned

        if sv.pick(incoming, "policyNumber") is not None:
            clash = await legacy_repository.find_by_client_number(self.db, legacy.client_id, fields["policy_number"])
            if clash is not None and clash.id != legacy.id:
                raise ConflictError(DUPLICATE_LEGACY_MESSAGE, field="policyNumber")

        before = dict(merged)
        changes = {name: fields.get(name) for name in TEMPLATE_FIELDS + TERM_FIELDS}
        changes["status"] = fields.get("status") or legacy.status
        await legacy_repository.apply_changes(self.db, legacy, changes)

        diff = recorder.describe_changes(
            {sv.FIELD_NAMES.get(k, k): v for k, v in before.items()}, changes
        )
        if diff:
            await recorder.record(
                self.db,
                actor_id=self.actor_id,
                action=AuditAction.UPDATE,
                entity_type=AuditEntityType.LEGACY_POLICY,
                entity_id=legacy.id,
                client_id=legacy.client_id,
                description=f"Updated legacy policy {legacy.policy_number}",
                details={"changes": diff},
            )
        logger.info("Legacy policy updated", legacy_id=legacy.id, changed=sorted(diff))
        return legacy, result.warnings

    async def delete(self, legacy_id: int) -> None:
        legacy = await self.get(legacy_id)
        client_id, number = legacy.client_id, legacy.policy_number
        await legacy_repository.delete_legacy(self.db, legacy)
        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.LEGACY_POLICY,
            entity_id=legacy_id,
            client_id=client_id,
            description=f"Deleted legacy policy {number}",
        )
        logger.info("Legacy policy deleted", legacy_id=legacy_id, client_id=client_id)
