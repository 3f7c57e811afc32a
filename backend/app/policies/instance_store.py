"""
Policy Instance Store — binds a client to a template with concrete terms.

Partial updates are validated against the merged record (stored values
overlaid with the incoming ones), so changing only the premium still
re-checks the commission <= premium invariant against the stored
commission.  Status transitions skip date validation.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import recorder
from app.core.constants import AuditAction, AuditEntityType, DisplayStatus, PolicyStatus
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.db.models.policy_instance import PolicyInstance
from app.db.models.policy_template import PolicyTemplate
from app.policies.serializers import money, serialize_instance, serialize_template
from app.policies.status import compute_display_status, utc_today
from app.repositories import clients as client_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository
from app.validation import schema_validator as sv
from app.validation.policy_validator import ValidationConfig, validate_instance

logger = get_logger(__name__)

DUPLICATE_ASSOCIATION_MESSAGE = "Client already has this policy template"
TERM_FIELDS = ("premium_amount", "commission_amount", "start_date", "expiry_date", "duration_months")


class InstanceStore:
    """Instance CRUD, status transitions and per-client aggregates."""

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

    async def _load(self, instance_id: uuid.UUID) -> tuple[PolicyInstance, PolicyTemplate]:
        row = await instance_repository.get_with_template(self.db, instance_id)
        if row is None:
            raise NotFoundError("Policy instance", instance_id)
        return row

    async def _require_client(self, client_id: str) -> None:
        if not await client_repository.client_exists(self.db, client_id):
            raise NotFoundError("Client", client_id)

    # ── Mutations ──────────────────────────────────

    async def create(
        self,
        client_id: str,
        template_id: uuid.UUID | str,
        payload: Mapping[str, Any],
    ) -> tuple[PolicyInstance, PolicyTemplate, dict[str, str]]:
        """Validate and attach ``template_id`` to ``client_id``."""
        candidate = dict(payload)
        candidate["clientId"] = client_id
        candidate["templateId"] = template_id
        result = validate_instance(candidate, self.validation, today=self.today)
        result.raise_for_errors()
        fields = result.cleaned

        template = await template_repository.get_template(self.db, fields["template_id"])
        if template is None:
            raise NotFoundError("Policy template", fields["template_id"])
        await self._require_client(fields["client_id"])

        if await instance_repository.find_for_client_template(self.db, fields["client_id"], template.id):
            raise ConflictError(DUPLICATE_ASSOCIATION_MESSAGE, field="templateId")

        try:
            async with self.db.begin_nested():
                instance = await instance_repository.insert_instance(
                    self.db,
                    template_id=template.id,
                    client_id=fields["client_id"],
                    status=fields.get("status") or PolicyStatus.ACTIVE.value,
                    **{name: fields.get(name) for name in TERM_FIELDS},
                )
        except IntegrityError:
            raise ConflictError(DUPLICATE_ASSOCIATION_MESSAGE, field="templateId") from None

        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.POLICY_INSTANCE,
            entity_id=instance.id,
            client_id=instance.client_id,
            description=f"Added policy {template.policy_number} to client {instance.client_id}",
            details={
                "templateId": template.id,
                "premiumAmount": instance.premium_amount,
                "commissionAmount": instance.commission_amount,
                "startDate": instance.start_date,
                "expiryDate": instance.expiry_date,
            },
        )
        logger.info("Instance created", instance_id=str(instance.id), client_id=instance.client_id, template_id=str(template.id))
        return instance, template, result.warnings

    async def update(
        self, instance_id: uuid.UUID, payload: Mapping[str, Any]
    ) -> tuple[PolicyInstance, PolicyTemplate, dict[str, str]]:
        """Apply a (possibly partial) term update after validating the merged record."""
        instance, template = await self._load(instance_id)
        incoming = {sv.SNAKE_TO_CAMEL.get(key, key): value for key, value in payload.items()}

        for ref, current in (("templateId", str(instance.template_id)), ("clientId", instance.client_id)):
            if ref in incoming and str(incoming[ref]) != current:
                raise ValidationError({ref: f"{ref} cannot be changed on an existing policy instance"})
            incoming.pop(ref, None)

        merged: dict[str, Any] = {
            "premiumAmount": instance.premium_amount,
            "commissionAmount": instance.commission_amount,
            "startDate": instance.start_date,
            "expiryDate": instance.expiry_date,
            "durationMonths": instance.duration_months,
            "status": instance.status,
        }
        merged.update(incoming)
        check_fields = set(incoming)
        explicit_expiry = not sv.is_blank(incoming.get("expiryDate"))

        # An explicit expiry replaces the term length it was derived from
        if explicit_expiry and "durationMonths" not in incoming:
            merged["durationMonths"] = None
        elif not explicit_expiry and merged.get("durationMonths") is not None:
            if "durationMonths" in incoming or ("startDate" in incoming and _duration_matches_expiry(instance)):
                merged.pop("expiryDate", None)
                check_fields.add("expiryDate")
            elif "startDate" in incoming:
                # stored duration no longer describes the stored expiry; keep the expiry
                merged["durationMonths"] = None

        result = validate_instance(
            merged,
            self.validation,
            today=self.today,
            check_fields=check_fields,
            require_references=False,
        )
        result.raise_for_errors()
        fields = result.cleaned

        before = _instance_fields(instance)
        changes = {name: fields.get(name) for name in TERM_FIELDS}
        if "status" in incoming:
            changes["status"] = fields["status"]
        await instance_repository.apply_changes(self.db, instance, changes)

        diff = recorder.describe_changes(before, _instance_fields(instance))
        if diff:
            await recorder.record(
                self.db,
                actor_id=self.actor_id,
                action=AuditAction.UPDATE,
                entity_type=AuditEntityType.POLICY_INSTANCE,
                entity_id=instance.id,
                client_id=instance.client_id,
                description=f"Updated policy {template.policy_number} for client {instance.client_id}",
                details={"changes": diff},
            )
        logger.info("Instance updated", instance_id=str(instance.id), changed=sorted(diff))
        return instance, template, result.warnings

    async def update_status(
        self, instance_id: uuid.UUID, new_status: str, *, reason: str | None = None
    ) -> tuple[PolicyInstance, PolicyTemplate]:
        """Direct status transition; dates are not re-validated."""
        try:
            status = sv.to_policy_status(new_status)
        except ValueError as exc:
            raise ValidationError({"status": str(exc)}) from None

        instance, template = await self._load(instance_id)
        previous = instance.status
        if previous == status.value:
            return instance, template

        await instance_repository.apply_changes(self.db, instance, {"status": status.value})
        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.STATUS_CHANGE,
            entity_type=AuditEntityType.POLICY_INSTANCE,
            entity_id=instance.id,
            client_id=instance.client_id,
            description=f"Changed status of policy {template.policy_number} from {previous} to {status.value}",
            details={"from": previous, "to": status.value, "reason": reason},
        )
        logger.info("Instance status changed", instance_id=str(instance.id), old=previous, new=status.value)
        return instance, template

    async def delete(self, instance_id: uuid.UUID) -> None:
        """Remove one instance. The template and other instances are untouched."""
        instance, template = await self._load(instance_id)
        client_id = instance.client_id
        await instance_repository.delete_instance(self.db, instance)
        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.POLICY_INSTANCE,
            entity_id=instance_id,
            client_id=client_id,
            description=f"Removed policy {template.policy_number} from client {client_id}",
            details={"templateId": template.id},
        )
        logger.info("Instance deleted", instance_id=str(instance_id), client_id=client_id)

    # ── Reads ──────────────────────────────────────

    async def get(self, instance_id: uuid.UUID) -> dict[str, Any]:
        instance, template = await self._load(instance_id)
        return serialize_instance(instance, self.today, template)

    async def list_for_client(
        self,
        client_id: str,
        *,
        status: str | None = None,
        policy_type: str | None = None,
    ) -> list[dict[str, Any]]:
        await self._require_client(client_id)
        rows = await instance_repository.list_for_client(self.db, client_id, status=status, policy_type=policy_type)
        return [serialize_instance(instance, self.today, template) for instance, template in rows]

    async def list_for_template(self, template_id: uuid.UUID) -> list[dict[str, Any]]:
        instances = await instance_repository.list_for_template(self.db, template_id)
        return [serialize_instance(instance, self.today) for instance in instances]

    async def stats_for_client(self, client_id: str) -> dict[str, Any]:
        """Counts and sums over display status, so lapsed-but-unswept policies are not active."""
        await self._require_client(client_id)
        rows = await instance_repository.list_for_client(self.db, client_id)

        counts = {status: 0 for status in DisplayStatus}
        total_premium = total_commission = active_premium = active_commission = Decimal("0")
        for instance, _template in rows:
            display = compute_display_status(instance.status, instance.expiry_date, self.today)
            counts[display] += 1
            total_premium += instance.premium_amount
            total_commission += instance.commission_amount
            if display in (DisplayStatus.ACTIVE, DisplayStatus.EXPIRING_SOON):
                active_premium += instance.premium_amount
                active_commission += instance.commission_amount

        return {
            "totalPolicies": len(rows),
            "activePolicies": counts[DisplayStatus.ACTIVE] + counts[DisplayStatus.EXPIRING_SOON],
            "expiringSoonPolicies": counts[DisplayStatus.EXPIRING_SOON],
            "expiredPolicies": counts[DisplayStatus.EXPIRED],
            "cancelledPolicies": counts[DisplayStatus.CANCELLED],
            "totalPremium": money(total_premium),
            "totalCommission": money(total_commission),
            "activePremium": money(active_premium),
            "activeCommission": money(active_commission),
        }

    async def validate_association(
        self,
        client_id: str,
        template_id: uuid.UUID | str,
        *,
        exclude_instance_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        """Would attaching ``template_id`` to ``client_id`` be allowed? No writes."""
        errors: dict[str, str] = {}
        problem = sv.client_id_problem(str(client_id or ""))
        if problem:
            errors["clientId"] = problem
        try:
            template_uuid = sv.to_uuid(template_id)
        except ValueError:
            errors["templateId"] = "Template ID must be a valid identifier"
            template_uuid = None

        template = None
        if template_uuid is not None:
            template = await template_repository.get_template(self.db, template_uuid)
            if template is None:
                errors["templateId"] = "Policy template not found"
        if "clientId" not in errors and not await client_repository.client_exists(self.db, client_id):
            errors["clientId"] = "Client not found"

        if not errors and template is not None:
            existing = await instance_repository.find_for_client_template(
                self.db, client_id, template.id, exclude_id=exclude_instance_id
            )
            if existing is not None:
                errors["templateId"] = DUPLICATE_ASSOCIATION_MESSAGE

        return {
            "valid": not errors,
            "errors": errors,
            "template": serialize_template(template) if template is not None else None,
        }


def _instance_fields(instance: PolicyInstance) -> dict[str, Any]:
    return {
        "premiumAmount": instance.premium_amount,
        "commissionAmount": instance.commission_amount,
        "startDate": instance.start_date,
        "expiryDate": instance.expiry_date,
        "durationMonths": instance.duration_months,
        "status": instance.status,
    }


def _duration_matches_expiry(instance: PolicyInstance) -> bool:
    if instance.duration_months is None:
        return False
    return sv.add_months(instance.start_date, instance.duration_months) == instance.expiry_date
