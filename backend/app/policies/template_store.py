"""
Policy Template Store — owns policy-number uniqueness and template metadata.

Uniqueness is enforced twice: a friendly pre-check (same query path as
search) and the UNIQUE constraint on ``policy_number_key``.  Only the
constraint is authoritative; an ``IntegrityError`` from it surfaces as
``ConflictError`` exactly like the pre-check does.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import recorder
from app.core.config import settings
from app.core.constants import AuditAction, AuditEntityType
from app.core.errors import ConflictError, NotFoundError
from app.core.logging import get_logger
from app.db.models.policy_template import PolicyTemplate
from app.policies.serializers import serialize_instance, serialize_template
from app.policies.status import utc_today
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository
from app.validation.duplicate_detector import policy_number_key
from app.validation.policy_validator import ValidationConfig, validate_template

logger = get_logger(__name__)

DUPLICATE_NUMBER_MESSAGE = "A policy template with this policy number already exists"
MAX_LIST_LIMIT = 100
MAX_SEARCH_LIMIT = 50
SORT_FIELDS = {"policyNumber", "policyType", "provider", "createdAt", "instanceCount"}


class TemplateStore:
    """Template CRUD, search and listing over one session/transaction."""

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

    async def get(self, template_id: uuid.UUID) -> PolicyTemplate:
        template = await template_repository.get_template(self.db, template_id)
        if template is None:
            raise NotFoundError("Policy template", template_id)
        return template

    # ── Mutations ──────────────────────────────────

    async def create(self, payload: Mapping[str, Any]) -> tuple[PolicyTemplate, dict[str, str]]:
        """Validate and persist a new template. Returns ``(template, warnings)``."""
        result = validate_template(payload, self.validation)
        result.raise_for_errors()
        fields = result.cleaned

        key = policy_number_key(fields["policy_number"])
        if await template_repository.get_by_number_key(self.db, key) is not None:
            raise ConflictError(DUPLICATE_NUMBER_MESSAGE, field="policyNumber")

        try:
            async with self.db.begin_nested():
                template = await template_repository.insert_template(
                    self.db,
                    policy_number=fields["policy_number"],
                    policy_number_key=key,
                    policy_type=fields["policy_type"],
                    provider=fields["provider"],
                    description=fields.get("description"),
                )
        except IntegrityError:
            logger.warning("Template create lost uniqueness race", policy_number=fields["policy_number"])
            raise ConflictError(DUPLICATE_NUMBER_MESSAGE, field="policyNumber") from None

        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.POLICY_TEMPLATE,
            entity_id=template.id,
            description=f"Created policy template {template.policy_number}",
            details={"policyNumber": template.policy_number, "policyType": template.policy_type, "provider": template.provider},
        )
        logger.info("Template created", template_id=str(template.id), policy_number=template.policy_number)
        return template, result.warnings

    async def update(
        self, template_id: uuid.UUID, payload: Mapping[str, Any]
    ) -> tuple[PolicyTemplate, dict[str, str]]:
        """Re-validate the merged record and apply the changes."""
        template = await self.get(template_id)
        merged = {
            "policyNumber": template.policy_number,
            "policyType": template.policy_type,
            "provider": template.provider,
            "description": template.description,
        }
        merged.update({_camel(key): value for key, value in payload.items()})

        result = validate_template(merged, self.validation)
        result.raise_for_errors()
        fields = result.cleaned

        key = policy_number_key(fields["policy_number"])
        if key != template.policy_number_key:
            if await template_repository.get_by_number_key(self.db, key, exclude_id=template.id) is not None:
                raise ConflictError(DUPLICATE_NUMBER_MESSAGE, field="policyNumber")

        before = _template_fields(template)
        changes = {
            "policy_number": fields["policy_number"],
            "policy_number_key": key,
            "policy_type": fields["policy_type"],
            "provider": fields["provider"],
            "description": fields.get("description"),
        }
        try:
            async with self.db.begin_nested():
                await template_repository.apply_changes(self.db, template, changes)
        except IntegrityError:
            raise ConflictError(DUPLICATE_NUMBER_MESSAGE, field="policyNumber") from None

        diff = recorder.describe_changes(before, _template_fields(template))
        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.UPDATE,
            entity_type=AuditEntityType.POLICY_TEMPLATE,
            entity_id=template.id,
            description=f"Updated policy template {template.policy_number}",
            details={"changes": diff},
        )
        logger.info("Template updated", template_id=str(template.id), changed=sorted(diff))
        return template, result.warnings

    async def delete(self, template_id: uuid.UUID) -> dict[str, Any]:
        """Delete the template and all of its instances in the caller's transaction."""
        template = await self.get(template_id)
        instance_count = await template_repository.count_instances(self.db, template.id)
        policy_number = template.policy_number

        affected_clients = await template_repository.delete_template_cascade(self.db, template.id)

        await recorder.record(
            self.db,
            actor_id=self.actor_id,
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.POLICY_TEMPLATE,
            entity_id=template_id,
            description=f"Deleted policy template {policy_number} and {instance_count} instance(s)",
            details={"policyNumber": policy_number, "deletedInstances": instance_count, "affectedClients": affected_clients},
        )
        logger.info(
            "Template deleted",
            template_id=str(template_id),
            deleted_instances=instance_count,
            affected_clients=len(affected_clients),
        )
        return {"deletedInstances": instance_count, "affectedClients": affected_clients}

    # ── Reads ──────────────────────────────────────

    async def search(
        self,
        query: str,
        *,
        exclude_client_id: str | None = None,
        limit: int = 10,
    ) -> list[PolicyTemplate]:
        """Single search path for the UI box and the uniqueness pre-check."""
        if not query or not query.strip():
            return []
        limit = min(max(limit, 1), MAX_SEARCH_LIMIT)
        return await template_repository.search_templates(
            self.db, query, exclude_client_id=exclude_client_id, limit=limit
        )

    async def check_policy_number_available(
        self, policy_number: str, *, exclude_id: uuid.UUID | None = None
    ) -> dict[str, Any]:
        key = policy_number_key(policy_number or "")
        matches = await self.search(policy_number, limit=MAX_SEARCH_LIMIT)
        taken = [t for t in matches if t.policy_number_key == key and t.id != exclude_id]
        if taken:
            return {"available": False, "message": DUPLICATE_NUMBER_MESSAGE, "existingId": str(taken[0].id)}
        return {"available": True, "message": "Policy number is available"}

    async def list_templates(
        self,
        *,
        search: str | None = None,
        policy_types: list[str] | None = None,
        providers: list[str] | None = None,
        has_instances: bool | None = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
        include_stats: bool = False,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        if sort_by not in SORT_FIELDS:
            sort_by = "createdAt"
        sort_order = "asc" if sort_order == "asc" else "desc"

        rows, total = await template_repository.list_templates(
            self.db,
            today=self.today,
            search=search,
            policy_types=policy_types,
            providers=providers,
            has_instances=has_instances,
            sort_by=sort_by,
            sort_order=sort_order,
            offset=(page - 1) * limit,
            limit=limit,
        )
        data: dict[str, Any] = {
            "templates": [
                serialize_template(template, instanceCount=count, activeInstanceCount=active)
                for template, count, active in rows
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
                "hasNext": page * limit < total,
                "hasPrev": page > 1,
            },
        }
        if include_stats:
            data["stats"] = await self.stats()
        return data

    async def stats(self) -> dict[str, Any]:
        stats = await template_repository.template_stats(
            self.db,
            today=self.today,
            soon_until=self.today + timedelta(days=settings.EXPIRY_SOON_DAYS),
        )
        stats["totalPremium"] = float(stats["totalPremium"] or 0)
        stats["totalCommission"] = float(stats["totalCommission"] or 0)
        return stats

    async def available_filters(self) -> dict[str, list[str]]:
        return await template_repository.distinct_values(self.db)

    async def list_instances(self, template_id: uuid.UUID) -> list[dict[str, Any]]:
        await self.get(template_id)
        instances = await instance_repository.list_for_template(self.db, template_id)
        return [serialize_instance(instance, self.today) for instance in instances]

    async def details(self, template_id: uuid.UUID) -> dict[str, Any]:
        """Template plus its instances and per-display-status counts."""
        template = await self.get(template_id)
        instances = await self.list_instances(template_id)
        by_status: dict[str, int] = {}
        for instance in instances:
            by_status[instance["displayStatus"]] = by_status.get(instance["displayStatus"], 0) + 1
        return serialize_template(
            template,
            instanceCount=len(instances),
            instancesByStatus=by_status,
            instances=instances,
        )


def _template_fields(template: PolicyTemplate) -> dict[str, Any]:
    return {
        "policyNumber": template.policy_number,
        "policyType": template.policy_type,
        "provider": template.provider,
        "description": template.description,
    }


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)
