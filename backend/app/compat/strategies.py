"""
Compatibility strategies — one read/write contract, one class per phase shape.

The strategy class is chosen once from the resolved migration config
(``select_strategy``) and then instantiated per unit of work with a
session.  No method branches on phase flags:

    LegacyOnlyStrategy     use_template_system = False
    TemplateOnlyStrategy   templates, no fallback
    HybridStrategy         templates first, legacy fallback on miss
    LazyMigratingStrategy  Hybrid + write-through of fallback hits

Creates go to exactly one shape.  Updates and deletes go to the shape
the addressed record lives in (identified by its id: UUID → template
instance, integer → legacy row).
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.audit import recorder
from app.compat.config import PolicyMigrationConfig
from app.compat.legacy_store import LegacyStore
from app.core.constants import AuditAction, AuditEntityType, ConversionOutcome, PolicySource
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.db.models.legacy_policy import LegacyPolicy
from app.db.models.policy_instance import PolicyInstance
from app.db.models.policy_template import PolicyTemplate
from app.db.session import async_session
from app.migration.converter import convert_legacy_record
from app.policies.instance_store import InstanceStore
from app.policies.serializers import money, status_annotations
from app.policies.status import utc_today
from app.policies.template_store import TemplateStore
from app.repositories import legacy_policies as legacy_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository
from app.validation import schema_validator as sv
from app.validation.duplicate_detector import TemplateMatch, match_template, policy_number_key
from app.validation.policy_validator import validate_template

logger = get_logger(__name__)

TEMPLATE_ONLY_FIELDS = ("policyNumber", "policyType", "provider", "description")
MAX_PAGE_SIZE = 100

Job = Callable[[], Awaitable[None]]
Scheduler = Callable[[Job], None]


# ═══════════════════════════════════════════════════════════
#  UnifiedPolicy — tagged record over both shapes
# ═══════════════════════════════════════════════════════════

@dataclass
class UnifiedPolicy:
    source: PolicySource
    id: str
    client_id: str
    policy_number: str
    policy_type: str
    provider: str
    description: str | None
    premium_amount: Any
    commission_amount: Any
    start_date: date
    expiry_date: date
    duration_months: int | None
    status: str
    template_id: str | None = None
    instance_id: str | None = None
    legacy_id: int | None = None

    @classmethod
    def from_instance(cls, instance: PolicyInstance, template: PolicyTemplate) -> "UnifiedPolicy":
        return cls(
            source=PolicySource.TEMPLATE,
            id=str(instance.id),
            client_id=instance.client_id,
            policy_number=template.policy_number,
            policy_type=template.policy_type,
            provider=template.provider,
            description=template.description,
            premium_amount=instance.premium_amount,
            commission_amount=instance.commission_amount,
            start_date=instance.start_date,
            expiry_date=instance.expiry_date,
            duration_months=instance.duration_months,
            status=instance.status,
            template_id=str(template.id),
            instance_id=str(instance.id),
        )

    @classmethod
    def from_legacy(cls, legacy: LegacyPolicy) -> "UnifiedPolicy":
        return cls(
            source=PolicySource.LEGACY,
            id=str(legacy.id),
            client_id=legacy.client_id,
            policy_number=legacy.policy_number,
            policy_type=legacy.policy_type,
            provider=legacy.provider,
            description=legacy.description,
            premium_amount=legacy.premium_amount,
            commission_amount=legacy.commission_amount,
            start_date=legacy.start_date,
            expiry_date=legacy.expiry_date,
            duration_months=legacy.duration_months,
            status=legacy.status,
            legacy_id=legacy.id,
        )

    def to_dict(self, today: date) -> dict[str, Any]:
        data = {
            "source": self.source.value,
            "id": self.id,
            "clientId": self.client_id,
            "policyNumber": self.policy_number,
            "policyType": self.policy_type,
            "provider": self.provider,
            "description": self.description,
            "premiumAmount": money(self.premium_amount),
            "commissionAmount": money(self.commission_amount),
            "startDate": self.start_date.isoformat(),
            "expiryDate": self.expiry_date.isoformat(),
            "durationMonths": self.duration_months,
            "status": self.status,
            "templateId": self.template_id,
            "instanceId": self.instance_id,
            "legacyId": self.legacy_id,
        }
        data.update(status_annotations(self.status, self.expiry_date, today))
        return data


def parse_policy_id(policy_id: str | int) -> tuple[PolicySource, Any]:
    """UUID → template instance id; integer → legacy id."""
    text = str(policy_id).strip()
    if text.isdigit():
        return PolicySource.LEGACY, int(text)
    try:
        return PolicySource.TEMPLATE, uuid.UUID(text)
    except ValueError:
        raise NotFoundError("Policy", policy_id) from None


# ═══════════════════════════════════════════════════════════
#  Background write-through (migrate-on-read)
# ═══════════════════════════════════════════════════════════

_background_tasks: set[asyncio.Task] = set()


def schedule_background(job: Job) -> None:
    """Run ``job`` after the current request without awaiting it."""
    task = asyncio.get_running_loop().create_task(job())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def drain_background_tasks() -> None:
    """Wait for in-flight write-throughs (shutdown)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


# ═══════════════════════════════════════════════════════════
#  Strategies
# ═══════════════════════════════════════════════════════════

class PolicyAccessStrategy:
    """Common contract. Subclasses decide which shapes are consulted."""

    name = "base"

    def __init__(
        self,
        db: AsyncSession,
        config: PolicyMigrationConfig,
        *,
        actor_id: str | None = None,
        today: date | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.actor_id = actor_id
        self._today = today
        self.session_factory = session_factory or async_session
        self.scheduler = scheduler or schedule_background
        options = {"validation": config.validation, "actor_id": actor_id, "today": today}
        self.legacy = LegacyStore(db, **options)
        self.templates = TemplateStore(db, **options)
        self.instances = InstanceStore(db, **options)

    @property
    def today(self) -> date:
        return self._today or utc_today()

    def describe(self) -> dict[str, Any]:
        return {"strategy": self.name, **self.config.to_dict()}

    def _page(self, policies: list[UnifiedPolicy], page: int, limit: int) -> dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        policies.sort(key=lambda p: (p.expiry_date, p.policy_number.lower(), p.id))
        window = policies[(page - 1) * limit : page * limit]
        return {
            "policies": [p.to_dict(self.today) for p in window],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(policies),
                "totalPages": (len(policies) + limit - 1) // limit,
            },
        }

    async def _legacy_policies(self, filters: Mapping[str, Any]) -> list[UnifiedPolicy]:
        rows, _total = await legacy_repository.list_page(
            self.db,
            client_id=filters.get("client_id"),
            policy_type=filters.get("policy_type"),
            status=filters.get("status"),
            offset=0,
            limit=10_000,
        )
        return [UnifiedPolicy.from_legacy(row) for row in rows]

    async def list_client_policies(self, client_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def list_policies(self, filters: Mapping[str, Any], *, page: int = 1, limit: int = 20) -> dict[str, Any]:
        raise NotImplementedError

    async def get_policy(self, policy_id: str | int) -> dict[str, Any]:
        raise NotImplementedError

    async def find_client_policy(self, client_id: str, policy_number: str) -> dict[str, Any]:
        raise NotImplementedError

    async def create_policy(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        raise NotImplementedError

    async def update_policy(self, policy_id: str | int, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        raise NotImplementedError

    async def delete_policy(self, policy_id: str | int) -> None:
        raise NotImplementedError


class LegacyOnlyStrategy(PolicyAccessStrategy):
    """All reads and writes hit the legacy table."""

    name = "legacy_only"

    def _legacy_id(self, policy_id: str | int) -> int:
        source, key = parse_policy_id(policy_id)
        if source != PolicySource.LEGACY:
            raise NotFoundError("Policy", policy_id)
        return key

    async def list_client_policies(self, client_id: str) -> list[dict[str, Any]]:
        rows = await legacy_repository.list_for_client(self.db, client_id)
        return [UnifiedPolicy.from_legacy(row).to_dict(self.today) for row in rows]

    async def list_policies(self, filters: Mapping[str, Any], *, page: int = 1, limit: int = 20) -> dict[str, Any]:
        return self._page(await self._legacy_policies(filters), page, limit)

    async def get_policy(self, policy_id: str | int) -> dict[str, Any]:
        legacy = await self.legacy.get(self._legacy_id(policy_id))
        return UnifiedPolicy.from_legacy(legacy).to_dict(self.today)

    async def find_client_policy(self, client_id: str, policy_number: str) -> dict[str, Any]:
        legacy = await legacy_repository.find_by_client_number(self.db, client_id, policy_number)
        if legacy is None:
            raise NotFoundError("Policy", policy_number)
        return UnifiedPolicy.from_legacy(legacy).to_dict(self.today)

    async def create_policy(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        legacy, warnings = await self.legacy.create(payload)
        return UnifiedPolicy.from_legacy(legacy).to_dict(self.today), warnings

    async def update_policy(self, policy_id: str | int, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        legacy, warnings = await self.legacy.update(self._legacy_id(policy_id), payload)
        return UnifiedPolicy.from_legacy(legacy).to_dict(self.today), warnings

    async def delete_policy(self, policy_id: str | int) -> None:
        await self.legacy.delete(self._legacy_id(policy_id))


class HybridStrategy(PolicyAccessStrategy):
    """Template shape first; legacy rows are still readable and editable."""

    name = "hybrid"
    fallback = True

    async def _on_fallback_hit(self, legacy_id: int) -> None:
        """Hook for subclasses; plain hybrid reads never write."""
        return None

    async def _template_policies(self, filters: Mapping[str, Any]) -> list[UnifiedPolicy]:
        options = {"status": filters.get("status"), "policy_type": filters.get("policy_type")}
        client_id = filters.get("client_id")
        if client_id:
            rows = await instance_repository.list_for_client(self.db, client_id, **options)
        else:
            rows = await instance_repository.list_joined(self.db, **options)
        return [UnifiedPolicy.from_instance(instance, template) for instance, template in rows]

    def _merge(self, template_side: list[UnifiedPolicy], legacy_side: list[UnifiedPolicy]) -> list[UnifiedPolicy]:
        """Template records win over a legacy record for the same client + number."""
        seen = {(p.client_id, policy_number_key(p.policy_number)) for p in template_side}
        return template_side + [
            p for p in legacy_side if (p.client_id, policy_number_key(p.policy_number)) not in seen
        ]

    async def list_client_policies(self, client_id: str) -> list[dict[str, Any]]:
        template_side = await self._template_policies({"client_id": client_id})
        if not self.fallback:
            return [p.to_dict(self.today) for p in template_side]

        merged = self._merge(template_side, await self._legacy_policies({"client_id": client_id}))
        for policy in merged:
            if policy.source == PolicySource.LEGACY:
                await self._on_fallback_hit(policy.legacy_id)
        return [p.to_dict(self.today) for p in merged]

    async def list_policies(self, filters: Mapping[str, Any], *, page: int = 1, limit: int = 20) -> dict[str, Any]:
        template_side = await self._template_policies(filters)
        legacy_side = await self._legacy_policies(filters) if self.fallback else []
        return self._page(self._merge(template_side, legacy_side), page, limit)

    async def get_policy(self, policy_id: str | int) -> dict[str, Any]:
        source, key = parse_policy_id(policy_id)
        if source == PolicySource.TEMPLATE:
            row = await instance_repository.get_with_template(self.db, key)
            if row is None:
                raise NotFoundError("Policy", policy_id)
            return UnifiedPolicy.from_instance(*row).to_dict(self.today)
        if not self.fallback:
            raise NotFoundError("Policy", policy_id)
        legacy = await self.legacy.get(key)
        result = UnifiedPolicy.from_legacy(legacy).to_dict(self.today)
        await self._on_fallback_hit(legacy.id)
        return result

    async def find_client_policy(self, client_id: str, policy_number: str) -> dict[str, Any]:
        template = await template_repository.get_by_number_key(self.db, policy_number_key(policy_number))
        if template is not None:
            instance = await instance_repository.find_for_client_template(self.db, client_id, template.id)
            if instance is not None:
                return UnifiedPolicy.from_instance(instance, template).to_dict(self.today)
        if self.fallback:
            legacy = await legacy_repository.find_by_client_number(self.db, client_id, policy_number)
            if legacy is not None:
                result = UnifiedPolicy.from_legacy(legacy).to_dict(self.today)
                await self._on_fallback_hit(legacy.id)
                return result
        raise NotFoundError("Policy", policy_number)

    async def create_policy(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        """Find-or-create the template by number, then attach an instance for the client."""
        template_result = validate_template(payload, self.config.validation)
        template_result.raise_for_errors()
        fields = template_result.cleaned
        client_id = sv.pick(payload, "clientId")

        if self.fallback and not self.config.validation.allow_duplicates and client_id:
            if await legacy_repository.find_by_client_number(self.db, str(client_id), fields["policy_number"]):
                raise ConflictError("Client already has this policy in the legacy store", field="policyNumber")

        existing = await template_repository.get_by_number_key(self.db, policy_number_key(fields["policy_number"]))
        decision = match_template(existing, fields, allow_duplicates=False)
        if decision == TemplateMatch.CONFLICT:
            raise ConflictError(
                "Policy number is already registered with a different type or provider", field="policyNumber"
            )
        if decision == TemplateMatch.CREATE:
            template, _ = await self.templates.create(payload)
        else:
            template = existing

        instance, template, warnings = await self.instances.create(client_id, template.id, payload)
        return UnifiedPolicy.from_instance(instance, template).to_dict(self.today), {
            **template_result.warnings,
            **warnings,
        }

    async def update_policy(self, policy_id: str | int, payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        source, key = parse_policy_id(policy_id)
        if source == PolicySource.LEGACY:
            if not self.fallback:
                raise NotFoundError("Policy", policy_id)
            legacy, warnings = await self.legacy.update(key, payload)
            return UnifiedPolicy.from_legacy(legacy).to_dict(self.today), warnings

        blocked = {name: "Change this on the policy template instead" for name in TEMPLATE_ONLY_FIELDS if sv.pick(payload, name) is not None}
        if blocked:
            raise ValidationError(blocked)
        instance, template, warnings = await self.instances.update(key, payload)
        return UnifiedPolicy.from_instance(instance, template).to_dict(self.today), warnings

    async def delete_policy(self, policy_id: str | int) -> None:
        source, key = parse_policy_id(policy_id)
        if source == PolicySource.TEMPLATE:
            await self.instances.delete(key)
        elif self.fallback:
            await self.legacy.delete(key)
        else:
            raise NotFoundError("Policy", policy_id)


class TemplateOnlyStrategy(HybridStrategy):
    """Template shape only; the legacy table is never consulted."""

    name = "template_only"
    fallback = False


class LazyMigratingStrategy(HybridStrategy):
    """Hybrid reads, plus a fire-and-forget conversion of every legacy hit."""

    name = "lazy_migrating"

    async def _on_fallback_hit(self, legacy_id: int) -> None:
        self.scheduler(lambda: self._migrate(legacy_id))

    async def _migrate(self, legacy_id: int) -> None:
        """Convert one legacy row in its own transaction. Never raises."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    legacy = await legacy_repository.get_legacy(session, legacy_id)
                    if legacy is None:
                        return
                    client_id = legacy.client_id
                    result = await convert_legacy_record(session, legacy, self.config, today=self._today)
                    if result.outcome == ConversionOutcome.SKIPPED:
                        logger.warning("Migrate-on-read skipped record", legacy_id=legacy_id, reason=result.reason)
                        return
                    await recorder.record(
                        session,
                        actor_id=self.actor_id,
                        action=AuditAction.MIGRATE,
                        entity_type=AuditEntityType.LEGACY_POLICY,
                        entity_id=legacy_id,
                        client_id=client_id,
                        description="Migrated legacy policy on read",
                        details=result.to_dict(),
                    )
            logger.info("Migrate-on-read completed", legacy_id=legacy_id, outcome=result.outcome.value)
        except Exception:
            logger.exception("Migrate-on-read failed", legacy_id=legacy_id)


def select_strategy(config: PolicyMigrationConfig) -> type[PolicyAccessStrategy]:
    """Pick the strategy class for a resolved config. Called once at start-up."""
    compat = config.compatibility
    if not compat.use_template_system:
        return LegacyOnlyStrategy
    if not compat.allow_fallback:
        return TemplateOnlyStrategy
    if compat.migrate_on_read:
        return LazyMigratingStrategy
    return HybridStrategy
