"""
PolicyInstance repository — data access for the policy_instances table.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import PolicyStatus
from app.db.models.client import Client
from app.db.models.policy_instance import PolicyInstance
from app.db.models.policy_template import PolicyTemplate


async def get_instance(db: AsyncSession, instance_id: uuid.UUID) -> PolicyInstance | None:
    """Fetch an instance by primary key."""
    return await db.get(PolicyInstance, instance_id)


async def get_with_template(
    db: AsyncSession, instance_id: uuid.UUID
) -> tuple[PolicyInstance, PolicyTemplate] | None:
    stmt = (
        select(PolicyInstance, PolicyTemplate)
        .join(PolicyTemplate, PolicyTemplate.id == PolicyInstance.template_id)
        .where(PolicyInstance.id == instance_id)
    )
    row = (await db.execute(stmt)).first()
    return (row[0], row[1]) if row else None


async def find_for_client_template(
    db: AsyncSession,
    client_id: str,
    template_id: uuid.UUID,
    *,
    exclude_id: uuid.UUID | None = None,
) -> PolicyInstance | None:
    """The instance binding ``client_id`` to ``template_id``, if any."""
    stmt = select(PolicyInstance).where(
        PolicyInstance.client_id == client_id,
        PolicyInstance.template_id == template_id,
    )
    if exclude_id is not None:
        stmt = stmt.where(PolicyInstance.id != exclude_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def insert_instance(db: AsyncSession, **fields: Any) -> PolicyInstance:
    """Insert an instance row. Raises IntegrityError on a duplicate client+template."""
    instance = PolicyInstance(**fields)
    db.add(instance)
    await db.flush()
    return instance


async def apply_changes(db: AsyncSession, instance: PolicyInstance, changes: dict[str, Any]) -> PolicyInstance:
    for key, value in changes.items():
        setattr(instance, key, value)
    await db.flush()
    return instance


async def delete_instance(db: AsyncSession, instance: PolicyInstance) -> None:
    await db.delete(instance)
    await db.flush()


async def list_for_client(
    db: AsyncSession,
    client_id: str,
    *,
    status: str | None = None,
    policy_type: str | None = None,
) -> list[tuple[PolicyInstance, PolicyTemplate]]:
    """A client's instances joined to their templates, newest first."""
    stmt = (
        select(PolicyInstance, PolicyTemplate)
        .join(PolicyTemplate, PolicyTemplate.id == PolicyInstance.template_id)
        .where(PolicyInstance.client_id == client_id)
        .order_by(PolicyInstance.created_at.desc(), PolicyInstance.id)
    )
    if status:
        stmt = stmt.where(PolicyInstance.status == status)
    if policy_type:
        stmt = stmt.where(PolicyTemplate.policy_type == policy_type)
    result = await db.execute(stmt)
    return [(instance, template) for instance, template in result.all()]


async def list_joined(
    db: AsyncSession,
    *,
    status: str | None = None,
    policy_type: str | None = None,
) -> list[tuple[PolicyInstance, PolicyTemplate]]:
    """Every instance joined to its template, optionally filtered."""
    stmt = select(PolicyInstance, PolicyTemplate).join(PolicyTemplate, PolicyTemplate.id == PolicyInstance.template_id)
    if status:
        stmt = stmt.where(PolicyInstance.status == status)
    if policy_type:
        stmt = stmt.where(PolicyTemplate.policy_type == policy_type)
    result = await db.execute(stmt.order_by(PolicyInstance.id))
    return [(instance, template) for instance, template in result.all()]


async def list_for_template(db: AsyncSession, template_id: uuid.UUID) -> list[PolicyInstance]:
    stmt = (
        select(PolicyInstance)
        .where(PolicyInstance.template_id == template_id)
        .order_by(PolicyInstance.created_at.desc(), PolicyInstance.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_active_expiring(
    db: AsyncSession,
    *,
    today: date,
    until: date,
    client_id: str | None = None,
    template_id: uuid.UUID | None = None,
) -> list[tuple[PolicyInstance, PolicyTemplate]]:
    """Stored-Active instances expiring in ``(today, until]``, soonest first."""
    stmt = (
        select(PolicyInstance, PolicyTemplate)
        .join(PolicyTemplate, PolicyTemplate.id == PolicyInstance.template_id)
        .where(
            PolicyInstance.status == PolicyStatus.ACTIVE.value,
            PolicyInstance.expiry_date > today,
            PolicyInstance.expiry_date <= until,
        )
        .order_by(PolicyInstance.expiry_date.asc(), PolicyInstance.id)
    )
    if client_id:
        stmt = stmt.where(PolicyInstance.client_id == client_id)
    if template_id:
        stmt = stmt.where(PolicyInstance.template_id == template_id)
    result = await db.execute(stmt)
    return [(instance, template) for instance, template in result.all()]


async def list_stored_active(db: AsyncSession) -> list[PolicyInstance]:
    stmt = select(PolicyInstance).where(PolicyInstance.status == PolicyStatus.ACTIVE.value)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def mark_lapsed_expired(db: AsyncSession, *, today: date) -> list[tuple[uuid.UUID, str]]:
    """
    Conditional write: Active → Expired where expiry_date <= today.

    Returns ``(id, client_id)`` for exactly the rows this statement
    changed, so concurrent or repeated runs never double-report.
    """
    stmt = (
        update(PolicyInstance)
        .where(
            PolicyInstance.status == PolicyStatus.ACTIVE.value,
            PolicyInstance.expiry_date <= today,
        )
        .values(status=PolicyStatus.EXPIRED.value)
        .returning(PolicyInstance.id, PolicyInstance.client_id)
        .execution_options(synchronize_session="evaluate")
    )
    result = await db.execute(stmt)
    changed = [(row[0], row[1]) for row in result.all()]
    await db.flush()
    return changed



async def existing_ids(db: AsyncSession, instance_ids: list[uuid.UUID]) -> set[uuid.UUID]:
    if not instance_ids:
        return set()
    result = await db.execute(select(PolicyInstance.id).where(PolicyInstance.id.in_(instance_ids)))
    return set(result.scalars().all())


# ─── Integrity queries ────────────────────────

async def find_orphans(db: AsyncSession) -> list[dict[str, Any]]:
    """Instances whose template or client row no longer exists."""
    stmt = (
        select(PolicyInstance.id, PolicyInstance.template_id, PolicyInstance.client_id, PolicyTemplate.id, Client.id)
        .outerjoin(PolicyTemplate, PolicyTemplate.id == PolicyInstance.template_id)
        .outerjoin(Client, Client.id == PolicyInstance.client_id)
        .where((PolicyTemplate.id.is_(None)) | (Client.id.is_(None)))
    )
    result = await db.execute(stmt)
    return [
        {
            "instanceId": str(instance_id),
            "templateId": str(template_id),
            "clientId": client_id,
            "missing": "template" if found_template is None else "client",
        }
        for instance_id, template_id, client_id, found_template, _found_client in result.all()
    ]


async def find_duplicate_pairs(db: AsyncSession) -> list[dict[str, Any]]:
    """Client + template pairs held by more than one instance."""
    stmt = (
        select(PolicyInstance.client_id, PolicyInstance.template_id, func.count(PolicyInstance.id))
        .group_by(PolicyInstance.client_id, PolicyInstance.template_id)
        .having(func.count(PolicyInstance.id) > 1)
    )
    result = await db.execute(stmt)
    return [
        {"clientId": client_id, "templateId": str(template_id), "count": count}
        for client_id, template_id, count in result.all()
    ]


async def find_invariant_violations(db: AsyncSession) -> list[dict[str, Any]]:
    """Stored instances breaking commission <= premium or start < expiry."""
    stmt = select(PolicyInstance).where(
        (PolicyInstance.commission_amount > PolicyInstance.premium_amount)
        | (PolicyInstance.expiry_date <= PolicyInstance.start_date)
        | (PolicyInstance.premium_amount <= 0)
    )
    result = await db.execute(stmt)
    violations = []
    for instance in result.scalars().all():
        problems = []
        if instance.commission_amount > instance.premium_amount:
            problems.append("commission exceeds premium")
        if instance.expiry_date <= instance.start_date:
            problems.append("expiry not after start")
        if instance.premium_amount <= 0:
            problems.append("premium not positive")
        violations.append({"instanceId": str(instance.id), "clientId": instance.client_id, "problems": problems})
    return violations
