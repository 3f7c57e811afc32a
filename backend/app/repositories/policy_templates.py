"""
PolicyTemplate repository — data access for the policy_templates table.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import and_, case, delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import PolicyStatus
from app.db.models.policy_instance import PolicyInstance
from app.db.models.policy_template import PolicyTemplate

SORT_COLUMNS = {
    "policyNumber": PolicyTemplate.policy_number_key,
    "policyType": PolicyTemplate.policy_type,
    "provider": PolicyTemplate.provider,
    "createdAt": PolicyTemplate.created_at,
}


def _like_pattern(query: str) -> str:
    escaped = query.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _live_active(today: date):
    """SQL predicate: stored Active and not yet past expiry (display Active/ExpiringSoon)."""
    return and_(PolicyInstance.status == PolicyStatus.ACTIVE.value, PolicyInstance.expiry_date > today)


def _instance_counts(today: date):
    return (
        select(
            PolicyInstance.template_id.label("template_id"),
            func.count(PolicyInstance.id).label("instance_count"),
            func.sum(case((_live_active(today), 1), else_=0)).label("active_instance_count"),
        )
        .group_by(PolicyInstance.template_id)
        .subquery()
    )


async def get_template(db: AsyncSession, template_id: uuid.UUID) -> PolicyTemplate | None:
    """Fetch a template by primary key."""
    return await db.get(PolicyTemplate, template_id)


async def get_by_number_key(
    db: AsyncSession,
    number_key: str,
    *,
    exclude_id: uuid.UUID | None = None,
) -> PolicyTemplate | None:
    """Fetch the template registered under a lower-cased policy number."""
    stmt = select(PolicyTemplate).where(PolicyTemplate.policy_number_key == number_key)
    if exclude_id is not None:
        stmt = stmt.where(PolicyTemplate.id != exclude_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def insert_template(db: AsyncSession, **fields: Any) -> PolicyTemplate:
    """Insert a template row. Raises IntegrityError on a duplicate number key."""
    template = PolicyTemplate(**fields)
    db.add(template)
    await db.flush()
    return template


async def apply_changes(db: AsyncSession, template: PolicyTemplate, changes: dict[str, Any]) -> PolicyTemplate:
    for key, value in changes.items():
        setattr(template, key, value)
    await db.flush()
    return template


async def list_templates(
    db: AsyncSession,
    *,
    today: date,
    search: str | None = None,
    policy_types: list[str] | None = None,
    providers: list[str] | None = None,
    has_instances: bool | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[tuple[PolicyTemplate, int, int]], int]:
    """
    Filtered, sorted, paginated template listing.

    Returns ``([(template, instance_count, active_instance_count), ...], total)``.
    """
    counts = _instance_counts(today)
    instance_count = func.coalesce(counts.c.instance_count, 0)
    active_count = func.coalesce(counts.c.active_instance_count, 0)

    conditions = []
    if search and search.strip():
        pattern = _like_pattern(search)
        conditions.append(
            or_(
                PolicyTemplate.policy_number.ilike(pattern, escape="\\"),
                PolicyTemplate.provider.ilike(pattern, escape="\\"),
                PolicyTemplate.policy_type.ilike(pattern, escape="\\"),
                PolicyTemplate.description.ilike(pattern, escape="\\"),
            )
        )
    if policy_types:
        conditions.append(PolicyTemplate.policy_type.in_(policy_types))
    if providers:
        conditions.append(PolicyTemplate.provider.in_(providers))
    if has_instances is True:
        conditions.append(instance_count > 0)
    elif has_instances is False:
        conditions.append(instance_count == 0)

    base = select(PolicyTemplate).outerjoin(counts, counts.c.template_id == PolicyTemplate.id).where(*conditions)

    total_stmt = select(func.count()).select_from(base.subquery())
    total = (await db.execute(total_stmt)).scalar_one()

    sort_column = instance_count if sort_by == "instanceCount" else SORT_COLUMNS.get(sort_by, PolicyTemplate.created_at)
    ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()

    stmt = (
        base.add_columns(instance_count, active_count)
        .order_by(ordering, PolicyTemplate.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    rows = [(template, int(count), int(active)) for template, count, active in result.all()]
    return rows, total


async def search_templates(
    db: AsyncSession,
    query: str,
    *,
    exclude_client_id: str | None = None,
    limit: int = 10,
) -> list[PolicyTemplate]:
    """Case-insensitive substring match over policy number, provider and type."""
    pattern = _like_pattern(query)
    stmt = select(PolicyTemplate).where(
        or_(
            PolicyTemplate.policy_number.ilike(pattern, escape="\\"),
            PolicyTemplate.provider.ilike(pattern, escape="\\"),
            PolicyTemplate.policy_type.ilike(pattern, escape="\\"),
        )
    )
    if exclude_client_id:
        already_held = exists().where(
            PolicyInstance.template_id == PolicyTemplate.id,
            PolicyInstance.client_id == exclude_client_id,
        )
        stmt = stmt.where(~already_held)
    # an exact policy number match always sorts first
    exact_first = case((PolicyTemplate.policy_number_key == query.strip().lower(), 0), else_=1)
    stmt = stmt.order_by(exact_first, PolicyTemplate.policy_number_key).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def distinct_values(db: AsyncSession) -> dict[str, list[str]]:
    """Distinct providers and policy types currently in use."""
    providers = await db.execute(select(PolicyTemplate.provider).distinct().order_by(PolicyTemplate.provider))
    types = await db.execute(select(PolicyTemplate.policy_type).distinct().order_by(PolicyTemplate.policy_type))
    return {"providers": list(providers.scalars().all()), "policyTypes": list(types.scalars().all())}


async def template_stats(db: AsyncSession, *, today: date, soon_until: date) -> dict[str, Any]:
    """Aggregate numbers over all templates and their instances."""
    total_templates = (await db.execute(select(func.count(PolicyTemplate.id)))).scalar_one()

    by_type = await db.execute(
        select(PolicyTemplate.policy_type, func.count(PolicyTemplate.id)).group_by(PolicyTemplate.policy_type)
    )
    by_provider = await db.execute(
        select(PolicyTemplate.provider, func.count(PolicyTemplate.id)).group_by(PolicyTemplate.provider)
    )

    live = _live_active(today)
    instance_row = (
        await db.execute(
            select(
                func.count(PolicyInstance.id),
                func.sum(case((and_(live, PolicyInstance.expiry_date > soon_until), 1), else_=0)),
                func.sum(case((and_(live, PolicyInstance.expiry_date <= soon_until), 1), else_=0)),
                func.sum(
                    case(
                        (
                            and_(
                                PolicyInstance.status != PolicyStatus.CANCELLED.value,
                                or_(
                                    PolicyInstance.status == PolicyStatus.EXPIRED.value,
                                    PolicyInstance.expiry_date <= today,
                                ),
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ),
                func.sum(case((PolicyInstance.status == PolicyStatus.CANCELLED.value, 1), else_=0)),
                func.coalesce(func.sum(PolicyInstance.premium_amount), 0),
                func.coalesce(func.sum(PolicyInstance.commission_amount), 0),
            )
        )
    ).one()

    return {
        "totalTemplates": total_templates,
        "byType": {key: count for key, count in by_type.all()},
        "byProvider": {key: count for key, count in by_provider.all()},
        "totalInstances": instance_row[0] or 0,
        "activeInstances": int(instance_row[1] or 0),
        "expiringSoonInstances": int(instance_row[2] or 0),
        "expiredInstances": int(instance_row[3] or 0),
        "cancelledInstances": int(instance_row[4] or 0),
        "totalPremium": instance_row[5],
        "totalCommission": instance_row[6],
    }


async def delete_template_cascade(db: AsyncSession, template_id: uuid.UUID) -> list[str]:
    """
    Delete every instance of the template, then the template itself.

    Runs inside the caller's transaction so both deletes commit or roll
    back together.  Returns the client ids that held an instance.
    """
    clients = await db.execute(
        select(PolicyInstance.client_id).where(PolicyInstance.template_id == template_id).distinct()
    )
    affected = sorted(clients.scalars().all())
    await db.execute(delete(PolicyInstance).where(PolicyInstance.template_id == template_id))
    await db.execute(delete(PolicyTemplate).where(PolicyTemplate.id == template_id))
    await db.flush()
    return affected


async def count_instances(db: AsyncSession, template_id: uuid.UUID) -> int:
    stmt = select(func.count(PolicyInstance.id)).where(PolicyInstance.template_id == template_id)
    return (await db.execute(stmt)).scalar_one()


async def find_duplicate_number_keys(db: AsyncSession) -> list[dict[str, Any]]:
    """Policy numbers registered more than once, ignoring case."""
    key = func.lower(PolicyTemplate.policy_number)
    stmt = select(key, func.count(PolicyTemplate.id)).group_by(key).having(func.count(PolicyTemplate.id) > 1)
    result = await db.execute(stmt)
    return [{"policyNumberKey": number_key, "count": count} for number_key, count in result.all()]


async def count_templates(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(PolicyTemplate.id)))).scalar_one()
