"""
LegacyPolicy repository — data access for the pre-template policy table.

Repository rules:
- Pure data-access logic only
- Every function receives AsyncSession explicitly
- Functions flush, but never commit
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.legacy_policy import LegacyPolicy


async def get_legacy(db: AsyncSession, legacy_id: int) -> LegacyPolicy | None:
    """Fetch a legacy policy by primary key."""
    return await db.get(LegacyPolicy, legacy_id)


async def find_by_client_number(db: AsyncSession, client_id: str, policy_number: str) -> LegacyPolicy | None:
    stmt = select(LegacyPolicy).where(
        LegacyPolicy.client_id == client_id,
        func.lower(LegacyPolicy.policy_number) == policy_number.strip().lower(),
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def insert_legacy(db: AsyncSession, **fields: Any) -> LegacyPolicy:
    legacy = LegacyPolicy(**fields)
    db.add(legacy)
    await db.flush()
    return legacy


async def apply_changes(db: AsyncSession, legacy: LegacyPolicy, changes: dict[str, Any]) -> LegacyPolicy:
    for key, value in changes.items():
        setattr(legacy, key, value)
    await db.flush()
    return legacy


async def delete_legacy(db: AsyncSession, legacy: LegacyPolicy) -> None:
    await db.delete(legacy)
    await db.flush()


async def list_for_client(db: AsyncSession, client_id: str) -> list[LegacyPolicy]:
    stmt = select(LegacyPolicy).where(LegacyPolicy.client_id == client_id).order_by(LegacyPolicy.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_page(
    db: AsyncSession,
    *,
    client_id: str | None = None,
    policy_type: str | None = None,
    status: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[LegacyPolicy], int]:
    conditions = []
    if client_id:
        conditions.append(LegacyPolicy.client_id == client_id)
    if policy_type:
        conditions.append(LegacyPolicy.policy_type == policy_type)
    if status:
        conditions.append(LegacyPolicy.status == status)
    total = (await db.execute(select(func.count(LegacyPolicy.id)).where(*conditions))).scalar_one()
    stmt = select(LegacyPolicy).where(*conditions).order_by(LegacyPolicy.id).offset(offset).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all()), total


async def list_by_ids(db: AsyncSession, legacy_ids: list[int]) -> list[LegacyPolicy]:
    if not legacy_ids:
        return []
    stmt = select(LegacyPolicy).where(LegacyPolicy.id.in_(legacy_ids)).order_by(LegacyPolicy.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def fetch_batch_after(db: AsyncSession, high_water_mark: int, limit: int) -> list[LegacyPolicy]:
    """Next ``limit`` legacy rows with id above the high-water mark, in id order."""
    stmt = (
        select(LegacyPolicy)
        .where(LegacyPolicy.id > high_water_mark)
        .order_by(LegacyPolicy.id)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def existing_ids(db: AsyncSession, legacy_ids: list[int]) -> set[int]:
    if not legacy_ids:
        return set()
    result = await db.execute(select(LegacyPolicy.id).where(LegacyPolicy.id.in_(legacy_ids)))
    return set(result.scalars().all())


async def list_all(db: AsyncSession) -> list[LegacyPolicy]:
    result = await db.execute(select(LegacyPolicy).order_by(LegacyPolicy.id))
    return list(result.scalars().all())


async def count_legacy(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(LegacyPolicy.id)))).scalar_one()
