"""
Client repository — existence checks against the external client table.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.client import Client


async def get_client(db: AsyncSession, client_id: str) -> Client | None:
    """Fetch a client by primary key."""
    return await db.get(Client, client_id)


async def client_exists(db: AsyncSession, client_id: str) -> bool:
    stmt = select(Client.id).where(Client.id == client_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def existing_client_ids(db: AsyncSession, client_ids: set[str]) -> set[str]:
    """Return the subset of ``client_ids`` that exist."""
    if not client_ids:
        return set()
    stmt = select(Client.id).where(Client.id.in_(client_ids))
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def create_client(
    db: AsyncSession,
    *,
    client_id: str,
    name: str,
    email: str | None = None,
) -> Client:
    """Register a client reference row (seeding and tests)."""
    client = Client(id=client_id, name=name.strip(), email=email.lower().strip() if email else None)
    db.add(client)
    await db.flush()
    return client
