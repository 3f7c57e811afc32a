"""Shared dependencies for API routes."""

from __future__ import annotations

from datetime import date
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.compat.config import PolicyMigrationConfig, get_migration_config
from app.compat.strategies import PolicyAccessStrategy, Scheduler, schedule_background, select_strategy
from app.core.constants import SYSTEM_ACTOR
from app.db.session import async_session
from app.db.session import get_db as _get_db
from app.policies.instance_store import InstanceStore
from app.policies.template_store import TemplateStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session."""
    async for session in _get_db():
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for work that needs its own transactions (migration, write-through)."""
    return async_session


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """Acting user from the upstream auth proxy; ``system`` when absent."""
    actor = (x_actor_id or "").strip()
    return actor or SYSTEM_ACTOR


def get_today() -> date | None:
    """Reference date for status derivation; None means the current UTC date."""
    return None


def get_policy_config() -> PolicyMigrationConfig:
    return get_migration_config()


def get_scheduler() -> Scheduler:
    return schedule_background


async def get_template_store(
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
    today: date | None = Depends(get_today),
) -> TemplateStore:
    return TemplateStore(db, validation=config.validation, actor_id=actor_id, today=today)


async def get_instance_store(
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
    today: date | None = Depends(get_today),
) -> InstanceStore:
    return InstanceStore(db, validation=config.validation, actor_id=actor_id, today=today)


async def get_policy_strategy(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: PolicyMigrationConfig = Depends(get_policy_config),
    actor_id: str = Depends(get_actor_id),
    today: date | None = Depends(get_today),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    scheduler: Scheduler = Depends(get_scheduler),
) -> PolicyAccessStrategy:
    """Phase strategy chosen at start-up, bound to this request's session."""
    strategy_class = getattr(request.app.state, "policy_strategy", None) or select_strategy(config)
    return strategy_class(
        db,
        config,
        actor_id=actor_id,
        today=today,
        session_factory=session_factory,
        scheduler=scheduler,
    )
