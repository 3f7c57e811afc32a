"""Unified policy endpoints routed through the phase's compatibility strategy."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_policy_strategy
from app.api.responses import ok
from app.api.schemas.policies import PolicyCreate, PolicyUpdate
from app.compat.strategies import PolicyAccessStrategy

router = APIRouter(prefix="/policies", tags=["Policies"])


@router.get("")
async def list_policies(
    client_id: str | None = Query(default=None, alias="clientId"),
    policy_type: str | None = Query(default=None, alias="policyType"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    strategy: PolicyAccessStrategy = Depends(get_policy_strategy),
) -> dict[str, object]:
    filters = {"client_id": client_id, "policy_type": policy_type, "status": status_filter}
    return ok(await strategy.list_policies(filters, page=page, limit=limit))


@router.get("/config")
async def policy_access_config(strategy: PolicyAccessStrategy = Depends(get_policy_strategy)) -> dict[str, object]:
    """Active phase, its knobs and the strategy serving reads and writes."""
    return ok(strategy.describe())


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_policy(
    payload: PolicyCreate,
    strategy: PolicyAccessStrategy = Depends(get_policy_strategy),
) -> dict[str, object]:
    policy, warnings = await strategy.create_policy(payload.payload())
    return ok(policy, message="Policy created successfully", warnings=warnings)


@router.get("/{policy_id}")
async def get_policy(policy_id: str, strategy: PolicyAccessStrategy = Depends(get_policy_strategy)) -> dict[str, object]:
    return ok(await strategy.get_policy(policy_id))


@router.put("/{policy_id}")
async def update_policy(
    policy_id: str,
    payload: PolicyUpdate,
    strategy: PolicyAccessStrategy = Depends(get_policy_strategy),
) -> dict[str, object]:
    policy, warnings = await strategy.update_policy(policy_id, payload.payload())
    return ok(policy, message="Policy updated successfully", warnings=warnings)


@router.delete("/{policy_id}")
async def delete_policy(policy_id: str, strategy: PolicyAccessStrategy = Depends(get_policy_strategy)) -> dict[str, object]:
    await strategy.delete_policy(policy_id)
    return ok(message="Policy deleted successfully")
