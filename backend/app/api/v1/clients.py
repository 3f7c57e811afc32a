"""Per-client policy endpoints (instances, stats and the unified policy view)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_instance_store, get_policy_strategy
from app.api.responses import ok
from app.api.schemas.policies import InstanceCreate
from app.compat.strategies import PolicyAccessStrategy
from app.policies.instance_store import InstanceStore
from app.policies.serializers import serialize_instance

router = APIRouter(prefix="/clients", tags=["Clients"])


@router.get("/{client_id}/policy-instances")
async def list_client_instances(
    client_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    policy_type: str | None = Query(default=None, alias="policyType"),
    store: InstanceStore = Depends(get_instance_store),
) -> dict[str, object]:
    return ok(await store.list_for_client(client_id, status=status_filter, policy_type=policy_type))


@router.post("/{client_id}/policy-instances", status_code=status.HTTP_201_CREATED)
async def create_client_instance(
    client_id: str,
    payload: InstanceCreate,
    store: InstanceStore = Depends(get_instance_store),
) -> dict[str, object]:
    """Attach a template to the client with the given terms."""
    body = payload.payload()
    instance, template, warnings = await store.create(client_id, body.pop("templateId", None), body)
    return ok(
        serialize_instance(instance, store.today, template),
        message="Policy instance created successfully",
        warnings=warnings,
    )


@router.get("/{client_id}/policy-stats")
async def client_policy_stats(client_id: str, store: InstanceStore = Depends(get_instance_store)) -> dict[str, object]:
    return ok(await store.stats_for_client(client_id))


@router.get("/{client_id}/policies")
async def list_client_policies(
    client_id: str,
    strategy: PolicyAccessStrategy = Depends(get_policy_strategy),
) -> dict[str, object]:
    """Every policy the client holds, in whichever shape the current phase reads."""
    return ok(await strategy.list_client_policies(client_id))


@router.get("/{client_id}/policies/by-number/{policy_number}")
async def find_client_policy(
    client_id: str,
    policy_number: str,
    strategy: PolicyAccessStrategy = Depends(get_policy_strategy),
) -> dict[str, object]:
    return ok(await strategy.find_client_policy(client_id, policy_number))
