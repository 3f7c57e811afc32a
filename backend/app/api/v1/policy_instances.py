"""Policy instance endpoints: read, update, status changes and pure checks."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends

from app.api.deps import get_instance_store, get_today
from app.api.responses import ok
from app.api.schemas.policies import AssociationCheck, ExpiryCalculation, InstanceUpdate, StatusUpdate
from app.policies import expiry_service
from app.policies.instance_store import InstanceStore
from app.policies.serializers import serialize_instance

router = APIRouter(prefix="/policy-instances", tags=["Policy Instances"])


@router.post("/validate-association")
async def validate_association(
    payload: AssociationCheck,
    store: InstanceStore = Depends(get_instance_store),
) -> dict[str, object]:
    """Would this client/template pairing be accepted? Nothing is written."""
    exclude = None
    if payload.exclude_instance_id:
        try:
            exclude = UUID(payload.exclude_instance_id)
        except ValueError:
            exclude = None
    result = await store.validate_association(
        payload.client_id or "", payload.template_id or "", exclude_instance_id=exclude
    )
    return ok(result)


@router.post("/calculate-expiry")
async def calculate_expiry(
    payload: ExpiryCalculation,
    today: date | None = Depends(get_today),
) -> dict[str, object]:
    """Expiry date and display status for a start date plus a term in months."""
    return ok(expiry_service.calculate_expiry(payload.start_date, payload.duration_months, today=today))


@router.get("/{instance_id}")
async def get_instance(instance_id: UUID, store: InstanceStore = Depends(get_instance_store)) -> dict[str, object]:
    return ok(await store.get(instance_id))


@router.put("/{instance_id}")
async def update_instance(
    instance_id: UUID,
    payload: InstanceUpdate,
    store: InstanceStore = Depends(get_instance_store),
) -> dict[str, object]:
    instance, template, warnings = await store.update(instance_id, payload.payload())
    return ok(
        serialize_instance(instance, store.today, template),
        message="Policy instance updated successfully",
        warnings=warnings,
    )


@router.patch("/{instance_id}/status")
async def update_instance_status(
    instance_id: UUID,
    payload: StatusUpdate,
    store: InstanceStore = Depends(get_instance_store),
) -> dict[str, object]:
    instance, template = await store.update_status(instance_id, payload.status, reason=payload.reason)
    return ok(serialize_instance(instance, store.today, template), message=f"Policy status set to {instance.status}")


@router.delete("/{instance_id}")
async def delete_instance(instance_id: UUID, store: InstanceStore = Depends(get_instance_store)) -> dict[str, object]:
    """Remove one instance; its template is untouched."""
    await store.delete(instance_id)
    return ok(message="Policy instance deleted successfully")
