"""Policy template CRUD, search, listing and expiry tracking endpoints."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_actor_id, get_db, get_template_store, get_today
from app.api.responses import ok
from app.api.schemas.policies import TemplateCreate, TemplateUpdate
from app.policies import expiry_service
from app.policies.serializers import serialize_template
from app.policies.template_store import TemplateStore

router = APIRouter(prefix="/policy-templates", tags=["Policy Templates"])


@router.get("")
async def list_templates(
    search: str | None = None,
    policy_types: list[str] | None = Query(default=None, alias="policyTypes"),
    providers: list[str] | None = Query(default=None),
    has_instances: bool | None = Query(default=None, alias="hasInstances"),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    include_stats: bool = Query(default=False, alias="includeStats"),
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    """Filtered, sorted, paginated template list."""
    data = await store.list_templates(
        search=search,
        policy_types=policy_types,
        providers=providers,
        has_instances=has_instances,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
        include_stats=include_stats,
    )
    return ok(data)


@router.get("/search")
async def search_templates(
    q: str = "",
    exclude_client_id: str | None = Query(default=None, alias="excludeClientId"),
    limit: int = Query(default=10, ge=1, le=50),
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    """Search box and uniqueness pre-check; exact policy-number match first."""
    templates = await store.search(q, exclude_client_id=exclude_client_id, limit=limit)
    return ok([serialize_template(t) for t in templates])


@router.get("/check-number")
async def check_policy_number(
    policy_number: str = Query(..., alias="policyNumber", min_length=1),
    exclude_id: UUID | None = Query(default=None, alias="excludeId"),
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    return ok(await store.check_policy_number_available(policy_number, exclude_id=exclude_id))


@router.get("/filters")
async def available_filters(store: TemplateStore = Depends(get_template_store)) -> dict[str, object]:
    return ok(await store.available_filters())


@router.get("/stats")
async def template_stats(store: TemplateStore = Depends(get_template_store)) -> dict[str, object]:
    return ok(await store.stats())


# ── Expiry tracking (registered before /{template_id}) ──

@router.get("/expiry/warnings")
async def expiry_warnings(
    days: int | None = Query(default=None, ge=1, le=365),
    client_id: str | None = Query(default=None, alias="clientId"),
    template_id: UUID | None = Query(default=None, alias="templateId"),
    db: AsyncSession = Depends(get_db),
    today: date | None = Depends(get_today),
) -> dict[str, object]:
    """Active instances expiring soon, grouped by urgency."""
    data = await expiry_service.get_expiring_policies(
        db, today=today, days=days, client_id=client_id, template_id=template_id
    )
    return ok(data)


@router.get("/expiry/summary")
async def expiry_summary(
    db: AsyncSession = Depends(get_db),
    today: date | None = Depends(get_today),
) -> dict[str, object]:
    return ok(await expiry_service.get_expiry_summary(db, today=today))


@router.post("/expiry/update-expired")
async def update_expired(
    db: AsyncSession = Depends(get_db),
    today: date | None = Depends(get_today),
    actor_id: str = Depends(get_actor_id),
) -> dict[str, object]:
    """Run the expiry sweep now. Safe to repeat."""
    result = await expiry_service.sweep_expired(db, today=today, actor_id=actor_id)
    return ok(result, message=f"{result['updated']} policies marked as expired")


# ── CRUD ───────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreate,
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    template, warnings = await store.create(payload.payload())
    return ok(serialize_template(template), message="Policy template created successfully", warnings=warnings)


@router.get("/{template_id}")
async def get_template(template_id: UUID, store: TemplateStore = Depends(get_template_store)) -> dict[str, object]:
    """Template with its instances and per-status counts."""
    return ok(await store.details(template_id))


@router.get("/{template_id}/instances")
async def list_template_instances(
    template_id: UUID,
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    return ok(await store.list_instances(template_id))


@router.put("/{template_id}")
async def update_template(
    template_id: UUID,
    payload: TemplateUpdate,
    store: TemplateStore = Depends(get_template_store),
) -> dict[str, object]:
    template, warnings = await store.update(template_id, payload.payload())
    return ok(serialize_template(template), message="Policy template updated successfully", warnings=warnings)


@router.delete("/{template_id}")
async def delete_template(template_id: UUID, store: TemplateStore = Depends(get_template_store)) -> dict[str, object]:
    """Delete the template and every instance of it."""
    result = await store.delete(template_id)
    return ok(result, message="Policy template deleted successfully")
