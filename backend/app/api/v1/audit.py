"""Audit log read endpoints."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.api.responses import ok
from app.audit import reports
from app.core.errors import ValidationError

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("/clients/{client_id}")
async def client_audit_log(
    client_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    action: str | None = None,
    entity_type: str | None = Query(default=None, alias="entityType"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, object]:
    data = await reports.audit_log_for_client(
        db, client_id, page=page, limit=limit, action=action, entity_type=entity_type
    )
    return ok(data)


@router.get("/clients/{client_id}/stats")
async def client_audit_stats(client_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, object]:
    return ok(await reports.audit_stats_for_client(db, client_id))


@router.get("/report")
async def audit_report(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    client_id: str | None = Query(default=None, alias="clientId"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, object]:
    """Activity report between two dates, inclusive."""
    if end_date < start_date:
        raise ValidationError({"endDate": "End date must not be before start date"})
    return ok(await reports.audit_report(db, start=start_date, end=end_date, client_id=client_id))
