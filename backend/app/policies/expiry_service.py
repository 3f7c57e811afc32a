"""
Expiry tracking — upcoming expiries, summaries and the expiry sweep.

``sweep_expired`` is the only code path that writes derived state back
to storage.  It is a single conditional UPDATE, so running it twice, or
from two schedulers at once, changes each lapsed instance exactly once.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import recorder
from app.core.config import settings
from app.core.constants import SYSTEM_ACTOR, AuditAction, AuditEntityType, PolicyStatus, WarningLevel
from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.policies.serializers import money, serialize_instance, status_annotations
from app.policies.status import days_until_expiry, utc_today
from app.repositories import policy_instances as instance_repository
from app.validation import schema_validator as sv
from app.validation.policy_validator import MAX_DURATION_MONTHS, MIN_DURATION_MONTHS

logger = get_logger(__name__)


def calculate_expiry_date(start_date: date, duration_months: int) -> date:
    """``start_date`` plus whole calendar months, clamped to month end."""
    return sv.add_months(start_date, duration_months)


def warning_level(days_remaining: int) -> WarningLevel | None:
    """Urgency bucket for ``days_remaining``; None outside the info window."""
    if days_remaining <= settings.EXPIRY_CRITICAL_DAYS:
        return WarningLevel.CRITICAL
    if days_remaining <= settings.EXPIRY_SOON_DAYS:
        return WarningLevel.WARNING
    if days_remaining <= settings.EXPIRY_INFO_DAYS:
        return WarningLevel.INFO
    return None


def calculate_expiry(start_date: Any, duration_months: Any, *, today: date | None = None) -> dict[str, Any]:
    """Pure expiry computation for the calculate-expiry endpoint."""
    errors: dict[str, str] = {}
    start = months = None
    try:
        start = sv.to_date(start_date)
    except ValueError:
        errors["startDate"] = "Start date must be a valid date"
    try:
        months = sv.to_int(duration_months)
        if not MIN_DURATION_MONTHS <= months <= MAX_DURATION_MONTHS:
            errors["durationMonths"] = "Duration must be between 1 and 120 months"
    except ValueError:
        errors["durationMonths"] = "Duration must be a whole number of months"
    if errors:
        raise ValidationError(errors)

    today = today or utc_today()
    expiry = calculate_expiry_date(start, months)
    data = {
        "startDate": start.isoformat(),
        "durationMonths": months,
        "expiryDate": expiry.isoformat(),
    }
    data.update(status_annotations(PolicyStatus.ACTIVE.value, expiry, today))
    return data


async def get_expiring_policies(
    db: AsyncSession,
    *,
    today: date | None = None,
    days: int | None = None,
    client_id: str | None = None,
    template_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Stored-Active instances expiring within ``days`` (default: info window), by urgency."""
    today = today or utc_today()
    window = days if days is not None else settings.EXPIRY_INFO_DAYS
    rows = await instance_repository.list_active_expiring(
        db,
        today=today,
        until=today + timedelta(days=window),
        client_id=client_id,
        template_id=template_id,
    )

    groups: dict[str, list[dict[str, Any]]] = {level.value: [] for level in WarningLevel}
    policies = []
    for instance, template in rows:
        remaining = days_until_expiry(instance.expiry_date, today)
        level = warning_level(remaining) or WarningLevel.INFO
        item = serialize_instance(instance, today, template)
        item["warningLevel"] = level.value
        policies.append(item)
        groups[level.value].append(item)

    return {
        "policies": policies,
        "grouped": groups,
        "counts": {level: len(items) for level, items in groups.items()},
        "total": len(policies),
    }


async def get_expiry_summary(db: AsyncSession, *, today: date | None = None) -> dict[str, Any]:
    """Expiring this week / month / three months, expiry rates and revenue at risk."""
    today = today or utc_today()
    active = await instance_repository.list_stored_active(db)
    live = [i for i in active if i.expiry_date > today]
    lapsed = len(active) - len(live)

    def expiring_within(days: int) -> list:
        until = today + timedelta(days=days)
        return [i for i in live if i.expiry_date <= until]

    week, month, quarter = expiring_within(7), expiring_within(30), expiring_within(90)
    total_active = len(live)

    def rate(items: list) -> float:
        return round(len(items) / total_active * 100, 2) if total_active else 0.0

    premium = sum((i.premium_amount for i in month), Decimal("0"))
    commission = sum((i.commission_amount for i in month), Decimal("0"))
    return {
        "asOf": today.isoformat(),
        "totalActive": total_active,
        "lapsedAwaitingSweep": lapsed,
        "expiringThisWeek": len(week),
        "expiringThisMonth": len(month),
        "expiringNext3Months": len(quarter),
        "expiryRates": {"week": rate(week), "month": rate(month), "threeMonths": rate(quarter)},
        "revenueAtRisk": {
            "premium": money(premium),
            "commission": money(commission),
            "total": money(premium + commission),
        },
    }


async def sweep_expired(
    db: AsyncSession,
    *,
    today: date | None = None,
    actor_id: str | None = None,
) -> dict[str, Any]:
    """Persist Expired onto Active instances whose expiry date has passed."""
    today = today or utc_today()
    changed = await instance_repository.mark_lapsed_expired(db, today=today)
    for instance_id, client_id in changed:
        await recorder.record(
            db,
            actor_id=actor_id or SYSTEM_ACTOR,
            action=AuditAction.STATUS_CHANGE,
            entity_type=AuditEntityType.POLICY_INSTANCE,
            entity_id=instance_id,
            client_id=client_id,
            description="Policy expired automatically",
            details={"from": PolicyStatus.ACTIVE.value, "to": PolicyStatus.EXPIRED.value, "asOf": today},
        )
    logger.info("Expiry sweep finished", as_of=today.isoformat(), updated=len(changed))
    return {"updated": len(changed), "instanceIds": [str(i) for i, _ in changed], "asOf": today.isoformat()}
