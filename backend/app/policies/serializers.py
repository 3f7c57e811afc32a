"""Read-side shaping of templates and instances.

Every instance leaving the engine goes through ``serialize_instance`` so
it always carries a freshly computed ``displayStatus`` and
``expiryWarning``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from app.core.config import settings
from app.db.models.policy_instance import PolicyInstance
from app.db.models.policy_template import PolicyTemplate
from app.policies.status import compute_display_status, days_until_expiry, expiry_warning_text


def money(value: Decimal | None) -> float:
    return float(value) if value is not None else 0.0


def serialize_template(template: PolicyTemplate, **extra: Any) -> dict[str, Any]:
    data = {
        "id": str(template.id),
        "policyNumber": template.policy_number,
        "policyType": template.policy_type,
        "provider": template.provider,
        "description": template.description,
        "createdAt": template.created_at.isoformat() if template.created_at else None,
        "updatedAt": template.updated_at.isoformat() if template.updated_at else None,
    }
    data.update(extra)
    return data


def status_annotations(status: str, expiry_date: date, today: date) -> dict[str, Any]:
    soon = settings.EXPIRY_SOON_DAYS
    return {
        "displayStatus": compute_display_status(status, expiry_date, today, soon_days=soon).value,
        "expiryWarning": expiry_warning_text(status, expiry_date, today, soon_days=soon),
        "daysUntilExpiry": days_until_expiry(expiry_date, today),
    }


def serialize_instance(
    instance: PolicyInstance,
    today: date,
    template: PolicyTemplate | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(instance.id),
        "templateId": str(instance.template_id),
        "clientId": instance.client_id,
        "premiumAmount": money(instance.premium_amount),
        "commissionAmount": money(instance.commission_amount),
        "startDate": instance.start_date.isoformat(),
        "expiryDate": instance.expiry_date.isoformat(),
        "durationMonths": instance.duration_months,
        "status": instance.status,
        "createdAt": instance.created_at.isoformat() if instance.created_at else None,
        "updatedAt": instance.updated_at.isoformat() if instance.updated_at else None,
    }
    data.update(status_annotations(instance.status, instance.expiry_date, today))
    if template is not None:
        data["template"] = serialize_template(template)
    return data
