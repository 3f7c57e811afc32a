"""
Field-level shape checks and value coercion for policy payloads.

Every helper here is pure.  Coercers raise ``ValueError`` with a short
reason; the rule engine turns that into a field message.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from dateutil.relativedelta import relativedelta

from app.core.constants import PolicyStatus, PolicyType

POLICY_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
PROVIDER_PATTERN = re.compile(r"^[A-Za-z0-9 \-&.,()]+$")
CLIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

POLICY_NUMBER_MIN, POLICY_NUMBER_MAX = 3, 50
PROVIDER_MIN, PROVIDER_MAX = 2, 100
DESCRIPTION_MAX = 500

TWO_PLACES = Decimal("0.01")

# camelCase (API) name → snake_case (storage) name
FIELD_NAMES = {
    "policyNumber": "policy_number",
    "policyType": "policy_type",
    "provider": "provider",
    "description": "description",
    "templateId": "template_id",
    "clientId": "client_id",
    "premiumAmount": "premium_amount",
    "commissionAmount": "commission_amount",
    "startDate": "start_date",
    "expiryDate": "expiry_date",
    "durationMonths": "duration_months",
    "status": "status",
}
SNAKE_TO_CAMEL = {snake: camel for camel, snake in FIELD_NAMES.items()}


def pick(payload: Mapping[str, Any], field: str) -> Any:
    """Read ``field`` (camelCase) from a payload keyed in either style."""
    if field in payload:
        return payload[field]
    return payload.get(FIELD_NAMES.get(field, field))


def supplied_fields(payload: Mapping[str, Any]) -> set[str]:
    """camelCase names of the fields present in ``payload``."""
    return {SNAKE_TO_CAMEL.get(key, key) for key in payload}


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_decimal(value: Any) -> Decimal:
    """Coerce int/float/Decimal/numeric string to Decimal. Booleans are rejected."""
    if isinstance(value, bool):
        raise ValueError("must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError("must be a number") from None
    else:
        raise ValueError("must be a number")
    if not result.is_finite():
        raise ValueError("must be a number")
    return result


def has_more_than_two_places(value: Decimal) -> bool:
    return value != value.quantize(TWO_PLACES)


def to_date(value: Any) -> date:
    """Coerce a date, datetime or ISO-8601 string to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) > 10 and text[10] in "T ":
            text = text[:10]  # datetime string, keep the date part
        try:
            return date.fromisoformat(text)
        except ValueError:
            raise ValueError("must be a valid date") from None
    raise ValueError("must be a valid date")


def to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("must be a whole number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError("must be a whole number")


def to_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        raise ValueError("must be a valid identifier") from None


def to_policy_type(value: Any) -> PolicyType:
    """Match a policy type case-insensitively to its canonical value."""
    if isinstance(value, str):
        for member in PolicyType:
            if member.value.lower() == value.strip().lower():
                return member
    raise ValueError("Policy type must be one of: " + ", ".join(t.value for t in PolicyType))


def to_policy_status(value: Any) -> PolicyStatus:
    if isinstance(value, str):
        for member in PolicyStatus:
            if member.value.lower() == value.strip().lower():
                return member
    raise ValueError("Status must be one of: " + ", ".join(s.value for s in PolicyStatus))


# ─── Template field format rules ──────────────────────────
# Each returns the first problem found, or None.

def policy_number_problem(number: str) -> str | None:
    if len(number) < POLICY_NUMBER_MIN:
        return f"Policy number must be at least {POLICY_NUMBER_MIN} characters"
    if len(number) > POLICY_NUMBER_MAX:
        return f"Policy number must not exceed {POLICY_NUMBER_MAX} characters"
    if not POLICY_NUMBER_PATTERN.match(number):
        return "Policy number can only contain letters, numbers, hyphens, and underscores"
    return None


def provider_problem(provider: str) -> str | None:
    if len(provider) < PROVIDER_MIN:
        return f"Provider name must be at least {PROVIDER_MIN} characters"
    if len(provider) > PROVIDER_MAX:
        return f"Provider name must not exceed {PROVIDER_MAX} characters"
    if not PROVIDER_PATTERN.match(provider):
        return "Provider name contains invalid characters"
    return None


def description_problem(description: str) -> str | None:
    if len(description) > DESCRIPTION_MAX:
        return f"Description must not exceed {DESCRIPTION_MAX} characters"
    return None


def client_id_problem(client_id: str) -> str | None:
    if not CLIENT_ID_PATTERN.match(client_id):
        return "Client ID must be a valid identifier"
    return None


def add_months(start: date, months: int) -> date:
    """Calendar-month arithmetic, clamped to the last day of a short month."""
    return start + relativedelta(months=months)
