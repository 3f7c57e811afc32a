"""Advisory business rules for policy payloads.

These only ever produce warnings.  They never block a mutation; callers
surface them next to the saved record.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

REPEATED_CHARS = re.compile(r"(.)\1{3,}")
TEST_VALUE = re.compile(r"test|example", re.IGNORECASE)

LOW_PREMIUM = Decimal("100")
HIGH_PREMIUM = Decimal("500000")
MAX_COMMISSION_RATIO = Decimal("0.5")
MIN_COMMISSION_RATIO = Decimal("0.01")

FAR_FUTURE_START_DAYS = 90
OLD_START_DAYS = 365
SHORT_DURATION_MONTHS = 6
LONG_DURATION_MONTHS = 60


def template_warnings(cleaned: dict[str, Any]) -> dict[str, str]:
    """Warnings for a cleaned template payload."""
    warnings: dict[str, str] = {}

    number = cleaned.get("policy_number")
    if number:
        if REPEATED_CHARS.search(number):
            warnings["policyNumber"] = "Policy number appears to have repeated characters"
        elif TEST_VALUE.search(number):
            warnings["policyNumber"] = "Policy number appears to be a test value"

    provider = cleaned.get("provider")
    if provider and TEST_VALUE.search(provider):
        warnings["provider"] = "Provider name appears to be a test value"

    return warnings


def instance_warnings(
    cleaned: dict[str, Any],
    *,
    today: date,
    check_fields: set[str],
) -> dict[str, str]:
    """Warnings for a cleaned instance payload, limited to ``check_fields``."""
    warnings: dict[str, str] = {}

    premium: Decimal | None = cleaned.get("premium_amount")
    commission: Decimal | None = cleaned.get("commission_amount")
    start: date | None = cleaned.get("start_date")
    duration: int | None = cleaned.get("duration_months")

    if premium is not None and "premiumAmount" in check_fields:
        if premium < LOW_PREMIUM:
            warnings["premiumAmount"] = "Premium amount seems unusually low"
        elif premium > HIGH_PREMIUM:
            warnings["premiumAmount"] = "Premium amount seems unusually high and may require approval"

    if (
        premium is not None
        and commission is not None
        and premium > 0
        and check_fields & {"premiumAmount", "commissionAmount"}
    ):
        ratio = commission / premium
        if ratio > MAX_COMMISSION_RATIO:
            warnings["commissionAmount"] = "Commission percentage exceeds 50% of premium"
        elif commission > 0 and ratio < MIN_COMMISSION_RATIO:
            warnings["commissionAmount"] = "Commission percentage seems unusually low"

    if start is not None and "startDate" in check_fields:
        if start > today + timedelta(days=FAR_FUTURE_START_DAYS):
            warnings["startDate"] = "Start date is more than 90 days in the future"
        elif start < today - timedelta(days=OLD_START_DAYS):
            warnings["startDate"] = "Start date is more than 1 year in the past"

    if duration is not None and "durationMonths" in check_fields:
        if duration < SHORT_DURATION_MONTHS:
            warnings["durationMonths"] = "Policy duration less than 6 months is unusual"
        elif duration > LONG_DURATION_MONTHS:
            warnings["durationMonths"] = "Policy duration exceeds 5 years"

    return warnings
