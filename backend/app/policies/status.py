"""
Expiry/Status Engine — derive the status users see from stored state.

The stored ``status`` lags reality until the expiry sweep runs; the
display status never does.  Both functions are pure: same inputs, same
answer, nothing persisted.

Priority (first match wins):
    1. stored Cancelled            → Cancelled
    2. today >= expiry_date        → Expired (even if stored Active)
    3. stored non-Active           → the stored value
    4. expiry within SOON days     → ExpiringSoon
    5. otherwise                   → Active
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from app.core.constants import DisplayStatus, PolicyStatus

EXPIRING_SOON_DAYS = 30


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def days_until_expiry(expiry_date: date, today: date | None = None) -> int:
    """Whole days from ``today`` to ``expiry_date`` (negative once lapsed)."""
    return (expiry_date - (today or utc_today())).days


def compute_display_status(
    status: str,
    expiry_date: date,
    today: date | None = None,
    *,
    soon_days: int = EXPIRING_SOON_DAYS,
) -> DisplayStatus:
    """Display status from the stored status and expiry date, as of ``today``."""
    if status == PolicyStatus.CANCELLED:
        return DisplayStatus.CANCELLED

    remaining = days_until_expiry(expiry_date, today)
    if remaining <= 0:
        return DisplayStatus.EXPIRED
    if status != PolicyStatus.ACTIVE:
        return DisplayStatus(status)
    if remaining <= soon_days:
        return DisplayStatus.EXPIRING_SOON
    return DisplayStatus.ACTIVE


def expiry_warning_text(
    status: str,
    expiry_date: date,
    today: date | None = None,
    *,
    soon_days: int = EXPIRING_SOON_DAYS,
) -> str | None:
    """Human-readable expiry warning, consistent with ``compute_display_status``."""
    display = compute_display_status(status, expiry_date, today, soon_days=soon_days)
    if display == DisplayStatus.EXPIRED:
        return "This policy has expired"
    if display != DisplayStatus.EXPIRING_SOON:
        return None
    remaining = days_until_expiry(expiry_date, today)
    if remaining == 1:
        return "Expires tomorrow"
    return f"Expires in {remaining} days"
