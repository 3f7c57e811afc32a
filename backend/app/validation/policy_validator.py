"""
Validation Rule Engine for policy templates and instances.

``validate_template`` and ``validate_instance`` are pure: no I/O, no
ambient configuration.  Strictness comes in through an explicit
``ValidationConfig`` and "today" is an argument, so the same call gives
the same answer on write and on the pre-submit check.

Errors block a mutation; warnings are advisory.  Both are keyed by the
camelCase field name and hold one message per field (first failing rule
wins).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping

from dateutil.relativedelta import relativedelta

from app.core.errors import ValidationError
from app.validation import schema_validator as sv
from app.validation.business_rules import instance_warnings, template_warnings

MAX_PREMIUM = Decimal("10000000")
MAX_COMMISSION = Decimal("1000000")
MIN_DURATION_MONTHS = 1
MAX_DURATION_MONTHS = 120
MAX_TERM_YEARS = 10


@dataclass(frozen=True)
class ValidationConfig:
    """Strictness knobs; the migration phase decides their values."""

    strict_mode: bool = True
    allow_duplicates: bool = False
    validate_dates: bool = True
    validate_amounts: bool = True


@dataclass
class ValidationResult:
    """Outcome of one validation call."""

    errors: dict[str, str] = field(default_factory=dict)
    warnings: dict[str, str] = field(default_factory=dict)
    cleaned: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, name: str, message: str) -> None:
        self.errors.setdefault(name, message)

    def warn(self, name: str, message: str) -> None:
        self.warnings.setdefault(name, message)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(dict(self.errors), warnings=dict(self.warnings))

    def to_dict(self) -> dict[str, Any]:
        return {"isValid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def _today(today: date | None) -> date:
    return today or datetime.now(timezone.utc).date()


# ═══════════════════════════════════════════════════════════
#  Templates
# ═══════════════════════════════════════════════════════════

def validate_template(
    payload: Mapping[str, Any],
    config: ValidationConfig | None = None,
    *,
    partial: bool = False,
) -> ValidationResult:
    """
    Validate a template payload.

    With ``partial=True`` only supplied fields are checked (used by the
    compatibility layer when patching legacy rows).  With
    ``strict_mode=False`` format rules become warnings; required fields
    and the policy type enum are always enforced.
    """
    config = config or ValidationConfig()
    result = ValidationResult()
    present = sv.supplied_fields(payload)

    def format_rule(name: str, problem: str | None) -> None:
        if problem is None:
            return
        if config.strict_mode:
            result.error(name, problem)
        else:
            result.warn(name, problem)

    # ── policyNumber ──
    if not partial or "policyNumber" in present:
        raw = sv.pick(payload, "policyNumber")
        if sv.is_blank(raw):
            result.error("policyNumber", "Policy number is required")
        elif not isinstance(raw, str):
            result.error("policyNumber", "Policy number must be text")
        else:
            number = raw.strip()
            format_rule("policyNumber", sv.policy_number_problem(number))
            result.cleaned["policy_number"] = number

    # ── policyType ──
    if not partial or "policyType" in present:
        raw = sv.pick(payload, "policyType")
        if sv.is_blank(raw):
            result.error("policyType", "Policy type is required")
        else:
            try:
                result.cleaned["policy_type"] = sv.to_policy_type(raw).value
            except ValueError as exc:
                result.error("policyType", str(exc))

    # ── provider ──
    if not partial or "provider" in present:
        raw = sv.pick(payload, "provider")
        if sv.is_blank(raw):
            result.error("provider", "Provider name is required")
        elif not isinstance(raw, str):
            result.error("provider", "Provider name must be text")
        else:
            provider = raw.strip()
            format_rule("provider", sv.provider_problem(provider))
            result.cleaned["provider"] = provider

    # ── description (optional) ──
    if "description" in present:
        raw = sv.pick(payload, "description")
        if sv.is_blank(raw):
            result.cleaned["description"] = None
        elif not isinstance(raw, str):
            result.error("description", "Description must be text")
        else:
            description = raw.strip()
            format_rule("description", sv.description_problem(description))
            result.cleaned["description"] = description

    for name, message in template_warnings(result.cleaned).items():
        result.warn(name, message)
    return result


# ═══════════════════════════════════════════════════════════
#  Instances
# ═══════════════════════════════════════════════════════════

def validate_instance(
    payload: Mapping[str, Any],
    config: ValidationConfig | None = None,
    *,
    today: date | None = None,
    check_fields: Iterable[str] | None = None,
    require_references: bool = True,
) -> ValidationResult:
    """
    Validate an instance payload (field rules + cross-field invariants).

    ``check_fields`` limits the today-relative date windows and the
    advisory warnings to the named (camelCase) fields; it defaults to
    every supplied field.  Invariants always run on the whole record,
    so a partial update validated against the merged record still
    re-checks ``commissionAmount <= premiumAmount``.

    ``require_references=False`` skips templateId/clientId (the stores
    pass those separately).
    """
    config = config or ValidationConfig()
    today = _today(today)
    result = ValidationResult()
    present = sv.supplied_fields(payload)
    checked = set(check_fields) if check_fields is not None else set(present)

    # ── references: shape only, existence is the stores' job ──
    if require_references:
        raw = sv.pick(payload, "templateId")
        if sv.is_blank(raw):
            result.error("templateId", "Template ID is required")
        else:
            try:
                result.cleaned["template_id"] = sv.to_uuid(raw)
            except ValueError:
                result.error("templateId", "Template ID must be a valid identifier")

        raw = sv.pick(payload, "clientId")
        if sv.is_blank(raw):
            result.error("clientId", "Client ID is required")
        else:
            client_id = str(raw).strip()
            problem = sv.client_id_problem(client_id)
            if problem:
                result.error("clientId", problem)
            else:
                result.cleaned["client_id"] = client_id

    premium = _amount(payload, result, "premiumAmount", "Premium amount")
    if premium is not None:
        if premium <= 0:
            result.error("premiumAmount", "Premium amount must be greater than 0")
        elif config.validate_amounts and premium > MAX_PREMIUM:
            result.error("premiumAmount", "Premium amount cannot exceed $10,000,000")
        else:
            result.cleaned["premium_amount"] = premium

    commission = _amount(payload, result, "commissionAmount", "Commission amount")
    if commission is not None:
        if commission < 0:
            result.error("commissionAmount", "Commission amount cannot be negative")
        elif config.validate_amounts and commission > MAX_COMMISSION:
            result.error("commissionAmount", "Commission amount cannot exceed $1,000,000")
        elif premium is not None and premium > 0 and commission > premium:
            result.error("commissionAmount", "Commission cannot be greater than premium amount")
        else:
            result.cleaned["commission_amount"] = commission

    start = _start_date(payload, result, config, today, checked)
    duration = _duration(payload, result)
    _expiry_date(payload, result, start, duration)

    raw_status = sv.pick(payload, "status")
    if not sv.is_blank(raw_status):
        try:
            result.cleaned["status"] = sv.to_policy_status(raw_status).value
        except ValueError as exc:
            result.error("status", str(exc))

    for name, message in instance_warnings(result.cleaned, today=today, check_fields=checked).items():
        if name not in result.errors:
            result.warn(name, message)
    return result


def _amount(payload: Mapping[str, Any], result: ValidationResult, name: str, label: str) -> Decimal | None:
    raw = sv.pick(payload, name)
    if sv.is_blank(raw):
        result.error(name, f"{label} is required")
        return None
    try:
        value = sv.to_decimal(raw)
    except ValueError:
        result.error(name, f"{label} must be a valid number")
        return None
    if sv.has_more_than_two_places(value):
        result.error(name, f"{label} cannot have more than 2 decimal places")
        return None
    return value.quantize(sv.TWO_PLACES)


def _start_date(
    payload: Mapping[str, Any],
    result: ValidationResult,
    config: ValidationConfig,
    today: date,
    checked: set[str],
) -> date | None:
    raw = sv.pick(payload, "startDate")
    if sv.is_blank(raw):
        result.error("startDate", "Start date is required")
        return None
    try:
        start = sv.to_date(raw)
    except ValueError:
        result.error("startDate", "Start date must be a valid date")
        return None

    if config.validate_dates and "startDate" in checked:
        if start > today + relativedelta(years=1):
            result.error("startDate", "Start date cannot be more than 1 year in the future")
            return start
        if start < today - relativedelta(years=2):
            result.error("startDate", "Start date cannot be more than 2 years in the past")
            return start
    result.cleaned["start_date"] = start
    return start


def _duration(payload: Mapping[str, Any], result: ValidationResult) -> int | None:
    raw = sv.pick(payload, "durationMonths")
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        result.cleaned["duration_months"] = None
        return None
    try:
        months = sv.to_int(raw)
    except ValueError:
        result.error("durationMonths", "Duration must be a whole number of months")
        return None
    if months < MIN_DURATION_MONTHS:
        result.error("durationMonths", "Duration must be at least 1 month")
        return None
    if months > MAX_DURATION_MONTHS:
        result.error("durationMonths", "Duration cannot exceed 120 months (10 years)")
        return None
    result.cleaned["duration_months"] = months
    return months


def _expiry_date(
    payload: Mapping[str, Any],
    result: ValidationResult,
    start: date | None,
    duration: int | None,
) -> None:
    raw = sv.pick(payload, "expiryDate")
    if not sv.is_blank(raw):
        try:
            expiry = sv.to_date(raw)
        except ValueError:
            result.error("expiryDate", "Expiry date must be a valid date")
            return
    elif duration is not None and start is not None:
        expiry = sv.add_months(start, duration)
    elif "durationMonths" in result.errors or "startDate" in result.errors:
        return
    else:
        result.error("expiryDate", "Expiry date is required (provide expiryDate or durationMonths)")
        return

    if start is not None:
        if expiry <= start:
            result.error("expiryDate", "Expiry date must be after start date")
            return
        if expiry > start + relativedelta(years=MAX_TERM_YEARS):
            result.error("expiryDate", "Expiry date cannot be more than 10 years after start date")
            return
    result.cleaned["expiry_date"] = expiry
