"""Rule engine: template and instance payload validation."""

from datetime import date
from decimal import Decimal

import pytest

from app.core.errors import ValidationError
from app.validation.business_rules import instance_warnings
from app.validation.duplicate_detector import TemplateMatch, find_duplicate_keys, match_template
from app.validation.policy_validator import ValidationConfig, validate_instance, validate_template

TODAY = date(2025, 6, 15)
LENIENT = ValidationConfig(strict_mode=False)


def template_payload(**overrides):
    payload = {"policyNumber": "POL-2025-001", "policyType": "Life", "provider": "Acme Life"}
    payload.update(overrides)
    return payload


def instance_payload(**overrides):
    payload = {
        "templateId": "7d3f4b1e-2a9c-4c55-9a43-0f2a7a7f1c11",
        "clientId": "client-a",
        "premiumAmount": "1200.00",
        "commissionAmount": "120.00",
        "startDate": "2025-06-01",
        "durationMonths": 12,
    }
    payload.update(overrides)
    return payload


class TestValidateTemplate:
    def test_valid_payload_is_cleaned(self):
        result = validate_template(template_payload(policyType="life", description="  Term cover  "))

        assert result.is_valid
        assert result.cleaned == {
            "policy_number": "POL-2025-001",
            "policy_type": "Life",
            "provider": "Acme Life",
            "description": "Term cover",
        }

    def test_required_fields(self):
        result = validate_template({})
        assert set(result.errors) == {"policyNumber", "policyType", "provider"}

    def test_unknown_policy_type(self):
        result = validate_template(template_payload(policyType="Pet"))
        assert result.errors["policyType"].startswith("Policy type must be one of")

    @pytest.mark.parametrize("number, message", [
        ("AB", "Policy number must be at least 3 characters"),
        ("X" * 51, "Policy number must not exceed 50 characters"),
        ("POL 001", "Policy number can only contain letters, numbers, hyphens, and underscores"),
    ])
    def test_policy_number_format(self, number, message):
        assert validate_template(template_payload(policyNumber=number)).errors["policyNumber"] == message

    @pytest.mark.parametrize("provider", ["Acme\tLife", "Acme\nLife", "Acme\x0bLife"])
    def test_provider_rejects_control_whitespace(self, provider):
        result = validate_template(template_payload(provider=provider))
        assert result.errors["provider"] == "Provider name contains invalid characters"

    def test_provider_allows_spaces_and_punctuation(self):
        result = validate_template(template_payload(provider="Smith & Sons (Life), Inc."))
        assert "provider" not in result.errors

    def test_format_rules_are_warnings_when_not_strict(self):
        result = validate_template(template_payload(policyNumber="POL 001", provider="A"), LENIENT)

        assert result.is_valid
        assert "policyNumber" in result.warnings
        assert "provider" in result.warnings

    def test_lenient_mode_still_requires_fields(self):
        result = validate_template(template_payload(provider="  "), LENIENT)
        assert result.errors == {"provider": "Provider name is required"}

    def test_partial_only_checks_supplied_fields(self):
        result = validate_template({"provider": "New Provider"}, partial=True)
        assert result.is_valid
        assert result.cleaned == {"provider": "New Provider"}

    def test_test_value_warning(self):
        result = validate_template(template_payload(policyNumber="TEST-001"))
        assert result.is_valid
        assert result.warnings["policyNumber"] == "Policy number appears to be a test value"

    def test_raise_for_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_template({}).raise_for_errors()
        assert exc_info.value.status_code == 400
        assert "policyNumber" in exc_info.value.errors


class TestValidateInstance:
    def test_expiry_derived_from_duration(self):
        result = validate_instance(instance_payload(startDate="2025-01-31", durationMonths=1), today=TODAY)

        assert result.is_valid
        assert result.cleaned["expiry_date"] == date(2025, 2, 28)
        assert result.cleaned["premium_amount"] == Decimal("1200.00")

    def test_commission_cannot_exceed_premium(self):
        result = validate_instance(instance_payload(commissionAmount="1500"), today=TODAY)
        assert result.errors["commissionAmount"] == "Commission cannot be greater than premium amount"

    def test_premium_must_be_positive(self):
        result = validate_instance(instance_payload(premiumAmount=0), today=TODAY)
        assert result.errors["premiumAmount"] == "Premium amount must be greater than 0"

    def test_more_than_two_decimal_places(self):
        result = validate_instance(instance_payload(premiumAmount="10.005"), today=TODAY)
        assert result.errors["premiumAmount"] == "Premium amount cannot have more than 2 decimal places"

    def test_amount_limits_follow_config(self):
        strict = validate_instance(instance_payload(premiumAmount="20000000"), today=TODAY)
        relaxed = validate_instance(
            instance_payload(premiumAmount="20000000"),
            ValidationConfig(validate_amounts=False),
            today=TODAY,
        )
        assert "premiumAmount" in strict.errors
        assert "premiumAmount" not in relaxed.errors

    def test_expiry_must_follow_start(self):
        result = validate_instance(
            instance_payload(durationMonths=None, expiryDate="2025-06-01"), today=TODAY
        )
        assert result.errors["expiryDate"] == "Expiry date must be after start date"

    def test_expiry_or_duration_required(self):
        result = validate_instance(instance_payload(durationMonths=None), today=TODAY)
        assert result.errors["expiryDate"] == "Expiry date is required (provide expiryDate or durationMonths)"

    def test_start_date_window(self):
        future = validate_instance(instance_payload(startDate="2026-07-01"), today=TODAY)
        past = validate_instance(instance_payload(startDate="2023-01-01"), today=TODAY)
        unchecked = validate_instance(
            instance_payload(startDate="2023-01-01"), ValidationConfig(validate_dates=False), today=TODAY
        )

        assert future.errors["startDate"] == "Start date cannot be more than 1 year in the future"
        assert past.errors["startDate"] == "Start date cannot be more than 2 years in the past"
        assert "startDate" not in unchecked.errors

    def test_date_window_skipped_for_unchecked_fields(self):
        result = validate_instance(
            instance_payload(startDate="2023-01-01", durationMonths=36),
            today=TODAY,
            check_fields={"premiumAmount"},
        )
        assert result.is_valid

    def test_invalid_references(self):
        result = validate_instance(instance_payload(templateId="nope", clientId="bad id!"), today=TODAY)
        assert result.errors["templateId"] == "Template ID must be a valid identifier"
        assert result.errors["clientId"] == "Client ID must be a valid identifier"

    def test_references_skipped_on_request(self):
        payload = instance_payload()
        del payload["templateId"], payload["clientId"]
        assert validate_instance(payload, today=TODAY, require_references=False).is_valid

    def test_invalid_status(self):
        result = validate_instance(instance_payload(status="Lapsed"), today=TODAY)
        assert result.errors["status"].startswith("Status must be one of")

    def test_warnings_do_not_block(self):
        result = validate_instance(
            instance_payload(premiumAmount="50", commissionAmount="40", durationMonths=3), today=TODAY
        )
        assert result.is_valid
        assert result.warnings == {
            "premiumAmount": "Premium amount seems unusually low",
            "commissionAmount": "Commission percentage exceeds 50% of premium",
            "durationMonths": "Policy duration less than 6 months is unusual",
        }


def test_instance_warnings_limited_to_checked_fields():
    cleaned = {"premium_amount": Decimal("50"), "duration_months": 3}
    assert instance_warnings(cleaned, today=TODAY, check_fields={"durationMonths"}) == {
        "durationMonths": "Policy duration less than 6 months is unusual"
    }


class TestTemplateMatching:
    class Stored:
        policy_number = "POL-1"
        policy_type = "Life"
        provider = "Acme Life"

    def incoming(self, **overrides):
        fields = {"policy_number": "pol-1", "policy_type": "Life", "provider": "ACME LIFE"}
        fields.update(overrides)
        return fields

    def test_create_when_nothing_stored(self):
        assert match_template(None, self.incoming(), allow_duplicates=False) == TemplateMatch.CREATE

    def test_reuse_ignores_case(self):
        assert match_template(self.Stored(), self.incoming(), allow_duplicates=False) == TemplateMatch.REUSE

    def test_conflict_or_merge_on_different_provider(self):
        other = self.incoming(provider="Other Co")
        assert match_template(self.Stored(), other, allow_duplicates=False) == TemplateMatch.CONFLICT
        assert match_template(self.Stored(), other, allow_duplicates=True) == TemplateMatch.MERGE

    def test_find_duplicate_keys(self):
        rows = [
            {"id": 1, "policy_number": "ABC-1"},
            {"id": 2, "policy_number": "abc-1 "},
            {"id": 3, "policy_number": "XYZ-9"},
        ]
        assert find_duplicate_keys(rows) == {"abc-1": [1, 2]}
