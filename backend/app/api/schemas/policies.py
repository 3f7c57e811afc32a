"""Policy template, instance and unified-policy request schemas.

Field types are deliberately loose: the rule engine owns every
business check and reports them field-by-field, so these models only
shape the body and keep track of which fields the caller sent.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Amount = float | int | str | None
DateValue = date | str | None


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case keys; dumps camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def payload(self) -> dict[str, Any]:
        """Only the fields the caller actually sent."""
        return self.model_dump(by_alias=True, exclude_unset=True)


class TemplateFields(CamelModel):
    policy_number: str | None = None
    policy_type: str | None = None
    provider: str | None = None
    description: str | None = None


class TemplateCreate(TemplateFields):
    pass


class TemplateUpdate(TemplateFields):
    pass


class InstanceTerms(CamelModel):
    premium_amount: Amount = None
    commission_amount: Amount = None
    start_date: DateValue = None
    expiry_date: DateValue = None
    duration_months: int | str | None = None
    status: str | None = None


class InstanceCreate(InstanceTerms):
    template_id: str | None = None


class InstanceUpdate(InstanceTerms):
    template_id: str | None = None
    client_id: str | None = None


class StatusUpdate(CamelModel):
    status: str
    reason: str | None = Field(default=None, max_length=500)


class AssociationCheck(CamelModel):
    client_id: str | None = None
    template_id: str | None = None
    exclude_instance_id: str | None = None


class ExpiryCalculation(CamelModel):
    start_date: DateValue = None
    duration_months: int | str | None = None


class PolicyCreate(TemplateFields, InstanceTerms):
    """Flat policy body used by the unified (phase-routed) endpoints."""

    client_id: str | None = None


class PolicyUpdate(TemplateFields, InstanceTerms):
    pass


class MigrationRunCreate(CamelModel):
    dry_run: bool = False
    batch_size: int | None = Field(default=None, ge=1, le=10000)
    # Run inside the request instead of queueing it on the worker
    inline: bool = False
