"""API schema package."""

from app.api.schemas.policies import (
    AssociationCheck,
    ExpiryCalculation,
    InstanceCreate,
    InstanceUpdate,
    MigrationRunCreate,
    PolicyCreate,
    PolicyUpdate,
    StatusUpdate,
    TemplateCreate,
    TemplateUpdate,
)

__all__ = [
    "TemplateCreate",
    "TemplateUpdate",
    "InstanceCreate",
    "InstanceUpdate",
    "StatusUpdate",
    "AssociationCheck",
    "ExpiryCalculation",
    "PolicyCreate",
    "PolicyUpdate",
    "MigrationRunCreate",
]
