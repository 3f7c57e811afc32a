"""Shared constants and enums used across the application."""

from enum import StrEnum


class PolicyType(StrEnum):
    """Kinds of policy a template can describe."""

    LIFE = "Life"
    HEALTH = "Health"
    AUTO = "Auto"
    HOME = "Home"
    BUSINESS = "Business"


class PolicyStatus(StrEnum):
    """Stored status of a policy instance."""

    ACTIVE = "Active"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"


class DisplayStatus(StrEnum):
    """Status shown to users, derived at read time. Never persisted."""

    ACTIVE = "Active"
    EXPIRING_SOON = "ExpiringSoon"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"


class WarningLevel(StrEnum):
    """Urgency bucket for an upcoming expiry."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AuditAction(StrEnum):
    """Mutation kinds recorded in the audit log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    MIGRATE = "MIGRATE"
    ROLLBACK = "ROLLBACK"


class AuditEntityType(StrEnum):
    """Entities the audit log can refer to."""

    POLICY_TEMPLATE = "PolicyTemplate"
    POLICY_INSTANCE = "PolicyInstance"
    LEGACY_POLICY = "LegacyPolicy"
    MIGRATION_BATCH = "MigrationBatch"


class MigrationPhase(StrEnum):
    """Named rollout phases for the legacy-to-template migration."""

    PREPARATION = "preparation"
    MIGRATION = "migration"
    TRANSITION = "transition"
    COMPLETE = "complete"


class MigrationRunStatus(StrEnum):
    """Overall status of a batch migration run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PolicySource(StrEnum):
    """Which storage shape a unified policy was read from."""

    TEMPLATE = "template"
    LEGACY = "legacy"


class ConversionOutcome(StrEnum):
    """Result of converting one legacy record."""

    CONVERTED = "converted"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


SYSTEM_ACTOR = "system"
