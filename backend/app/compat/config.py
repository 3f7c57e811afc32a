"""
Migration phase configuration.

Each named phase bundles three groups of knobs: how reads/writes are
routed between the legacy and template shapes, how batch migration
behaves, and how strict validation is.  The phase comes from
``POLICY_MIGRATION_PHASE``; any individual override that is explicitly
set in the environment wins over the phase default, and an unset one
falls back to it.

The config is resolved once per process and is immutable afterwards;
changing phase means restarting (and restarting any migration run).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from functools import lru_cache
from typing import Any

from app.core.config import Settings, settings
from app.core.constants import MigrationPhase
from app.core.errors import PolicyError
from app.validation.policy_validator import ValidationConfig


@dataclass(frozen=True)
class CompatibilityConfig:
    use_template_system: bool
    allow_fallback: bool
    migrate_on_read: bool


@dataclass(frozen=True)
class BatchMigrationConfig:
    batch_size: int
    enable_auto_migration: bool
    enable_rollback: bool
    backup_retention_days: int


@dataclass(frozen=True)
class PolicyMigrationConfig:
    phase: MigrationPhase
    compatibility: CompatibilityConfig
    batch: BatchMigrationConfig
    validation: ValidationConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "compatibility": asdict(self.compatibility),
            "batchMigration": asdict(self.batch),
            "validation": asdict(self.validation),
        }


PHASE_DEFAULTS: dict[MigrationPhase, PolicyMigrationConfig] = {
    # Legacy only; templates are being prepared but not yet read or written.
    MigrationPhase.PREPARATION: PolicyMigrationConfig(
        phase=MigrationPhase.PREPARATION,
        compatibility=CompatibilityConfig(use_template_system=False, allow_fallback=True, migrate_on_read=False),
        batch=BatchMigrationConfig(batch_size=50, enable_auto_migration=False, enable_rollback=True, backup_retention_days=30),
        validation=ValidationConfig(strict_mode=True, allow_duplicates=False, validate_dates=True, validate_amounts=True),
    ),
    # Templates active with legacy fallback; bulk copy may transiently collide.
    MigrationPhase.MIGRATION: PolicyMigrationConfig(
        phase=MigrationPhase.MIGRATION,
        compatibility=CompatibilityConfig(use_template_system=True, allow_fallback=True, migrate_on_read=False),
        batch=BatchMigrationConfig(batch_size=100, enable_auto_migration=False, enable_rollback=True, backup_retention_days=30),
        validation=ValidationConfig(strict_mode=True, allow_duplicates=True, validate_dates=True, validate_amounts=True),
    ),
    # Lazy cut-over: fallback reads are written through to templates.
    MigrationPhase.TRANSITION: PolicyMigrationConfig(
        phase=MigrationPhase.TRANSITION,
        compatibility=CompatibilityConfig(use_template_system=True, allow_fallback=True, migrate_on_read=True),
        batch=BatchMigrationConfig(batch_size=100, enable_auto_migration=True, enable_rollback=True, backup_retention_days=30),
        validation=ValidationConfig(strict_mode=False, allow_duplicates=True, validate_dates=True, validate_amounts=True),
    ),
    # Templates only; the legacy shape is no longer consulted.
    MigrationPhase.COMPLETE: PolicyMigrationConfig(
        phase=MigrationPhase.COMPLETE,
        compatibility=CompatibilityConfig(use_template_system=True, allow_fallback=False, migrate_on_read=False),
        batch=BatchMigrationConfig(batch_size=100, enable_auto_migration=False, enable_rollback=False, backup_retention_days=7),
        validation=ValidationConfig(strict_mode=True, allow_duplicates=False, validate_dates=True, validate_amounts=True),
    ),
}


class ConfigurationError(PolicyError):
    """Invalid migration configuration (unknown phase, etc.)."""

    kind = "ConfigurationError"


def _overrides(section: Any, values: dict[str, Any]) -> Any:
    """Apply only the explicitly-set overrides to a config section."""
    changes = {name: value for name, value in values.items() if value is not None}
    return replace(section, **changes) if changes else section


def resolve_migration_config(source: Settings) -> PolicyMigrationConfig:
    """Build the effective config from a phase name plus any explicit overrides."""
    name = (source.POLICY_MIGRATION_PHASE or "").strip().lower()
    try:
        phase = MigrationPhase(name)
    except ValueError:
        valid = ", ".join(p.value for p in MigrationPhase)
        raise ConfigurationError(
            f"Unknown POLICY_MIGRATION_PHASE '{source.POLICY_MIGRATION_PHASE}' (expected one of: {valid})"
        ) from None

    base = PHASE_DEFAULTS[phase]
    return PolicyMigrationConfig(
        phase=phase,
        compatibility=_overrides(
            base.compatibility,
            {
                "use_template_system": source.USE_TEMPLATE_SYSTEM,
                "allow_fallback": source.ALLOW_FALLBACK,
                "migrate_on_read": source.MIGRATE_ON_READ,
            },
        ),
        batch=_overrides(
            base.batch,
            {
                "batch_size": source.MIGRATION_BATCH_SIZE,
                "enable_auto_migration": source.ENABLE_AUTO_MIGRATION,
                "enable_rollback": source.ENABLE_ROLLBACK,
                "backup_retention_days": source.BACKUP_RETENTION_DAYS,
            },
        ),
        validation=_overrides(
            base.validation,
            {
                "strict_mode": source.STRICT_MODE,
                "allow_duplicates": source.ALLOW_DUPLICATES,
                "validate_dates": source.VALIDATE_DATES,
                "validate_amounts": source.VALIDATE_AMOUNTS,
            },
        ),
    )


@lru_cache(maxsize=1)
def get_migration_config() -> PolicyMigrationConfig:
    """The process-wide config, resolved on first use."""
    return resolve_migration_config(settings)
