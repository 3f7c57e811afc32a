"""
Migration — batch conversion of legacy policies into templates and
instances, its checks, and rollback from backups.
"""

from app.migration.engine import MigrationEngine

__all__ = ["MigrationEngine"]
