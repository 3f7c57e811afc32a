"""
Models package — re-exports Base and all models.

Import models here so Alembic's `target_metadata = Base.metadata`
picks up every table automatically.

When adding a new model:
    1. Create `app/db/models/<table_name>.py`
    2. Import it here
"""

from app.db.models.base import Base
from app.db.models.client import Client
from app.db.models.policy_template import PolicyTemplate
from app.db.models.policy_instance import PolicyInstance
from app.db.models.legacy_policy import LegacyPolicy
from app.db.models.audit_log import AuditLog
from app.db.models.migration_run import MigrationRun
from app.db.models.migration_backup import MigrationBackup

__all__ = [
    "Base",
    "Client",
    "PolicyTemplate",
    "PolicyInstance",
    "LegacyPolicy",
    "AuditLog",
    "MigrationRun",
    "MigrationBackup",
]
