"""
MigrationBackup — pre-conversion snapshot of a migrated legacy record.

Written only while rollback is enabled for the phase.  Holds enough to
restore the legacy row and undo what the conversion created.  Purged
once ``expires_at`` passes.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, JSONType, generate_uuid, utcnow


class MigrationBackup(Base):
    __tablename__ = "migration_backups"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)

    legacy_policy_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)  # NULL for migrate-on-read

    template_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # NULL when the client already held the template and no instance was created
    instance_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    template_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    restored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<MigrationBackup {self.id} legacy={self.legacy_policy_id} run={self.run_id}>"
