"""
MigrationRun — one row per legacy → template batch migration run.

Progress is committed after every batch, so a crashed run can be resumed
from ``high_water_mark`` (the last legacy id fully processed).
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, JSONType, generate_uuid, utcnow


class MigrationRun(Base):
    __tablename__ = "migration_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)

    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="PENDING", index=True
    )  # PENDING | RUNNING | COMPLETED | PARTIALLY_COMPLETED | FAILED | CANCELLED
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ── Progress ─────────────────────────────
    high_water_mark: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    batches_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_read: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    converted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    templates_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    instances_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Legacy ids of records in batches that failed after all retries
    failed_record_ids: Mapped[list[int]] = mapped_column(JSONType, default=list, nullable=False)
    # Legacy id (as string) → reason the record was skipped
    skipped_reasons: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Timing (UTC) ─────────────────────────
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<MigrationRun {self.id} phase={self.phase} status={self.status} hwm={self.high_water_mark}>"
