"""
PolicyInstance — binds one client to one template with concrete terms.

``status`` is the stored flag (Active | Expired | Cancelled).  The status
users see is derived at read time by app.policies.status and never
written back here, except by the expiry sweep.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, generate_uuid, utcnow


class PolicyInstance(Base):
    __tablename__ = "policy_instances"
    __table_args__ = (
        UniqueConstraint("template_id", "client_id", name="uq_policy_instances_template_client"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)

    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("policy_templates.id"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("clients.id"), nullable=False, index=True
    )

    # ── Terms ────────────────────────────────
    premium_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    duration_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Active", index=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PolicyInstance id={self.id} client={self.client_id} status={self.status}>"
