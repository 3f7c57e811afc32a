"""
PolicyTemplate — reusable policy definition shared across clients.

``policy_number_key`` holds the trimmed, lower-cased policy number and
carries the UNIQUE constraint: the storage-level guard that makes policy
numbers unique regardless of case, even under concurrent creates.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, generate_uuid, utcnow


class PolicyTemplate(Base):
    __tablename__ = "policy_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid)

    policy_number: Mapped[str] = mapped_column(String(100), nullable=False)
    policy_number_key: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True, index=True
    )
    policy_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # Life | Health | Auto | Home | Business
    provider: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PolicyTemplate id={self.id} {self.policy_number} type={self.policy_type}>"
