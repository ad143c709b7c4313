"""
Module: recurring_kernel.models.lease
Responsibility: Durable per-policy lease so that engine processes sharing a
    database never run the same policy concurrently.
Architecture position: Kernel > Models.  Written by SqlLeaseStore only.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from recurring_kernel.db.base import Base, UUIDString


class PolicyLeaseModel(Base):
    """Holder and expiry of the current lease on a policy."""

    __tablename__ = "policy_leases"

    policy_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    holder: Mapped[str | None] = mapped_column(String(200), nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
