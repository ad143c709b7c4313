"""
Module: recurring_kernel.models.progress
Responsibility: The durable execution counter of a policy.
Architecture position: Kernel > Models.  Written only by SqlProgressStore.

Invariants enforced:
    - Exactly one row per policy (UNIQUE policy_id).
    - 0 <= completed_count <= order_count (CHECK constraint).
    - is_terminal is true iff completed_count == order_count.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from recurring_kernel.db.base import TrackedBase, UUIDString
from recurring_kernel.domain.progress import Progress


class PolicyProgressModel(TrackedBase):
    """Locked-counter row advanced once per confirmed order."""

    __tablename__ = "policy_progress"

    __table_args__ = (
        CheckConstraint(
            "completed_count >= 0 AND completed_count <= order_count",
            name="ck_policy_progress_bounds",
        ),
    )

    policy_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("policies.id"),
        nullable=False,
        unique=True,
    )
    order_count: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dto(self) -> Progress:
        return Progress(
            policy_id=self.policy_id,
            order_count=self.order_count,
            completed_count=self.completed_count,
            last_executed_at=self.last_executed_at,
            is_terminal=self.is_terminal,
            version=self.version,
        )
