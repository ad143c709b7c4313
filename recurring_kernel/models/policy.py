"""
Module: recurring_kernel.models.policy
Responsibility: ORM persistence for recurring-order policies: the owning
    vault, the opaque configuration blob and the scheduling state.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - ``config`` is stored exactly as the owner supplied it; validation
      happens every cycle, never at write time only.
    - ``config_version`` increases on every owner edit.
    - A ``completed`` policy is never due again.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recurring_kernel.db.base import TrackedBase
from recurring_kernel.domain.clock import as_utc
from recurring_kernel.domain.policy import PolicyEnvelope, PolicyRecord, PolicyStatus


class PolicyModel(TrackedBase):
    """One recurring swap or send policy."""

    __tablename__ = "policies"

    __table_args__ = (
        Index("ix_policies_status_next_run", "status", "next_run_at"),
        Index("ix_policies_vault_id", "vault_id"),
    )

    vault_id: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    config_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PolicyStatus.ACTIVE.value,
    )
    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    # First slot of the schedule; later slots are computed from it
    schedule_anchor: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    invalid_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    invalid_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_envelope(self) -> PolicyEnvelope:
        return PolicyEnvelope(
            policy_id=self.id,
            vault_id=self.vault_id,
            config=dict(self.config or {}),
            config_version=self.config_version,
        )

    def to_record(self) -> PolicyRecord:
        return PolicyRecord(
            envelope=self.to_envelope(),
            status=PolicyStatus(self.status),
            next_run_at=as_utc(self.next_run_at),
            last_run_at=as_utc(self.last_run_at),
            anchor_at=as_utc(self.schedule_anchor),
            invalid_code=self.invalid_code,
            invalid_reason=self.invalid_reason,
        )

    def __repr__(self) -> str:
        return f"<PolicyModel {self.id} {self.kind} {self.status}>"
