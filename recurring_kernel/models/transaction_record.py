"""
Module: recurring_kernel.models.transaction_record
Responsibility: Audit trail of every broadcast attempt.
Architecture position: Kernel > Models.  Written by TransactionRecorder;
    protected by the listeners in db/immutability.py.

Invariants enforced:
    - Records are never deleted.
    - Identity fields never change after insert.
    - Status moves pending -> confirmed | failed, or failed -> confirmed
      when reconciliation observes a late landing.

Audit relevance:
    A failed record with error_code CONFIRMATION_TIMEOUT and a tx_hash is an
    attempt whose outcome was unknown when the cycle ended; reconciliation
    re-checks it before the same order is proposed again.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recurring_kernel.db.base import TrackedBase, UUIDString


class RecordStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionRecordModel(TrackedBase):
    """One signed transaction handed to the broadcaster."""

    __tablename__ = "transaction_records"

    __table_args__ = (
        Index("ix_transaction_records_policy_order", "policy_id", "order_index"),
        Index("ix_transaction_records_tx_hash", "tx_hash"),
        Index("ix_transaction_records_status", "status"),
    )

    policy_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("policies.id"),
        nullable=False,
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tx_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    chain_id: Mapped[str] = mapped_column(String(100), nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RecordStatus.PENDING.value,
    )
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    broadcast_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord {self.policy_id}#{self.order_index}.{self.position} "
            f"{self.tx_kind} {self.status}>"
        )
