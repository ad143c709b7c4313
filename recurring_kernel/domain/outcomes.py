"""
Outcome types for proposals and cycles.

``PolicyComplete`` and ``RangeSkipped`` are values, not exceptions: the first
is the terminal state of a policy, the second a deferral.  Neither advances
progress.  ``CycleResult`` is what the cycle runner hands the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Union
from uuid import UUID

from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import TransactionBatch


@dataclass(frozen=True)
class BatchProposed:
    """The next due order, ready for validation and signing."""

    batch: TransactionBatch


@dataclass(frozen=True)
class PolicyComplete:
    """Every order has executed; the caller marks the policy terminal."""

    policy_id: UUID
    order_count: int


@dataclass(frozen=True)
class RangeSkipped:
    """Market rate outside the price bounds; the order is deferred."""

    policy_id: UUID
    order_index: int
    rate: Decimal
    min_price: Decimal
    max_price: Decimal


ProposalOutcome = Union[BatchProposed, PolicyComplete, RangeSkipped]


class CycleStatus(str, Enum):
    """Outcome of one policy cycle."""

    EXECUTED = "executed"  # Order confirmed, progress advanced
    RECONCILED = "reconciled"  # Earlier attempt confirmed late, progress advanced
    POLICY_COMPLETE = "policy_complete"  # Terminal, nothing proposed
    RANGE_SKIPPED = "range_skipped"  # Deferred by price bounds
    INVALID_POLICY = "invalid_policy"  # Permanent until edited
    CHAIN_ERROR = "chain_error"  # Transient
    MISMATCH = "mismatch"  # Batch rejected before signing
    SIGNING_FAILED = "signing_failed"  # Transient
    COMPLETION_FAILED = "completion_failed"  # Transient, record marked failed
    LOCKED = "locked"  # Another cycle holds the policy
    NOT_DUE = "not_due"  # Rescheduled by another cycle since it was listed
    ERROR = "error"  # Any other kernel error

    @property
    def advanced_progress(self) -> bool:
        return self in (CycleStatus.EXECUTED, CycleStatus.RECONCILED)


@dataclass(frozen=True)
class CycleResult:
    policy_id: UUID
    status: CycleStatus
    order_index: int | None = None
    progress: Progress | None = None
    error_code: str | None = None
    error_message: str | None = None
    tx_hashes: tuple[str, ...] = field(default_factory=tuple)
    cycle_id: str | None = None
