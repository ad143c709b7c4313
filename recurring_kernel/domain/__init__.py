"""
Pure domain layer.

This module contains immutable value types and deterministic logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (the Clock is injected)

Chain, signing and broadcast capabilities are reached only through the
protocols in ``ports``.
"""

from recurring_kernel.domain.allowance import (
    ApprovalMode,
    ApprovalStep,
    plan_approval,
    query_allowance,
)
from recurring_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from recurring_kernel.domain.distributor import (
    amount_for_order,
    distribute,
    remaining_budget,
)
from recurring_kernel.domain.outcomes import (
    BatchProposed,
    CycleResult,
    CycleStatus,
    PolicyComplete,
    ProposalOutcome,
    RangeSkipped,
)
from recurring_kernel.domain.policy import (
    NATIVE_ASSET,
    PolicyEnvelope,
    PolicyKind,
    PolicyRecord,
    PolicyStatus,
    PolicyTerms,
    PriceBounds,
    Schedule,
    ScheduleUnit,
    SendPolicy,
    SwapPolicy,
    ValidatedPolicy,
    parse_config,
    validate_policy,
)
from recurring_kernel.domain.ports import (
    Broadcaster,
    ChainState,
    ConfirmationStatus,
    PolicyStore,
    ProgressStore,
    SigningService,
)
from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import (
    CallData,
    SignedTransaction,
    TransactionBatch,
    TransactionDescriptor,
    TransactionKind,
    build_batch,
    min_amount_out,
)

__all__ = [
    # Policy model
    "NATIVE_ASSET",
    "PolicyEnvelope",
    "PolicyKind",
    "PolicyRecord",
    "PolicyStatus",
    "PolicyTerms",
    "PriceBounds",
    "Schedule",
    "ScheduleUnit",
    "SendPolicy",
    "SwapPolicy",
    "ValidatedPolicy",
    "parse_config",
    "validate_policy",
    # Distribution and approvals
    "amount_for_order",
    "distribute",
    "remaining_budget",
    "ApprovalMode",
    "ApprovalStep",
    "plan_approval",
    "query_allowance",
    # Transactions
    "CallData",
    "SignedTransaction",
    "TransactionBatch",
    "TransactionDescriptor",
    "TransactionKind",
    "build_batch",
    "min_amount_out",
    # Outcomes
    "BatchProposed",
    "CycleResult",
    "CycleStatus",
    "PolicyComplete",
    "ProposalOutcome",
    "RangeSkipped",
    # Progress and ports
    "Progress",
    "Broadcaster",
    "ChainState",
    "ConfirmationStatus",
    "PolicyStore",
    "ProgressStore",
    "SigningService",
    # Clock
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
