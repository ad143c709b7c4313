"""
Tests for the typed exception hierarchy (recurring_kernel/exceptions.py).

The cycle runner maps exception types to outcomes, so codes, retryable flags
and base classes are part of the contract.
"""

import pytest

from recurring_kernel.exceptions import (
    AuditRecordImmutableError,
    BroadcastError,
    ChainQueryError,
    CompletionError,
    ConcurrencyError,
    ConfirmationTimeoutError,
    InvalidRecordTransitionError,
    InvalidScheduleError,
    MalformedNumberError,
    MismatchError,
    MissingFieldError,
    OutOfRangeError,
    PolicyLockedError,
    PolicyNotFoundError,
    PolicyValidationError,
    ProgressConflictError,
    ProgressNotFoundError,
    ProgressOverflowError,
    RecurringKernelError,
    SigningError,
    TransactionRevertedError,
)

ERRORS = [
    (PolicyNotFoundError("p"), "POLICY_NOT_FOUND", False),
    (MissingFieldError("vault_id"), "POLICY_INVALID", False),
    (ChainQueryError("nonce", "ethereum", "timeout"), "CHAIN_QUERY_FAILED", True),
    (MismatchError("p", 0, "amount", 1, 2), "PROPOSAL_MISMATCH", False),
    (SigningError("p", 0, "quorum"), "SIGNING_FAILED", True),
    (BroadcastError("p", 0, 1, "refused"), "BROADCAST_FAILED", True),
    (ConfirmationTimeoutError("p", 0, 1, "0xtx", 60), "CONFIRMATION_TIMEOUT", True),
    (TransactionRevertedError("p", 0, 0, "0xtx"), "TRANSACTION_REVERTED", True),
    (PolicyLockedError("p"), "POLICY_LOCKED", True),
    (ProgressConflictError("p", 1, 2), "PROGRESS_CONFLICT", True),
    (ProgressNotFoundError("p"), "PROGRESS_NOT_FOUND", False),
    (ProgressOverflowError("p", 3), "PROGRESS_OVERFLOW", False),
    (AuditRecordImmutableError("r", "deleted"), "AUDIT_RECORD_IMMUTABLE", False),
    (InvalidRecordTransitionError("r", "confirmed", "pending"), "INVALID_RECORD_TRANSITION", False),
]


@pytest.mark.parametrize("exc,code,retryable", ERRORS, ids=[e[1] for e in ERRORS])
def test_code_and_retryable(exc, code, retryable):
    assert isinstance(exc, RecurringKernelError)
    assert exc.code == code
    assert exc.retryable is retryable


class TestPolicyValidationKinds:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (MissingFieldError("total_amount"), "missing-field"),
            (OutOfRangeError("order_count", "must be positive"), "out-of-range"),
            (MalformedNumberError("total_amount", "1e9x"), "malformed-number"),
            (InvalidScheduleError("schedule.unit", "unknown unit"), "invalid-schedule"),
        ],
    )
    def test_kind_and_shared_code(self, exc, kind):
        assert isinstance(exc, PolicyValidationError)
        assert exc.kind == kind
        assert exc.code == "POLICY_INVALID"
        assert kind in str(exc)

    def test_structured_fields(self):
        exc = MalformedNumberError("total_amount", "abc", policy_id="p-1")
        assert exc.field == "total_amount"
        assert exc.value == "abc"
        assert exc.policy_id == "p-1"


class TestHierarchy:
    def test_completion_errors_share_base(self):
        for exc in (
            BroadcastError("p", 0, 0, "x"),
            ConfirmationTimeoutError("p", 0, 0, "0xtx", 1),
            TransactionRevertedError("p", 0, 0, "0xtx"),
        ):
            assert isinstance(exc, CompletionError)

    def test_concurrency_errors_share_base(self):
        assert isinstance(PolicyLockedError("p"), ConcurrencyError)
        assert isinstance(ProgressConflictError("p", 0, 1), ConcurrencyError)

    def test_completion_error_carries_hash(self):
        exc = ConfirmationTimeoutError("p", 2, 1, "0xabc", 300)
        assert exc.tx_hash == "0xabc"
        assert exc.position == 1
        assert exc.timeout_seconds == 300
        assert BroadcastError("p", 0, 0, "x").tx_hash is None

    def test_lock_holder_in_message(self):
        assert "engine-2" in str(PolicyLockedError("p", holder="engine-2"))
