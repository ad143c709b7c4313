"""
Typed Exception Hierarchy for the Recurring Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The cycle runner decides what to do with a failed cycle purely from the
exception TYPE: mark the policy invalid, retry on the next tick, or raise an
alert.  Parsing messages for that decision would be fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, log-safe)
  3. Every exception has a RETRYABLE flag (the scheduler retries on the
     next tick without operator intervention when True)
  4. Exceptions carry structured DATA (policy id, order index, field)

Example:
    try:
        batch = proposer.propose(policy, progress)
    except ChainQueryError as e:
        logger.warning("chain_query_failed", extra={"operation": e.operation})
        # progress untouched, the next tick retries the same order

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    RecurringKernelError (base)
    |
    +-- PolicyError
    |   +-- PolicyNotFoundError
    |   +-- PolicyValidationError
    |       +-- MissingFieldError          kind = missing-field
    |       +-- OutOfRangeError            kind = out-of-range
    |       +-- MalformedNumberError       kind = malformed-number
    |       +-- InvalidScheduleError       kind = invalid-schedule
    |
    +-- ChainQueryError
    |
    +-- MismatchError
    |
    +-- SigningError
    |
    +-- CompletionError
    |   +-- BroadcastError
    |   +-- ConfirmationTimeoutError
    |   +-- TransactionRevertedError
    |
    +-- ConcurrencyError
    |   +-- PolicyLockedError
    |   +-- ProgressConflictError
    |
    +-- ProgressError
    |   +-- ProgressNotFoundError
    |   +-- ProgressOverflowError
    |
    +-- AuditError
        +-- AuditRecordImmutableError
        +-- InvalidRecordTransitionError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                     | Retryable | When Raised
-------------------------|-----------|-------------------------------------------
POLICY_NOT_FOUND         | no        | Policy id unknown to the store
POLICY_INVALID           | no        | Configuration fails validation
CHAIN_QUERY_FAILED       | yes       | Allowance / rate / nonce / status query
PROPOSAL_MISMATCH        | no        | Batch differs from the re-derived one
SIGNING_FAILED           | yes       | Signing round failed or wrong count
BROADCAST_FAILED         | yes       | Broadcaster refused the transaction
CONFIRMATION_TIMEOUT     | yes       | No confirmation within the timeout
TRANSACTION_REVERTED     | yes       | Chain reports the transaction failed
POLICY_LOCKED            | yes       | Another cycle holds the policy
PROGRESS_CONFLICT        | yes       | Compare-and-swap on progress lost
PROGRESS_NOT_FOUND       | no        | No progress row for the policy
PROGRESS_OVERFLOW        | no        | Advance past order_count attempted
AUDIT_RECORD_IMMUTABLE   | no        | Transaction record delete attempted
INVALID_RECORD_TRANSITION| no        | Record status change not permitted

A MismatchError is not retryable in itself (the batch is rejected), but the
policy stays due: the next tick builds a fresh proposal.
"""

from typing import Any


class RecurringKernelError(Exception):
    """
    Base exception for all recurring kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification and a `retryable` flag.
    """

    code: str = "RECURRING_KERNEL_ERROR"
    retryable: bool = False


# Policy-related exceptions


class PolicyError(RecurringKernelError):
    """Base exception for policy-related errors."""

    code: str = "POLICY_ERROR"


class PolicyNotFoundError(PolicyError):
    """Policy with given ID was not found."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Policy not found: {policy_id}")


class PolicyValidationError(PolicyError):
    """
    Policy configuration is malformed.

    Permanent: the policy is never proposed again until its owner edits the
    configuration.  ``kind`` names the violation class.
    """

    code: str = "POLICY_INVALID"
    kind: str = "invalid"

    def __init__(self, field: str, message: str, policy_id: str | None = None):
        self.field = field
        self.detail = message
        self.policy_id = policy_id
        super().__init__(f"Invalid policy field '{field}' ({self.kind}): {message}")


class MissingFieldError(PolicyValidationError):
    """A required configuration field is absent or empty."""

    kind: str = "missing-field"

    def __init__(self, field: str, policy_id: str | None = None):
        super().__init__(field, "required field is missing", policy_id)


class OutOfRangeError(PolicyValidationError):
    """A field parsed but its value is not permitted."""

    kind: str = "out-of-range"


class MalformedNumberError(PolicyValidationError):
    """A numeric field could not be parsed."""

    kind: str = "malformed-number"

    def __init__(self, field: str, value: Any, policy_id: str | None = None):
        self.value = value
        super().__init__(field, f"cannot parse {value!r} as a number", policy_id)


class InvalidScheduleError(PolicyValidationError):
    """Schedule unit or interval is not valid."""

    kind: str = "invalid-schedule"


# Chain-state exceptions


class ChainQueryError(RecurringKernelError):
    """
    A chain-state query failed (timeout, RPC error, malformed answer).

    Transient: the engine never guesses an answer; the cycle aborts and the
    next tick retries with progress unchanged.
    """

    code: str = "CHAIN_QUERY_FAILED"
    retryable: bool = True

    def __init__(self, operation: str, chain_id: str, reason: str):
        self.operation = operation
        self.chain_id = chain_id
        self.reason = reason
        super().__init__(f"Chain query '{operation}' on {chain_id} failed: {reason}")


# Proposal validation exceptions


class MismatchError(RecurringKernelError):
    """
    Proposed batch does not match the batch re-derived from policy + progress.

    Hard rejection: nothing is signed or broadcast.
    """

    code: str = "PROPOSAL_MISMATCH"

    def __init__(
        self,
        policy_id: str,
        order_index: int,
        field: str,
        expected: Any,
        actual: Any,
    ):
        self.policy_id = policy_id
        self.order_index = order_index
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Proposal mismatch for policy {policy_id} order {order_index} "
            f"on '{field}': expected {expected!r}, got {actual!r}"
        )


# Signing exceptions


class SigningError(RecurringKernelError):
    """The signing round failed or returned an unusable signature set."""

    code: str = "SIGNING_FAILED"
    retryable: bool = True

    def __init__(self, policy_id: str, order_index: int, reason: str):
        self.policy_id = policy_id
        self.order_index = order_index
        self.reason = reason
        super().__init__(
            f"Signing failed for policy {policy_id} order {order_index}: {reason}"
        )


# Completion exceptions


class CompletionError(RecurringKernelError):
    """
    Base exception for broadcast / confirmation failures.

    Progress is left untouched; the same order index is retried next tick.
    """

    code: str = "COMPLETION_ERROR"
    retryable: bool = True

    def __init__(
        self,
        policy_id: str,
        order_index: int,
        position: int,
        message: str,
        tx_hash: str | None = None,
    ):
        self.policy_id = policy_id
        self.order_index = order_index
        self.position = position
        self.tx_hash = tx_hash
        super().__init__(message)


class BroadcastError(CompletionError):
    """The broadcaster did not accept the signed transaction."""

    code: str = "BROADCAST_FAILED"

    def __init__(self, policy_id: str, order_index: int, position: int, reason: str):
        self.reason = reason
        super().__init__(
            policy_id,
            order_index,
            position,
            f"Broadcast of transaction {position} for policy {policy_id} "
            f"order {order_index} failed: {reason}",
        )


class ConfirmationTimeoutError(CompletionError):
    """The transaction did not reach confirmed status within the timeout."""

    code: str = "CONFIRMATION_TIMEOUT"

    def __init__(
        self,
        policy_id: str,
        order_index: int,
        position: int,
        tx_hash: str,
        timeout_seconds: float,
    ):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            policy_id,
            order_index,
            position,
            f"Transaction {tx_hash} for policy {policy_id} order {order_index} "
            f"not confirmed within {timeout_seconds}s",
            tx_hash=tx_hash,
        )


class TransactionRevertedError(CompletionError):
    """The chain reports the transaction as failed."""

    code: str = "TRANSACTION_REVERTED"

    def __init__(self, policy_id: str, order_index: int, position: int, tx_hash: str):
        super().__init__(
            policy_id,
            order_index,
            position,
            f"Transaction {tx_hash} for policy {policy_id} order {order_index} failed on-chain",
            tx_hash=tx_hash,
        )


# Concurrency-related exceptions


class ConcurrencyError(RecurringKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class PolicyLockedError(ConcurrencyError):
    """Another cycle for the same policy is in flight."""

    code: str = "POLICY_LOCKED"

    def __init__(self, policy_id: str, holder: str | None = None):
        self.policy_id = policy_id
        self.holder = holder
        suffix = f" (held by {holder})" if holder else ""
        super().__init__(f"Policy {policy_id} is locked by another cycle{suffix}")


class ProgressConflictError(ConcurrencyError):
    """Progress changed between read and advance (compare-and-swap lost)."""

    code: str = "PROGRESS_CONFLICT"

    def __init__(self, policy_id: str, expected_count: int, actual_count: int):
        self.policy_id = policy_id
        self.expected_count = expected_count
        self.actual_count = actual_count
        super().__init__(
            f"Progress conflict on policy {policy_id}: expected completed_count "
            f"{expected_count}, found {actual_count}"
        )


# Progress-related exceptions


class ProgressError(RecurringKernelError):
    """Base exception for progress-tracker errors."""

    code: str = "PROGRESS_ERROR"


class ProgressNotFoundError(ProgressError):
    """No progress record exists for the policy."""

    code: str = "PROGRESS_NOT_FOUND"

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Progress not found for policy: {policy_id}")


class ProgressOverflowError(ProgressError):
    """Advance requested on a policy whose orders are all completed."""

    code: str = "PROGRESS_OVERFLOW"

    def __init__(self, policy_id: str, order_count: int):
        self.policy_id = policy_id
        self.order_count = order_count
        super().__init__(
            f"Policy {policy_id} already completed all {order_count} orders"
        )


# Audit-related exceptions


class AuditError(RecurringKernelError):
    """Base exception for audit-trail errors."""

    code: str = "AUDIT_ERROR"


class AuditRecordImmutableError(AuditError):
    """Attempted to delete a transaction record."""

    code: str = "AUDIT_RECORD_IMMUTABLE"

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Transaction record {record_id}: {reason}")


class InvalidRecordTransitionError(AuditError):
    """Transaction record status change is not permitted."""

    code: str = "INVALID_RECORD_TRANSITION"

    def __init__(self, record_id: str, from_status: str, to_status: str):
        self.record_id = record_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Transaction record {record_id} cannot move from "
            f"{from_status} to {to_status}"
        )
