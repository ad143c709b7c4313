"""
ORM-Level Audit Trail Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Every broadcast attempt leaves a TransactionRecord.  Those rows are the only
evidence of what the engine put on-chain, including attempts whose outcome
was unknown when the cycle ended (confirmation timeouts).  Reconciliation of
late confirmations reads them, so losing one could let an order execute twice.

Rules enforced here:

    Entity             | Rule
    -------------------|-----------------------------------------------------
    TransactionRecord  | Never deleted
    TransactionRecord  | Identity fields (policy, order, position, kind,
                       | digest, nonce) never change after insert
    TransactionRecord  | Status only moves pending -> confirmed | failed,
                       | or failed -> confirmed (late landing)

The status rule is also checked by TransactionRecorder before it mutates a
row; the listener catches writes that bypass the recorder.

===============================================================================
USAGE
===============================================================================

    from recurring_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from recurring_kernel.exceptions import (
    AuditRecordImmutableError,
    InvalidRecordTransitionError,
)
from recurring_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

RECORD_IDENTITY_FIELDS = frozenset({
    "policy_id",
    "order_index",
    "position",
    "tx_kind",
    "digest",
    "nonce",
})

ALLOWED_STATUS_TRANSITIONS = frozenset({
    ("pending", "confirmed"),
    ("pending", "failed"),
    ("failed", "confirmed"),
})


def _check_transaction_record_update(mapper, connection, target):
    """Block identity changes and illegal status transitions."""
    state = inspect(target)

    for field_name in RECORD_IDENTITY_FIELDS:
        history = state.attrs[field_name].history
        if history.deleted and history.added and history.deleted[0] != history.added[0]:
            logger.error(
                "audit_record_violation_blocked",
                extra={
                    "record_id": str(target.id),
                    "field": field_name,
                    "operation": "UPDATE",
                },
            )
            raise AuditRecordImmutableError(
                str(target.id), f"field '{field_name}' cannot change after insert"
            )

    status_history = state.attrs["status"].history
    if status_history.deleted and status_history.added:
        old, new = status_history.deleted[0], status_history.added[0]
        if old != new and (old, new) not in ALLOWED_STATUS_TRANSITIONS:
            raise InvalidRecordTransitionError(str(target.id), old, new)


def _check_transaction_record_delete(mapper, connection, target):
    """Transaction records are never deleted."""
    logger.error(
        "audit_record_violation_blocked",
        extra={"record_id": str(target.id), "operation": "DELETE"},
    )
    raise AuditRecordImmutableError(
        str(target.id), "transaction records cannot be deleted"
    )


def register_immutability_listeners():
    """Register audit-trail enforcement listeners (idempotent)."""
    from recurring_kernel.models.transaction_record import TransactionRecordModel

    if not event.contains(
        TransactionRecordModel, "before_update", _check_transaction_record_update
    ):
        event.listen(
            TransactionRecordModel, "before_update", _check_transaction_record_update
        )
    if not event.contains(
        TransactionRecordModel, "before_delete", _check_transaction_record_delete
    ):
        event.listen(
            TransactionRecordModel, "before_delete", _check_transaction_record_delete
        )


def unregister_immutability_listeners():
    """Remove audit-trail listeners. FOR TESTING ONLY."""
    from recurring_kernel.models.transaction_record import TransactionRecordModel

    for name, fn in (
        ("before_update", _check_transaction_record_update),
        ("before_delete", _check_transaction_record_delete),
    ):
        if event.contains(TransactionRecordModel, name, fn):
            event.remove(TransactionRecordModel, name, fn)
