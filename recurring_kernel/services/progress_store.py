"""
SqlProgressStore -- the durable, exactly-once order counter.

Responsibility:
    Reads a policy's progress and advances it by exactly one completed
    order.  The advance is the commit point of an order: once it returns,
    the order at the previous index will never be proposed again.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by CompletionHandler after the final transaction of a batch
    confirms, and by the cycle runner when reconciling a late confirmation.

Invariants enforced:
    - Monotonic: completed_count only ever increases, by one per advance.
    - Bounded: completed_count never exceeds order_count; the advance that
      reaches order_count also sets is_terminal.
    - Atomic read-modify-write: the row is read with ``SELECT ... FOR
      UPDATE``, compared against the caller's expected count and updated
      in the same transaction.

Failure modes:
    - ProgressNotFoundError: no row for the policy.
    - ProgressOverflowError: the policy already completed every order.
    - ProgressConflictError: the row moved since the caller read it (a
      concurrent cycle or reconciliation already advanced it).

Audit relevance:
    Every advance is logged at INFO with the old and new counts.
"""

from dataclasses import replace
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from recurring_kernel.domain.clock import as_utc
from recurring_kernel.domain.progress import Progress
from recurring_kernel.exceptions import (
    ProgressConflictError,
    ProgressNotFoundError,
    ProgressOverflowError,
)
from recurring_kernel.logging_config import get_logger
from recurring_kernel.models.progress import PolicyProgressModel
from recurring_kernel.services.base import BaseStore

logger = get_logger("services.progress")


class SqlProgressStore(BaseStore):
    """
    Progress tracker backed by the ``policy_progress`` table.

    Usage:
        store = SqlProgressStore(session_factory, clock)
        progress = store.get(policy_id)
        ...
        progress = store.advance(policy_id, expected_count=progress.completed_count)
    """

    def get(self, policy_id: UUID) -> Progress:
        with self._scope() as session:
            row = session.execute(
                select(PolicyProgressModel).where(
                    PolicyProgressModel.policy_id == policy_id
                )
            ).scalar_one_or_none()
            if row is None:
                raise ProgressNotFoundError(str(policy_id))
            return self._snapshot(row)

    def advance(
        self,
        policy_id: UUID,
        expected_count: int | None = None,
        executed_at: datetime | None = None,
    ) -> Progress:
        """
        Record one more completed order.

        Preconditions:
            The final transaction of order ``expected_count`` is confirmed.

        Postconditions:
            completed_count is one higher, version is bumped, and
            is_terminal is set when completed_count reaches order_count.

        Args:
            policy_id: Policy to advance.
            expected_count: completed_count the caller observed.  When
                given, the advance only applies if the row still holds it.
            executed_at: Execution time; defaults to the clock.
        """
        with self._scope() as session:
            row = self._lock_row(session, policy_id)

            if row.is_terminal or row.completed_count >= row.order_count:
                logger.warning(
                    "progress_overflow_refused",
                    extra={
                        "policy_id": str(policy_id),
                        "order_count": row.order_count,
                    },
                )
                raise ProgressOverflowError(str(policy_id), row.order_count)

            if expected_count is not None and row.completed_count != expected_count:
                raise ProgressConflictError(
                    str(policy_id), expected_count, row.completed_count
                )

            previous = row.completed_count
            row.completed_count = previous + 1
            row.last_executed_at = executed_at or self._clock.now()
            row.is_terminal = row.completed_count == row.order_count
            row.version += 1
            row.updated_by_id = self._actor_id
            session.flush()
            snapshot = self._snapshot(row)

        logger.info(
            "progress_advanced",
            extra={
                "policy_id": str(policy_id),
                "from_count": previous,
                "to_count": snapshot.completed_count,
                "order_count": snapshot.order_count,
                "is_terminal": snapshot.is_terminal,
            },
        )
        return snapshot

    @staticmethod
    def _lock_row(session: Session, policy_id: UUID) -> PolicyProgressModel:
        row = session.execute(
            select(PolicyProgressModel)
            .where(PolicyProgressModel.policy_id == policy_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise ProgressNotFoundError(str(policy_id))
        return row

    @staticmethod
    def _snapshot(row: PolicyProgressModel) -> Progress:
        progress = row.to_dto()
        return replace(progress, last_executed_at=as_utc(progress.last_executed_at))
