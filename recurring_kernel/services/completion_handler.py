"""
CompletionHandler -- broadcast, confirm, and commit one order.

Responsibility:
    Takes a validated batch and its signatures, broadcasts the transactions
    in order, waits for each to confirm, and advances progress exactly once
    when the final transaction confirms.

Architecture position:
    Kernel > Services -- the only writer of progress during normal
    execution.  Called by PolicyCycleRunner after the signing round.

Invariants enforced:
    - One signature per digest, correlated by position.
    - A pending TransactionRecord exists before each broadcast.
    - Transaction N+1 is broadcast only after transaction N confirmed, so a
      swap never reaches the chain ahead of the approval it depends on.
    - progress.advance(expected_count=order_index) is called once, after
      the final confirmation, and never on any failure path.

Failure modes (all CompletionError, all retryable):
    - BroadcastError: broadcaster raised or returned no hash.
    - TransactionRevertedError: chain reports the transaction failed.
    - ConfirmationTimeoutError: still unconfirmed after the timeout.  The
      attempt may still land; reconciliation re-checks it next cycle.
    Each marks the record failed and leaves progress untouched.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from recurring_kernel.domain.clock import Clock, SystemClock
from recurring_kernel.domain.policy import ValidatedPolicy
from recurring_kernel.domain.ports import Broadcaster, ConfirmationStatus, ProgressStore
from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import SignedTransaction, TransactionBatch
from recurring_kernel.exceptions import (
    BroadcastError,
    ChainQueryError,
    ConfirmationTimeoutError,
    SigningError,
    TransactionRevertedError,
)
from recurring_kernel.logging_config import LogContext, get_logger
from recurring_kernel.services.chain_reader import ChainReader
from recurring_kernel.services.transaction_recorder import TransactionRecorder

logger = get_logger("services.completion")


@dataclass(frozen=True)
class CompletionResult:
    policy_id: UUID
    order_index: int
    tx_hashes: tuple[str, ...]
    progress: Progress


class CompletionHandler:
    """
    Drives a signed batch to confirmation and commits the order.

    Usage:
        result = handler.complete(policy, progress, batch, signatures)
        result.progress.completed_count == progress.completed_count + 1
    """

    def __init__(
        self,
        chain: ChainReader,
        broadcaster: Broadcaster,
        progress_store: ProgressStore,
        recorder: TransactionRecorder,
        clock: Clock | None = None,
        confirmation_timeout_seconds: float = 300,
        poll_interval_seconds: float = 5,
    ):
        self._chain = chain
        self._broadcaster = broadcaster
        self._progress = progress_store
        self._recorder = recorder
        self._clock = clock or SystemClock()
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def complete(
        self,
        policy: ValidatedPolicy,
        progress: Progress,
        batch: TransactionBatch,
        signatures: Sequence[str],
    ) -> CompletionResult:
        policy_id = str(policy.policy_id)
        if len(signatures) != len(batch.digests):
            raise SigningError(
                policy_id,
                batch.order_index,
                f"expected {len(batch.digests)} signatures, got {len(signatures)}",
            )

        tx_hashes: list[str] = []
        for position, (descriptor, digest, signature) in enumerate(
            zip(batch.transactions, batch.digests, signatures)
        ):
            record_id = self._recorder.open(batch, position)
            signed = SignedTransaction(descriptor=descriptor, digest=digest, signature=signature)
            tx_hash = self._broadcast(policy_id, batch, position, record_id, signed)
            with LogContext.bind(tx_hash=tx_hash):
                self._await_confirmation(policy_id, batch, position, record_id, tx_hash)
            tx_hashes.append(tx_hash)

        advanced = self._progress.advance(
            policy.policy_id,
            expected_count=batch.order_index,
            executed_at=self._clock.now(),
        )
        logger.info(
            "order_completed",
            extra={
                "policy_id": policy_id,
                "order_index": batch.order_index,
                "amount": batch.amount,
                "tx_hashes": tx_hashes,
                "completed_count": advanced.completed_count,
            },
        )
        return CompletionResult(
            policy_id=policy.policy_id,
            order_index=batch.order_index,
            tx_hashes=tuple(tx_hashes),
            progress=advanced,
        )

    def _broadcast(
        self,
        policy_id: str,
        batch: TransactionBatch,
        position: int,
        record_id: UUID,
        signed: SignedTransaction,
    ) -> str:
        try:
            tx_hash = self._broadcaster.send(signed)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            self._recorder.mark_failed(record_id, BroadcastError.code, reason)
            raise BroadcastError(policy_id, batch.order_index, position, reason) from exc

        if not isinstance(tx_hash, str) or not tx_hash:
            reason = f"broadcaster returned no transaction hash ({tx_hash!r})"
            self._recorder.mark_failed(record_id, BroadcastError.code, reason)
            raise BroadcastError(policy_id, batch.order_index, position, reason)

        self._recorder.mark_broadcast(record_id, tx_hash)
        logger.info(
            "transaction_broadcast",
            extra={"position": position, "tx_hash": tx_hash, "nonce": signed.descriptor.nonce},
        )
        return tx_hash

    def _await_confirmation(
        self,
        policy_id: str,
        batch: TransactionBatch,
        position: int,
        record_id: UUID,
        tx_hash: str,
    ) -> None:
        chain_id = batch.transactions[position].chain_id
        deadline = self._clock.now() + timedelta(seconds=self.confirmation_timeout_seconds)

        while True:
            try:
                status = self._chain.confirmation_status(chain_id, tx_hash)
            except ChainQueryError:
                # Unknown is not failed; keep polling until the timeout
                status = ConfirmationStatus.PENDING

            if status is ConfirmationStatus.CONFIRMED:
                self._recorder.mark_confirmed(record_id)
                logger.info("transaction_confirmed", extra={"position": position})
                return

            if status is ConfirmationStatus.FAILED:
                error = TransactionRevertedError(policy_id, batch.order_index, position, tx_hash)
                self._recorder.mark_failed(record_id, error.code, str(error))
                logger.warning("transaction_reverted", extra={"position": position})
                raise error

            now = self._clock.now()
            if now >= deadline:
                error = ConfirmationTimeoutError(
                    policy_id,
                    batch.order_index,
                    position,
                    tx_hash,
                    self.confirmation_timeout_seconds,
                )
                self._recorder.mark_failed(record_id, error.code, str(error))
                logger.warning(
                    "confirmation_timeout",
                    extra={
                        "position": position,
                        "timeout_seconds": self.confirmation_timeout_seconds,
                    },
                )
                raise error

            remaining = (deadline - now).total_seconds()
            self._clock.sleep(min(self.poll_interval_seconds, remaining))
