"""
PolicyCycleRunner -- one execution cycle of one policy.

Responsibility:
    Runs the pipeline for a single policy under its lock:

        load -> validate policy -> reconcile prior attempts -> propose
             -> validate proposal -> sign -> complete

    and turns every kernel error into a CycleResult the scheduler can act
    on.  One cycle executes at most one order.

Architecture position:
    Kernel > Services -- composes the stores and services; owns no state.

Reconciliation:
    A previous cycle may have ended with its final transaction's outcome
    unknown (confirmation timeout, or a crash after broadcast).  Before a
    new proposal the runner re-queries those attempts:
        - confirmed on chain  -> record confirmed, progress advanced,
                                 cycle ends RECONCILED (nothing broadcast)
        - failed on chain     -> record marked TRANSACTION_REVERTED
        - still pending       -> the order is proposed again; the proposer
                                 reuses the confirmed-state nonce, so at
                                 most one of the attempts can land
    A status query that fails aborts the cycle: re-proposing without
    knowing whether the previous attempt landed could execute twice.

Failure handling:
    PolicyValidationError -> INVALID_POLICY (policy parked until edited)
    ChainQueryError       -> CHAIN_ERROR (retry next tick)
    MismatchError         -> MISMATCH (alert; nothing signed)
    SigningError          -> SIGNING_FAILED (retry next tick)
    CompletionError       -> COMPLETION_FAILED (record failed, retry)
    PolicyLockedError     -> LOCKED (another cycle in flight)
    no longer due         -> NOT_DUE (with require_due; another cycle ran it)
    other kernel errors   -> ERROR
    Non-kernel exceptions propagate to the scheduler.
"""

from collections.abc import Callable, Collection
from decimal import Decimal
from uuid import UUID, uuid4

from recurring_kernel.domain.clock import Clock, SystemClock
from recurring_kernel.domain.outcomes import (
    CycleResult,
    CycleStatus,
    PolicyComplete,
    RangeSkipped,
)
from recurring_kernel.domain.policy import (
    PolicyRecord,
    SwapPolicy,
    ValidatedPolicy,
    validate_policy,
)
from recurring_kernel.domain.ports import (
    ConfirmationStatus,
    PolicyStore,
    ProgressStore,
    SigningService,
)
from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import TransactionBatch
from recurring_kernel.exceptions import (
    ChainQueryError,
    CompletionError,
    MismatchError,
    PolicyLockedError,
    PolicyValidationError,
    RecurringKernelError,
    SigningError,
    TransactionRevertedError,
)
from recurring_kernel.logging_config import LogContext, get_logger
from recurring_kernel.models.transaction_record import RecordStatus
from recurring_kernel.services.chain_reader import ChainReader
from recurring_kernel.services.completion_handler import CompletionHandler
from recurring_kernel.services.policy_lock import PolicyLockManager
from recurring_kernel.services.proposal_validator import ProposalValidator
from recurring_kernel.services.proposer import TransactionProposer
from recurring_kernel.services.transaction_recorder import TransactionRecorder

logger = get_logger("services.cycle")

_ERROR_STATUS: tuple[tuple[type[RecurringKernelError], CycleStatus], ...] = (
    (PolicyValidationError, CycleStatus.INVALID_POLICY),
    (ChainQueryError, CycleStatus.CHAIN_ERROR),
    (MismatchError, CycleStatus.MISMATCH),
    (SigningError, CycleStatus.SIGNING_FAILED),
    (CompletionError, CycleStatus.COMPLETION_FAILED),
    (PolicyLockedError, CycleStatus.LOCKED),
)


class PolicyCycleRunner:
    """Executes at most one order of one policy per call to ``run``."""

    def __init__(
        self,
        policy_store: PolicyStore,
        progress_store: ProgressStore,
        proposer: TransactionProposer,
        validator: ProposalValidator,
        signer: SigningService,
        completion: CompletionHandler,
        recorder: TransactionRecorder,
        chain: ChainReader,
        locks: PolicyLockManager | None = None,
        clock: Clock | None = None,
        supported_chains: Collection[str] | None = None,
    ):
        self._policies = policy_store
        self._progress = progress_store
        self._proposer = proposer
        self._validator = validator
        self._signer = signer
        self._completion = completion
        self._recorder = recorder
        self._chain = chain
        self._locks = locks or PolicyLockManager()
        self._clock = clock or SystemClock()
        self._supported_chains = supported_chains

    def run(
        self,
        policy_id: UUID,
        correlation_id: str | None = None,
        require_due: bool = False,
        on_result: Callable[[PolicyRecord, CycleResult], None] | None = None,
    ) -> CycleResult:
        """
        Run one cycle under the policy's lock.

        Args:
            require_due: Re-read the policy under the lock and return
                NOT_DUE unless it is still due.  Callers working from a
                due list read earlier set this.
            on_result: Called with the policy record read under the lock and
                the cycle result before the lock is released, so scheduling
                state moves before another cycle can take the policy.
        """
        cycle_id = str(uuid4())
        with LogContext.bind(
            correlation_id=correlation_id, cycle_id=cycle_id, policy_id=policy_id
        ):
            logger.info("cycle_started")
            try:
                with self._locks.hold(policy_id):
                    result = self._run_held(policy_id, cycle_id, require_due, on_result)
            except RecurringKernelError as exc:
                result = self._failed(policy_id, cycle_id, exc)
            logger.info(
                "cycle_finished",
                extra={"status": result.status.value, "error_code": result.error_code},
            )
            return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_held(
        self,
        policy_id: UUID,
        cycle_id: str,
        require_due: bool,
        on_result: Callable[[PolicyRecord, CycleResult], None] | None,
    ) -> CycleResult:
        record = None
        if require_due or on_result is not None:
            record = self._policies.get_record(policy_id)
        if require_due and not record.is_due(self._clock.now()):
            logger.info(
                "cycle_skipped_not_due",
                extra={"status": record.status.value, "next_run_at": record.next_run_at},
            )
            return CycleResult(policy_id=policy_id, status=CycleStatus.NOT_DUE, cycle_id=cycle_id)

        try:
            result = self._run_locked(policy_id, cycle_id)
        except RecurringKernelError as exc:
            result = self._failed(policy_id, cycle_id, exc)
        if on_result is not None:
            on_result(record, result)
        return result

    def _run_locked(self, policy_id: UUID, cycle_id: str) -> CycleResult:
        envelope = self._policies.get(policy_id)
        with LogContext.bind(vault_id=envelope.vault_id):
            policy = validate_policy(envelope, self._supported_chains)
            progress = self._progress.get(policy_id)

            if progress.is_terminal or progress.completed_count >= policy.terms.order_count:
                return CycleResult(
                    policy_id=policy_id,
                    status=CycleStatus.POLICY_COMPLETE,
                    progress=progress,
                    cycle_id=cycle_id,
                )

            with LogContext.bind(order_index=progress.completed_count):
                reconciled = self._reconcile(policy, progress)
                if reconciled is not None:
                    advanced, tx_hash = reconciled
                    return CycleResult(
                        policy_id=policy_id,
                        status=CycleStatus.RECONCILED,
                        order_index=progress.completed_count,
                        progress=advanced,
                        tx_hashes=(tx_hash,),
                        cycle_id=cycle_id,
                    )

                outcome = self._proposer.propose(policy, progress)
                if isinstance(outcome, PolicyComplete):
                    return CycleResult(
                        policy_id=policy_id,
                        status=CycleStatus.POLICY_COMPLETE,
                        progress=progress,
                        cycle_id=cycle_id,
                    )
                if isinstance(outcome, RangeSkipped):
                    return CycleResult(
                        policy_id=policy_id,
                        status=CycleStatus.RANGE_SKIPPED,
                        order_index=outcome.order_index,
                        progress=progress,
                        cycle_id=cycle_id,
                    )

                batch = outcome.batch
                self._validator.validate(
                    policy,
                    progress,
                    batch,
                    reference_rate=self._reference_rate(policy),
                    now=self._clock.now(),
                )
                signatures = self._sign(batch)
                completed = self._completion.complete(policy, progress, batch, signatures)

        return CycleResult(
            policy_id=policy_id,
            status=CycleStatus.EXECUTED,
            order_index=completed.order_index,
            progress=completed.progress,
            tx_hashes=completed.tx_hashes,
            cycle_id=cycle_id,
        )

    def _reference_rate(self, policy: ValidatedPolicy) -> Decimal | None:
        """Rate queried apart from the proposal; the quote must sit within slippage of it."""
        payload = policy.payload
        if not isinstance(payload, SwapPolicy):
            return None
        terms = payload.terms
        return self._chain.rate(terms.chain_id, terms.source_asset, payload.destination_asset)

    def _sign(self, batch: TransactionBatch) -> list[str]:
        try:
            signatures = list(self._signer.sign(list(batch.digests)))
        except Exception as exc:
            raise SigningError(
                str(batch.policy_id), batch.order_index, str(exc) or type(exc).__name__
            ) from exc
        if len(signatures) != len(batch.digests):
            raise SigningError(
                str(batch.policy_id),
                batch.order_index,
                f"expected {len(batch.digests)} signatures, got {len(signatures)}",
            )
        return signatures

    def _reconcile(
        self,
        policy: ValidatedPolicy,
        progress: Progress,
    ) -> tuple[Progress, str] | None:
        order_index = progress.completed_count
        attempts = self._recorder.unresolved_final_attempts(policy.policy_id, order_index)
        for attempt in attempts:
            if attempt.status is RecordStatus.CONFIRMED:
                landed = True
            else:
                status = self._chain.confirmation_status(attempt.chain_id, attempt.tx_hash)
                landed = status is ConfirmationStatus.CONFIRMED
                if landed:
                    self._recorder.mark_confirmed(attempt.record_id)
                elif status is ConfirmationStatus.FAILED:
                    self._recorder.mark_failed(
                        attempt.record_id,
                        TransactionRevertedError.code,
                        f"Transaction {attempt.tx_hash} observed failed during reconciliation",
                    )

            if landed:
                advanced = self._progress.advance(
                    policy.policy_id,
                    expected_count=order_index,
                    executed_at=self._clock.now(),
                )
                logger.info(
                    "order_reconciled",
                    extra={"tx_hash": attempt.tx_hash, "record_id": str(attempt.record_id)},
                )
                return advanced, attempt.tx_hash

        if attempts:
            logger.info("order_reproposed", extra={"unresolved_attempts": len(attempts)})
        return None

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _failed(
        self,
        policy_id: UUID,
        cycle_id: str,
        exc: RecurringKernelError,
    ) -> CycleResult:
        status = CycleStatus.ERROR
        for error_type, mapped in _ERROR_STATUS:
            if isinstance(exc, error_type):
                status = mapped
                break

        if status in (CycleStatus.MISMATCH, CycleStatus.ERROR, CycleStatus.INVALID_POLICY):
            logger.error("cycle_failed", exc_info=exc, extra={"status": status.value})
        elif status is CycleStatus.LOCKED:
            logger.info("cycle_skipped_locked", extra={"error_code": exc.code})
        else:
            logger.warning("cycle_failed", exc_info=exc, extra={"status": status.value})

        return CycleResult(
            policy_id=policy_id,
            status=status,
            order_index=getattr(exc, "order_index", None),
            error_code=exc.code,
            error_message=str(exc),
            cycle_id=cycle_id,
        )
