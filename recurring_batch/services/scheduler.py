"""
RecurringScheduler -- In-process polling scheduler for policies.

Contract:
    Polls due policies on a configurable interval, evaluates
    ``should_fire()`` (pure), runs each due policy through the
    PolicyCycleRunner and applies the cycle's outcome to the policy row.

Architecture: recurring_batch/services.  Uses recurring_batch.domain.schedule
    for pure evaluation and the kernel's cycle runner for execution.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Different policies run in parallel on a worker pool; the same policy
      never runs twice at once (the cycle runner holds its lock).
    - Graceful shutdown: ``stop()`` lets in-flight cycles finish.

Outcome handling:
    EXECUTED / RECONCILED -> next_run_at moves to the next schedule slot;
                             a terminal policy is marked completed
    POLICY_COMPLETE       -> policy marked completed
    INVALID_POLICY        -> policy marked invalid until edited
    NOT_DUE               -> nothing; another cycle ran the slot after listing
    anything else         -> policy stays due and is retried next tick

    The runner re-reads the policy under its lock and applies the outcome
    before releasing it, so a due list read earlier can never execute the
    same slot twice.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from uuid import uuid4

from recurring_batch.domain.schedule import compute_next_run, should_fire
from recurring_kernel.domain.clock import Clock, SystemClock
from recurring_kernel.domain.outcomes import CycleResult, CycleStatus
from recurring_kernel.domain.policy import PolicyRecord, parse_config
from recurring_kernel.exceptions import PolicyValidationError
from recurring_kernel.logging_config import LogContext, get_logger
from recurring_kernel.services.cycle_runner import PolicyCycleRunner
from recurring_kernel.services.policy_store import SqlPolicyStore

logger = get_logger("batch.scheduler")


@dataclass(frozen=True)
class TickResult:
    """Summary of one scheduler tick."""

    fired: int = 0
    results: tuple[CycleResult, ...] = field(default_factory=tuple)
    errors: int = 0

    def count(self, status: CycleStatus) -> int:
        return sum(1 for result in self.results if result.status is status)


class RecurringScheduler:
    """In-process polling scheduler for recurring-order policies.

    Contract:
        - ``tick()`` evaluates due policies and runs one cycle for each.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler; cross-process exclusion comes from
          the per-policy leases held by the cycle runner.
        - Does NOT handle timezone conversions (expects UTC).
    """

    def __init__(
        self,
        policy_store: SqlPolicyStore,
        cycle_runner: PolicyCycleRunner,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60,
        max_workers: int = 4,
    ):
        self._policies = policy_store
        self._runner = cycle_runner
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._max_workers = max_workers
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickResult:
        """Run one cycle for every due policy (public for testing)."""
        now = self._clock.now()
        try:
            due = [r for r in self._policies.list_due_records(now) if should_fire(r, now)]
        except Exception:
            logger.exception("scheduler_tick_failed")
            return TickResult(errors=1)

        if not due:
            return TickResult()

        # Worker threads do not inherit LogContext; the tick id is passed along
        tick_id = f"tick-{uuid4().hex[:16]}"
        results: list[CycleResult] = []
        errors = 0
        workers = max(1, min(self._max_workers, len(due)))
        with LogContext.bind(correlation_id=tick_id):
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="policy-cycle") as pool:
                futures = {pool.submit(self._fire, record, tick_id): record for record in due}
                for future, record in futures.items():
                    try:
                        results.append(future.result())
                    except Exception:
                        errors += 1
                        logger.exception(
                            "policy_cycle_crashed",
                            extra={"policy_id": str(record.policy_id)},
                        )

            logger.info(
                "scheduler_tick_completed",
                extra={"due": len(due), "fired": len(results), "errors": errors},
            )
        return TickResult(fired=len(results), results=tuple(results), errors=errors)

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="recurring-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            # Wait for interval or until stopped
            self._stop_event.wait(timeout=self._tick_interval)

    def _fire(self, record: PolicyRecord, correlation_id: str | None = None) -> CycleResult:
        return self._runner.run(
            record.policy_id,
            correlation_id=correlation_id,
            require_due=True,
            on_result=self._apply,
        )

    def _apply(self, record: PolicyRecord, result: CycleResult) -> None:
        policy_id = record.policy_id

        if result.status in (CycleStatus.EXECUTED, CycleStatus.RECONCILED):
            if result.progress is not None and result.progress.is_terminal:
                self._policies.mark_completed(policy_id)
                return
            next_run = self._next_run(record)
            self._policies.record_execution(policy_id, next_run)
            logger.info(
                "policy_rescheduled",
                extra={"policy_id": str(policy_id), "next_run_at": next_run},
            )
        elif result.status is CycleStatus.POLICY_COMPLETE:
            self._policies.mark_completed(policy_id)
        elif result.status is CycleStatus.INVALID_POLICY:
            self._policies.mark_invalid(
                policy_id,
                result.error_code or PolicyValidationError.code,
                result.error_message or "",
            )

    def _next_run(self, record: PolicyRecord):
        # The cycle validated this configuration moments ago
        schedule = parse_config(record.envelope.config).terms.schedule
        return compute_next_run(schedule, self._clock.now(), anchor=record.anchor_at)
