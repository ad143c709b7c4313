"""
recurring_batch.services.orchestrator -- Central DI container for the engine.

Responsibility:
    Creates every kernel service exactly once from ``EngineSettings`` and
    the external collaborators, and wires them together.  No kernel
    service constructs another service internally.

Usage:
    orchestrator = build_engine_orchestrator(
        chain=chain_client,
        signer=signing_service,
        broadcaster=broadcaster,
    )
    orchestrator.scheduler.start()
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from recurring_batch.services.scheduler import RecurringScheduler
from recurring_config import get_active_settings
from recurring_config.schema import EngineSettings
from recurring_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from recurring_kernel.db.immutability import register_immutability_listeners
from recurring_kernel.domain.clock import Clock, SystemClock
from recurring_kernel.domain.ports import Broadcaster, ChainState, SigningService
from recurring_kernel.logging_config import configure_logging, get_logger
from recurring_kernel.services.chain_reader import ChainReader
from recurring_kernel.services.completion_handler import CompletionHandler
from recurring_kernel.services.cycle_runner import PolicyCycleRunner
from recurring_kernel.services.policy_lock import PolicyLockManager, SqlLeaseStore
from recurring_kernel.services.policy_store import SqlPolicyStore
from recurring_kernel.services.progress_store import SqlProgressStore
from recurring_kernel.services.proposal_validator import ProposalValidator
from recurring_kernel.services.proposer import TransactionProposer
from recurring_kernel.services.transaction_recorder import TransactionRecorder

logger = get_logger("batch.orchestrator")


class EngineOrchestrator:
    """Central factory for kernel services.

    Guarantees:
        - Single-instance lifecycle for every service.
        - All services share the same session factory and Clock.
    """

    def __init__(
        self,
        settings: EngineSettings,
        session_factory: Callable[[], Session],
        chain: ChainState,
        signer: SigningService,
        broadcaster: Broadcaster,
        clock: Clock | None = None,
        use_leases: bool = True,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        supported = settings.supported_chains

        # Stores
        self.policy_store = SqlPolicyStore(
            session_factory, self.clock, supported_chains=supported
        )
        self.progress_store = SqlProgressStore(session_factory, self.clock)
        self.recorder = TransactionRecorder(session_factory, self.clock)
        self.locks = PolicyLockManager(
            lease_store=SqlLeaseStore(session_factory, self.clock) if use_leases else None,
            holder=settings.engine_id,
            lease_ttl_seconds=settings.lease_ttl_seconds,
        )

        # Pipeline
        self.chain = ChainReader(chain)
        self.proposer = TransactionProposer(
            self.chain,
            routers=settings.routers,
            clock=self.clock,
            slippage_bps=settings.slippage_bps,
            deadline_seconds=settings.deadline_seconds,
            approval_mode=settings.approval_mode,
        )
        self.validator = ProposalValidator(
            routers=settings.routers,
            slippage_bps=settings.slippage_bps,
            deadline_seconds=settings.deadline_seconds,
        )
        self.completion = CompletionHandler(
            self.chain,
            broadcaster,
            self.progress_store,
            self.recorder,
            clock=self.clock,
            confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
        )
        self.cycle_runner = PolicyCycleRunner(
            policy_store=self.policy_store,
            progress_store=self.progress_store,
            proposer=self.proposer,
            validator=self.validator,
            signer=signer,
            completion=self.completion,
            recorder=self.recorder,
            chain=self.chain,
            locks=self.locks,
            clock=self.clock,
            supported_chains=supported,
        )

        # Scheduling
        self.scheduler = RecurringScheduler(
            self.policy_store,
            self.cycle_runner,
            clock=self.clock,
            tick_interval_seconds=settings.tick_interval_seconds,
            max_workers=settings.max_workers,
        )


def build_engine_orchestrator(
    chain: ChainState,
    signer: SigningService,
    broadcaster: Broadcaster,
    settings_path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
    clock: Clock | None = None,
    create_schema: bool = False,
) -> EngineOrchestrator:
    """Build an EngineOrchestrator from the settings file (production entrypoint).

    Loads settings via get_active_settings(), initializes the module-level
    database engine from ``database_url``, installs the audit-trail
    listeners and, when ``create_schema`` is set, creates missing tables.
    """
    settings = get_active_settings(settings_path, overrides)
    configure_logging(level=settings.log_level)
    init_engine_from_url(settings.database_url)
    register_immutability_listeners()
    if create_schema:
        create_tables()

    orchestrator = EngineOrchestrator(
        settings=settings,
        session_factory=get_session_factory(),
        chain=chain,
        signer=signer,
        broadcaster=broadcaster,
        clock=clock,
    )
    logger.info(
        "engine_orchestrator_built",
        extra={
            "lease_holder": orchestrator.locks.holder,
            "settings_checksum": settings.checksum,
            "chains": sorted(settings.supported_chains),
        },
    )
    return orchestrator
