"""
Tests for recurring_batch.services.orchestrator.EngineOrchestrator.

Builds the whole engine from settings and drives it through the scheduler.
"""

from datetime import timedelta

import pytest

from recurring_batch.services.orchestrator import EngineOrchestrator, build_engine_orchestrator
from recurring_config import get_active_settings
from recurring_kernel.db.engine import get_engine, is_postgres, reset_engine
from recurring_kernel.domain.outcomes import CycleStatus
from recurring_kernel.domain.policy import PolicyStatus
from recurring_kernel.domain.ports import ConfirmationStatus
from recurring_kernel.exceptions import PolicyValidationError
from recurring_kernel.models.transaction_record import RecordStatus


@pytest.fixture
def settings():
    return get_active_settings(
        overrides={
            "chains": {"ethereum": {"router_address": "0xrouter"}},
            "slippage_bps": 50,
            "confirmation_timeout_seconds": 60,
            "poll_interval_seconds": 10,
            "max_workers": 1,
            "engine_id": "engine-a",
        }
    )


@pytest.fixture
def orchestrator(settings, session_factory, chain, signer, broadcaster, clock):
    return EngineOrchestrator(
        settings=settings,
        session_factory=session_factory,
        chain=chain,
        signer=signer,
        broadcaster=broadcaster,
        clock=clock,
    )


class TestWiring:
    def test_services_share_clock(self, orchestrator, clock):
        assert orchestrator.clock is clock
        assert orchestrator.proposer._clock is clock
        assert orchestrator.completion._clock is clock
        assert orchestrator.scheduler._clock is clock

    def test_settings_flow_into_services(self, orchestrator):
        assert orchestrator.proposer._routers == {"ethereum": "0xrouter"}
        assert orchestrator.locks.holder.startswith("engine-a#")
        assert orchestrator.scheduler._max_workers == 1

    def test_unsupported_chain_rejected(self, orchestrator, swap_config):
        with pytest.raises(PolicyValidationError):
            orchestrator.policy_store.create("vault-1", swap_config(chain_id="polygon"))

    def test_without_leases(self, settings, session_factory, chain, signer, broadcaster, clock):
        orchestrator = EngineOrchestrator(
            settings, session_factory, chain, signer, broadcaster, clock=clock, use_leases=False
        )
        assert orchestrator.locks._lease_store is None


class TestEndToEnd:
    def test_policy_runs_to_completion(self, orchestrator, swap_config, clock, broadcaster, signer):
        record = orchestrator.policy_store.create("vault-1", swap_config())

        for _ in range(3):
            assert orchestrator.scheduler.tick().count(CycleStatus.EXECUTED) == 1
            clock.advance(timedelta(days=1).total_seconds())

        assert orchestrator.policy_store.get_record(record.policy_id).status is PolicyStatus.COMPLETED
        assert orchestrator.progress_store.get(record.policy_id).is_terminal
        assert len(signer.calls) == 3

        swaps = [s.descriptor for s in broadcaster.sent if s.descriptor.target == "0xrouter"]
        assert [s.call.get("amount_in") for s in swaps] == [34, 33, 33]
        # 34 * 2 * (1 - 0.005), floored
        assert swaps[0].call.get("min_amount_out") == 67

        records = orchestrator.recorder.list_for_policy(record.policy_id)
        assert all(r.status is RecordStatus.CONFIRMED for r in records)

    def test_confirmation_timeout_then_reconciled(self, orchestrator, swap_config, chain, clock):
        record = orchestrator.policy_store.create("vault-1", swap_config())
        chain.statuses["0xtx2"] = ConfirmationStatus.PENDING
        assert orchestrator.scheduler.tick().count(CycleStatus.COMPLETION_FAILED) == 1

        chain.statuses["0xtx2"] = ConfirmationStatus.CONFIRMED
        assert orchestrator.scheduler.tick().count(CycleStatus.RECONCILED) == 1
        stored = orchestrator.policy_store.get_record(record.policy_id)
        assert stored.next_run_at == record.anchor_at + timedelta(days=1)
        assert orchestrator.progress_store.get(record.policy_id).completed_count == 1


class TestBuildFromSettings:
    @pytest.fixture(autouse=True)
    def _reset_engine(self):
        yield
        reset_engine()

    def test_builds_against_configured_database(self, chain, signer, broadcaster, clock, swap_config, captured_logs):
        orchestrator = build_engine_orchestrator(
            chain,
            signer,
            broadcaster,
            overrides={"database_url": "sqlite://", "max_workers": 1},
            clock=clock,
            create_schema=True,
        )
        assert get_engine().dialect.name == "sqlite"
        assert not is_postgres()

        orchestrator.policy_store.create("vault-1", swap_config())
        assert orchestrator.scheduler.tick().count(CycleStatus.EXECUTED) == 1

        entry = next(r for r in captured_logs() if r["message"] == "engine_orchestrator_built")
        assert entry["settings_checksum"] == orchestrator.settings.checksum
        assert entry["chains"] == ["ethereum", "polygon"]

    def test_engine_released_on_reset(self, chain, signer, broadcaster):
        build_engine_orchestrator(chain, signer, broadcaster, overrides={"database_url": "sqlite://"})
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()
