"""
Tests for recurring_kernel.services.cycle_runner.PolicyCycleRunner.

End-to-end cycles against the real stores with fake chain, signer and
broadcaster: outcome mapping, exactly-once execution, and reconciliation of
attempts whose confirmation timed out.
"""

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from recurring_kernel.db.engine import session_scope
from recurring_kernel.domain.outcomes import BatchProposed, CycleStatus
from recurring_kernel.domain.ports import ConfirmationStatus
from recurring_kernel.domain.transactions import CallData, build_batch
from recurring_kernel.models.policy import PolicyModel
from recurring_kernel.models.transaction_record import RecordStatus
from recurring_kernel.services.cycle_runner import PolicyCycleRunner
from recurring_kernel.services.proposer import TransactionProposer


@pytest.fixture
def policy_id(policy_store, swap_config):
    return policy_store.create("vault-1", swap_config()).policy_id


def _rewire(runner, **overrides):
    """Copy of ``runner`` with some collaborators replaced."""
    parts = {
        "policy_store": runner._policies,
        "progress_store": runner._progress,
        "proposer": runner._proposer,
        "validator": runner._validator,
        "signer": runner._signer,
        "completion": runner._completion,
        "recorder": runner._recorder,
        "chain": runner._chain,
        "locks": runner._locks,
        "clock": runner._clock,
        "supported_chains": runner._supported_chains,
    }
    parts.update(overrides)
    return PolicyCycleRunner(**parts)


class TestExecutedCycle:
    def test_executes_one_order(self, cycle_runner, policy_id, signer, broadcaster, progress_store):
        result = cycle_runner.run(policy_id)

        assert result.status is CycleStatus.EXECUTED
        assert result.status.advanced_progress
        assert result.order_index == 0
        assert result.tx_hashes == ("0xtx1", "0xtx2")
        assert result.progress.completed_count == 1
        assert len(signer.calls) == 1
        assert signer.calls[0] == [s.digest for s in broadcaster.sent]
        assert progress_store.get(policy_id).completed_count == 1

    def test_full_policy_spends_budget_exactly(self, cycle_runner, policy_id, recorder):
        statuses = [cycle_runner.run(policy_id).status for _ in range(4)]
        assert statuses == [CycleStatus.EXECUTED] * 3 + [CycleStatus.POLICY_COMPLETE]

        finals = [r for r in recorder.list_for_policy(policy_id) if r.is_final]
        assert [r.amount for r in finals] == [34, 33, 33]
        assert sum(r.amount for r in finals) == 100

    def test_send_policy(self, cycle_runner, policy_store, send_config, broadcaster):
        policy_id = policy_store.create("vault-1", send_config(source_asset="native")).policy_id
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.EXECUTED
        assert broadcaster.sent[0].descriptor.value == 34

    def test_log_context_bound(self, cycle_runner, policy_id, captured_logs):
        cycle_runner.run(policy_id, correlation_id="tick-1")
        logs = captured_logs()
        started = next(r for r in logs if r["message"] == "cycle_started")
        assert started["policy_id"] == str(policy_id)
        assert started["correlation_id"] == "tick-1"
        assert "cycle_id" in started
        completed = next(r for r in logs if r["message"] == "order_completed")
        assert completed["vault_id"] == "vault-1"
        assert completed["order_index"] == "0"


class TestNonExecutingOutcomes:
    def test_invalid_configuration(self, cycle_runner, policy_id, session_factory, signer):
        with session_scope(session_factory) as session:
            policy = session.get(PolicyModel, policy_id)
            policy.config = {**policy.config, "order_count": 0}

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.INVALID_POLICY
        assert result.error_code == "POLICY_INVALID"
        assert signer.calls == []

    def test_missing_router_is_invalid(self, cycle_runner, policy_id, chain_reader, clock):
        runner = _rewire(cycle_runner, proposer=TransactionProposer(chain_reader, {}, clock=clock))
        assert runner.run(policy_id).status is CycleStatus.INVALID_POLICY

    def test_range_skipped(self, cycle_runner, policy_store, swap_config, chain, signer, progress_store):
        policy_id = policy_store.create(
            "vault-1", swap_config(price_bounds={"min": "5", "max": "6"})
        ).policy_id
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.RANGE_SKIPPED
        assert signer.calls == []
        assert progress_store.get(policy_id).completed_count == 0

    def test_chain_error(self, cycle_runner, policy_id, chain, signer):
        chain.nonce_error = TimeoutError("rpc")
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.CHAIN_ERROR
        assert result.error_code == "CHAIN_QUERY_FAILED"
        assert signer.calls == []

    def test_signing_failure(self, cycle_runner, policy_id, signer, broadcaster):
        signer.error = RuntimeError("quorum not reached")
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.SIGNING_FAILED
        assert broadcaster.sent == []

    def test_short_signature_set(self, cycle_runner, policy_id, signer, broadcaster):
        signer.drop_last = True
        assert cycle_runner.run(policy_id).status is CycleStatus.SIGNING_FAILED
        assert broadcaster.sent == []

    def test_mismatch_never_signed(self, cycle_runner, policy_id, chain_reader, clock, signer):
        class TamperingProposer(TransactionProposer):
            def propose(self, policy, progress):
                outcome = super().propose(policy, progress)
                batch = outcome.batch
                return BatchProposed(
                    batch=build_batch(
                        batch.policy_id, batch.order_index, batch.amount + 1,
                        batch.transactions, batch.quoted_rate, batch.slippage_bps, batch.deadline,
                    )
                )

        runner = _rewire(
            cycle_runner,
            proposer=TamperingProposer(chain_reader, {"ethereum": "0xrouter"}, clock=clock),
        )
        result = runner.run(policy_id)
        assert result.status is CycleStatus.MISMATCH
        assert result.error_code == "PROPOSAL_MISMATCH"
        assert signer.calls == []

    def test_locked(self, cycle_runner, policy_id, lock_manager, signer):
        with lock_manager.hold(policy_id):
            result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.LOCKED
        assert signer.calls == []

    def test_broadcast_failure(self, cycle_runner, policy_id, broadcaster, progress_store):
        broadcaster.error = ConnectionError("refused")
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.COMPLETION_FAILED
        assert result.error_code == "BROADCAST_FAILED"
        assert progress_store.get(policy_id).completed_count == 0


class TestConfirmationTimeout:
    """The unconfirmed attempt must be settled before the order is proposed again."""

    @pytest.fixture
    def timed_out(self, cycle_runner, policy_id, chain):
        chain.statuses["0xtx2"] = ConfirmationStatus.PENDING
        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.COMPLETION_FAILED
        assert result.error_code == "CONFIRMATION_TIMEOUT"
        return result

    def test_late_confirmation_reconciled_without_rebroadcast(
        self, cycle_runner, policy_id, chain, broadcaster, progress_store, recorder, timed_out
    ):
        chain.statuses["0xtx2"] = ConfirmationStatus.CONFIRMED

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.RECONCILED
        assert result.status.advanced_progress
        assert result.tx_hashes == ("0xtx2",)
        assert len(broadcaster.sent) == 2
        assert progress_store.get(policy_id).completed_count == 1
        final = [r for r in recorder.list_for_policy(policy_id) if r.is_final][0]
        assert final.status is RecordStatus.CONFIRMED

        # Next cycle moves on to the second order
        nxt = cycle_runner.run(policy_id)
        assert nxt.status is CycleStatus.EXECUTED
        assert nxt.order_index == 1

    def test_still_pending_reproposed_on_same_nonce(
        self, cycle_runner, policy_id, broadcaster, progress_store, timed_out
    ):
        first_swap = broadcaster.sent[1].descriptor

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.EXECUTED
        assert result.order_index == 0
        retry_swap = broadcaster.sent[-1].descriptor
        assert retry_swap.nonce == first_swap.nonce
        assert progress_store.get(policy_id).completed_count == 1

    def test_reverted_attempt_marked_and_reproposed(
        self, cycle_runner, policy_id, chain, recorder, timed_out
    ):
        chain.statuses["0xtx2"] = ConfirmationStatus.FAILED

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.EXECUTED
        first = [r for r in recorder.list_for_policy(policy_id) if r.tx_hash == "0xtx2"][0]
        assert first.status is RecordStatus.FAILED
        assert first.error_code == "TRANSACTION_REVERTED"

    def test_unknown_outcome_blocks_reproposal(
        self, cycle_runner, policy_id, chain, broadcaster, signer, progress_store, timed_out
    ):
        chain.status_error = TimeoutError("rpc")
        signed_before = len(signer.calls)

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.CHAIN_ERROR
        assert len(signer.calls) == signed_before
        assert len(broadcaster.sent) == 2
        assert progress_store.get(policy_id).completed_count == 0

    def test_confirmed_record_without_advance_is_recovered(
        self, cycle_runner, policy_id, recorder, broadcaster, progress_store, timed_out
    ):
        # A cycle that recorded the confirmation but died before advancing
        final = [r for r in recorder.list_for_policy(policy_id) if r.is_final][0]
        recorder.mark_confirmed(final.record_id)

        result = cycle_runner.run(policy_id)
        assert result.status is CycleStatus.RECONCILED
        assert len(broadcaster.sent) == 2
        assert progress_store.get(policy_id).completed_count == 1


class TestRateReference:
    def test_rate_changes_do_not_break_validation(self, cycle_runner, policy_id, chain):
        chain.default_rate = Decimal("1.7")
        assert cycle_runner.run(policy_id).status is CycleStatus.EXECUTED

    def test_quote_far_from_chain_rate_never_signed(
        self, cycle_runner, policy_id, chain_reader, clock, signer, broadcaster
    ):
        # A consistent, freshly digested batch whose quote and minimum output
        # were both forged to accept any fill
        class ForgedQuoteProposer(TransactionProposer):
            def propose(self, policy, progress):
                batch = super().propose(policy, progress).batch
                swap = batch.final_transaction
                args = tuple((k, 0 if k == "min_amount_out" else v) for k, v in swap.call.args)
                forged = replace(swap, call=CallData(swap.call.method, args))
                return BatchProposed(
                    batch=build_batch(
                        batch.policy_id, batch.order_index, batch.amount,
                        batch.transactions[:-1] + (forged,),
                        Decimal("0.000001"), batch.slippage_bps, batch.deadline,
                    )
                )

        runner = _rewire(
            cycle_runner,
            proposer=ForgedQuoteProposer(chain_reader, {"ethereum": "0xrouter"}, clock=clock),
        )
        result = runner.run(policy_id)
        assert result.status is CycleStatus.MISMATCH
        assert result.error_code == "PROPOSAL_MISMATCH"
        assert signer.calls == []
        assert broadcaster.sent == []

    def test_rate_query_failure_before_signing(self, cycle_runner, policy_id, chain, signer):
        real_rate = chain.rate
        calls = []

        def flaky_rate(*args):
            calls.append(args)
            if len(calls) > 1:
                raise TimeoutError("rpc")
            return real_rate(*args)

        chain.rate = flaky_rate
        result = cycle_runner.run(policy_id)
        assert len(calls) == 2
        assert result.status is CycleStatus.CHAIN_ERROR
        assert signer.calls == []


class TestDueCheck:
    def test_not_yet_due_skipped(self, cycle_runner, policy_store, swap_config, clock, signer):
        later = (clock.now() + timedelta(hours=1)).isoformat()
        record = policy_store.create("vault-1", swap_config(schedule={"unit": "day", "start_at": later}))

        result = cycle_runner.run(record.policy_id, require_due=True)
        assert result.status is CycleStatus.NOT_DUE
        assert signer.calls == []
        # Unconditional runs ignore the schedule
        assert cycle_runner.run(record.policy_id).status is CycleStatus.EXECUTED

    def test_outcome_applied_while_locked(self, cycle_runner, policy_id, lock_manager):
        seen = []

        def on_result(record, result):
            seen.append((record.policy_id, result.status, lock_manager.is_held(policy_id)))

        cycle_runner.run(policy_id, require_due=True, on_result=on_result)
        assert seen == [(policy_id, CycleStatus.EXECUTED, True)]
        assert not lock_manager.is_held(policy_id)

    def test_completed_policy_not_due(self, cycle_runner, policy_store, policy_id, signer):
        policy_store.mark_completed(policy_id)
        assert cycle_runner.run(policy_id, require_due=True).status is CycleStatus.NOT_DUE
        assert signer.calls == []
