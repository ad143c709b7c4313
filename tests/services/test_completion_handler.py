"""
Tests for recurring_kernel.services.completion_handler.CompletionHandler.

Progress must advance exactly once, after the final transaction confirms,
and never on a failure path.
"""

import pytest

from recurring_kernel.domain.ports import ConfirmationStatus
from recurring_kernel.domain.policy import validate_policy
from recurring_kernel.exceptions import (
    BroadcastError,
    ConfirmationTimeoutError,
    SigningError,
    TransactionRevertedError,
)
from recurring_kernel.models.transaction_record import RecordStatus


@pytest.fixture
def case(policy_store, progress_store, proposer, swap_config):
    record = policy_store.create("vault-1", swap_config())
    policy = validate_policy(record.envelope)
    progress = progress_store.get(policy.policy_id)
    batch = proposer.propose(policy, progress).batch
    signatures = [f"sig:{d}" for d in batch.digests]
    return policy, progress, batch, signatures


class TestHappyPath:
    def test_broadcasts_in_order_and_advances_once(
        self, completion, case, broadcaster, progress_store, recorder
    ):
        policy, progress, batch, signatures = case
        result = completion.complete(policy, progress, batch, signatures)

        assert result.tx_hashes == ("0xtx1", "0xtx2")
        assert [s.descriptor for s in broadcaster.sent] == list(batch.transactions)
        assert [s.signature for s in broadcaster.sent] == signatures
        assert result.progress.completed_count == 1
        assert progress_store.get(policy.policy_id).completed_count == 1

        records = recorder.list_for_policy(policy.policy_id)
        assert [r.status for r in records] == [RecordStatus.CONFIRMED, RecordStatus.CONFIRMED]
        assert [r.tx_hash for r in records] == ["0xtx1", "0xtx2"]

    def test_waits_for_pending_confirmation(self, completion, case, chain, clock):
        policy, progress, batch, signatures = case
        chain.statuses["0xtx2"] = [ConfirmationStatus.PENDING, ConfirmationStatus.PENDING, ConfirmationStatus.CONFIRMED]
        result = completion.complete(policy, progress, batch, signatures)
        assert result.progress.completed_count == 1
        assert clock.sleeps == [10, 10]

    def test_unanswered_status_query_keeps_polling(self, completion, case, chain, progress_store):
        policy, progress, batch, signatures = case
        chain.status_error = TimeoutError("rpc")
        with pytest.raises(ConfirmationTimeoutError):
            completion.complete(policy, progress, batch, signatures)
        assert len(chain.status_queries) > 1
        assert progress_store.get(policy.policy_id).completed_count == 0


class TestFailures:
    def test_signature_count_mismatch(self, completion, case, broadcaster):
        policy, progress, batch, signatures = case
        with pytest.raises(SigningError):
            completion.complete(policy, progress, batch, signatures[:-1])
        assert broadcaster.sent == []

    def test_broadcast_refused(self, completion, case, broadcaster, progress_store, recorder):
        policy, progress, batch, signatures = case
        broadcaster.error = ConnectionError("mempool full")
        with pytest.raises(BroadcastError) as exc_info:
            completion.complete(policy, progress, batch, signatures)
        assert exc_info.value.position == 0
        assert progress_store.get(policy.policy_id).completed_count == 0
        [record] = recorder.list_for_policy(policy.policy_id)
        assert record.status is RecordStatus.FAILED
        assert record.error_code == "BROADCAST_FAILED"

    def test_approval_revert_stops_before_swap(self, completion, case, chain, broadcaster, progress_store):
        policy, progress, batch, signatures = case
        chain.statuses["0xtx1"] = ConfirmationStatus.FAILED
        with pytest.raises(TransactionRevertedError) as exc_info:
            completion.complete(policy, progress, batch, signatures)
        assert exc_info.value.tx_hash == "0xtx1"
        assert len(broadcaster.sent) == 1
        assert progress_store.get(policy.policy_id).completed_count == 0

    def test_final_timeout_leaves_progress(self, completion, case, chain, clock, progress_store, recorder):
        policy, progress, batch, signatures = case
        chain.statuses["0xtx2"] = ConfirmationStatus.PENDING
        start = clock.now()
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            completion.complete(policy, progress, batch, signatures)

        assert exc_info.value.retryable
        assert (clock.now() - start).total_seconds() == 60
        assert progress_store.get(policy.policy_id).completed_count == 0
        final = recorder.list_for_policy(policy.policy_id)[-1]
        assert final.status is RecordStatus.FAILED
        assert final.error_code == "CONFIRMATION_TIMEOUT"
        assert final.tx_hash == "0xtx2"

    def test_empty_hash_is_broadcast_failure(self, completion, case, monkeypatch, broadcaster):
        policy, progress, batch, signatures = case
        monkeypatch.setattr(broadcaster, "send", lambda signed: "")
        with pytest.raises(BroadcastError):
            completion.complete(policy, progress, batch, signatures)
