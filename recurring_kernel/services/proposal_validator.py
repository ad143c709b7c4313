"""
ProposalValidator -- independent check of a proposed batch before signing.

Responsibility:
    Re-derives what the next order of a policy must look like from the
    policy and its progress alone, and compares it field by field with the
    batch handed in.  Any difference is a MismatchError and the batch is
    never signed.

Architecture position:
    Kernel > Services -- pure comparison, no chain queries, no writes.
    Runs between the proposer and the signing round.

What is re-derived:
    - order index (== completed_count) and amount (distributor)
    - chain, sender, targets, assets and recipient of every transaction
    - approval shape: only before a swap from a token, first in the batch,
      for the router, covering the order amount and within the remaining
      budget
    - consecutive nonces and every digest
    - swap: slippage setting, min-output recomputed from the batch's quoted
      rate (within 1 unit), deadline inside the configured window, quoted
      rate inside the price bounds and, when a reference rate is supplied,
      within the slippage band of it

What it cannot check:
    The current allowance and nonce on chain; those are chain facts the
    proposer queried.  The validator only checks their internal
    consistency.
"""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from recurring_kernel.domain.allowance import ApprovalStep
from recurring_kernel.domain.distributor import amount_for_order, remaining_budget
from recurring_kernel.domain.policy import SendPolicy, SwapPolicy, ValidatedPolicy
from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import (
    BPS_DENOMINATOR,
    TransactionBatch,
    TransactionDescriptor,
    TransactionKind,
    min_amount_out,
)
from recurring_kernel.exceptions import MismatchError
from recurring_kernel.logging_config import get_logger
from recurring_kernel.services.proposer import (
    DEFAULT_DEADLINE_SECONDS,
    DEFAULT_SLIPPAGE_BPS,
    approval_transaction,
    swap_transaction,
    transfer_transaction,
)

logger = get_logger("services.proposal_validator")

MIN_OUTPUT_TOLERANCE = 1


class ProposalValidator:
    """
    Rejects batches that differ from what policy + progress dictate.

    Usage:
        validator.validate(policy, progress, batch, now=clock.now())
        # raises MismatchError on the first differing field
    """

    def __init__(
        self,
        routers: Mapping[str, str],
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
    ):
        self._routers = dict(routers)
        self.slippage_bps = slippage_bps
        self.deadline_seconds = deadline_seconds

    def validate(
        self,
        policy: ValidatedPolicy,
        progress: Progress,
        batch: TransactionBatch,
        reference_rate: Decimal | None = None,
        now: datetime | None = None,
    ) -> None:
        """
        Raises:
            MismatchError: The batch differs from the re-derived one.
        """
        check = _Checker(policy, batch)
        terms = policy.terms

        check.equal("policy_id", policy.policy_id, batch.policy_id)
        if progress.is_terminal or progress.completed_count >= terms.order_count:
            check.fail("order_index", None, batch.order_index)
        check.equal("order_index", progress.completed_count, batch.order_index)

        amount = amount_for_order(terms.total_amount, terms.order_count, batch.order_index)
        check.equal("amount", amount, batch.amount)
        check.equal("digest_count", len(batch.transactions), len(batch.digests))

        first_nonce = batch.transactions[0].nonce
        for position, (tx, digest) in enumerate(zip(batch.transactions, batch.digests)):
            check.equal(f"transactions[{position}].nonce", first_nonce + position, tx.nonce)
            check.equal(f"transactions[{position}].chain_id", terms.chain_id, tx.chain_id)
            check.equal(f"transactions[{position}].sender", terms.vault_address, tx.sender)
            check.equal(f"digests[{position}]", tx.digest(), digest)

        if isinstance(policy.payload, SwapPolicy):
            self._validate_swap(check, policy, policy.payload, batch, reference_rate, now)
        else:
            self._validate_send(check, policy, policy.payload, batch)

        logger.debug(
            "proposal_validated",
            extra={"policy_id": str(policy.policy_id), "order_index": batch.order_index},
        )

    def _validate_send(
        self,
        check: "_Checker",
        policy: ValidatedPolicy,
        payload: SendPolicy,
        batch: TransactionBatch,
    ) -> None:
        check.equal("transaction_count", 1, len(batch.transactions))
        expected = transfer_transaction(policy, batch.amount, batch.transactions[0].nonce)
        check.descriptor(0, expected, batch.transactions[0])
        check.equal("quoted_rate", None, batch.quoted_rate)

    def _validate_swap(
        self,
        check: "_Checker",
        policy: ValidatedPolicy,
        payload: SwapPolicy,
        batch: TransactionBatch,
        reference_rate: Decimal | None,
        now: datetime | None,
    ) -> None:
        terms = payload.terms
        router = self._routers.get(terms.chain_id)
        if router is None:
            check.fail("router", "<configured router>", None)

        if terms.source_is_native:
            check.equal("transaction_count", 1, len(batch.transactions))
        elif len(batch.transactions) not in (1, 2):
            check.fail("transaction_count", "1 or 2", len(batch.transactions))

        if len(batch.transactions) == 2:
            approval = batch.transactions[0]
            check.equal("transactions[0].kind", TransactionKind.APPROVE, approval.kind)
            approved = approval.call.get("amount") if approval.call is not None else None
            if not isinstance(approved, int) or approved < batch.amount:
                check.fail("approval.amount", f">= {batch.amount}", approved)
            budget = remaining_budget(terms.total_amount, terms.order_count, batch.order_index)
            if approved > max(budget, batch.amount):
                check.fail("approval.amount", f"<= {budget}", approved)
            step = ApprovalStep(
                token=terms.source_asset,
                spender=router,
                amount=approved,
                current_allowance=0,
            )
            check.descriptor(0, approval_transaction(policy, step, approval.nonce), approval)

        check.equal("slippage_bps", self.slippage_bps, batch.slippage_bps)
        rate = batch.quoted_rate
        if rate is None or rate <= 0:
            check.fail("quoted_rate", "positive rate", rate)
        bounds = payload.price_bounds
        if bounds is not None and not bounds.contains(rate):
            check.fail("quoted_rate", f"[{bounds.min_price}, {bounds.max_price}]", rate)
        if reference_rate is not None:
            band = reference_rate * Decimal(self.slippage_bps) / BPS_DENOMINATOR
            if abs(rate - reference_rate) > band:
                check.fail("quoted_rate", f"{reference_rate} +/- {band}", rate)

        deadline = batch.deadline
        if deadline is None:
            check.fail("deadline", "unix timestamp", None)
        if now is not None:
            now_ts = int(now.timestamp())
            if not now_ts < deadline <= now_ts + self.deadline_seconds:
                check.fail(
                    "deadline", f"({now_ts}, {now_ts + self.deadline_seconds}]", deadline
                )

        swap = batch.final_transaction
        actual_min = swap.call.get("min_amount_out") if swap.call is not None else None
        expected_min = min_amount_out(batch.amount, rate, self.slippage_bps)
        if not isinstance(actual_min, int) or abs(actual_min - expected_min) > MIN_OUTPUT_TOLERANCE:
            check.fail("min_amount_out", expected_min, actual_min)

        # min_amount_out already checked with tolerance; compare the rest exactly
        expected = swap_transaction(
            policy, batch.amount, swap.nonce, router, actual_min, deadline
        )
        check.descriptor(len(batch.transactions) - 1, expected, swap)


class _Checker:
    """Raises MismatchError tagged with the batch's policy and order."""

    def __init__(self, policy: ValidatedPolicy, batch: TransactionBatch):
        self._policy_id = str(policy.policy_id)
        self._order_index = batch.order_index

    def fail(self, field: str, expected: Any, actual: Any) -> None:
        logger.error(
            "proposal_mismatch",
            extra={
                "policy_id": self._policy_id,
                "order_index": self._order_index,
                "field": field,
                "expected": repr(expected),
                "actual": repr(actual),
            },
        )
        raise MismatchError(self._policy_id, self._order_index, field, expected, actual)

    def equal(self, field: str, expected: Any, actual: Any) -> None:
        if expected != actual:
            self.fail(field, expected, actual)

    def descriptor(
        self,
        position: int,
        expected: TransactionDescriptor,
        actual: TransactionDescriptor,
    ) -> None:
        prefix = f"transactions[{position}]"
        self.equal(f"{prefix}.kind", expected.kind, actual.kind)
        self.equal(f"{prefix}.target", expected.target, actual.target)
        self.equal(f"{prefix}.value", expected.value, actual.value)
        if expected.call is None or actual.call is None:
            self.equal(f"{prefix}.call", expected.call, actual.call)
            return
        self.equal(f"{prefix}.call.method", expected.call.method, actual.call.method)
        expected_args = dict(expected.call.args)
        actual_args = dict(actual.call.args)
        for name in sorted(set(expected_args) | set(actual_args)):
            self.equal(f"{prefix}.call.{name}", expected_args.get(name), actual_args.get(name))
