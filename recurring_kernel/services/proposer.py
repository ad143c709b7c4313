"""
TransactionProposer -- builds the unsigned batch for a policy's next order.

Responsibility:
    Given a validated policy and its progress, derives the next order's
    amount, checks the market rate against the policy's price bounds,
    decides on an approval, and assembles the ordered transaction batch
    with its signing digests.

Architecture position:
    Kernel > Services -- reads chain state through ChainReader; writes
    nothing.  Progress is never touched here.

Proposal steps:
    1. completed_count >= order_count  -> PolicyComplete.
    2. amount = amount_for_order(total, order_count, completed_count).
    3. swap: quote the rate; outside price bounds -> RangeSkipped.
    4. swap from a token: query allowance, prepend an approval if short.
    5. main transaction: swap with a slippage floor and deadline, or a
       native / token transfer to the recipient.
    6. nonces from the vault's confirmed-state nonce, consecutive.

Failure modes:
    - ChainQueryError: rate, allowance or nonce unavailable.  Nothing is
      proposed; the next tick retries the same order.
    - OutOfRangeError: no router configured for the policy's chain.
"""

from collections.abc import Mapping
from decimal import Decimal

from recurring_kernel.domain.allowance import ApprovalMode, ApprovalStep, plan_approval
from recurring_kernel.domain.clock import Clock, SystemClock
from recurring_kernel.domain.distributor import amount_for_order, remaining_budget
from recurring_kernel.domain.outcomes import (
    BatchProposed,
    PolicyComplete,
    ProposalOutcome,
    RangeSkipped,
)
from recurring_kernel.domain.policy import SendPolicy, SwapPolicy, ValidatedPolicy
from recurring_kernel.domain.progress import Progress
from recurring_kernel.domain.transactions import (
    CallData,
    TransactionDescriptor,
    TransactionKind,
    build_batch,
    min_amount_out,
)
from recurring_kernel.exceptions import OutOfRangeError
from recurring_kernel.logging_config import get_logger
from recurring_kernel.services.chain_reader import ChainReader

logger = get_logger("services.proposer")

DEFAULT_SLIPPAGE_BPS = 100
DEFAULT_DEADLINE_SECONDS = 1200


# =============================================================================
# Transaction builders (shared with ProposalValidator)
# =============================================================================


def approval_transaction(
    policy: ValidatedPolicy,
    step: ApprovalStep,
    nonce: int,
) -> TransactionDescriptor:
    terms = policy.terms
    return TransactionDescriptor(
        kind=TransactionKind.APPROVE,
        chain_id=terms.chain_id,
        sender=terms.vault_address,
        target=step.token,
        nonce=nonce,
        value=0,
        call=CallData("approve", (("spender", step.spender), ("amount", step.amount))),
    )


def swap_transaction(
    policy: ValidatedPolicy,
    amount: int,
    nonce: int,
    router: str,
    min_out: int,
    deadline: int,
) -> TransactionDescriptor:
    payload = policy.payload
    assert isinstance(payload, SwapPolicy)
    terms = payload.terms
    return TransactionDescriptor(
        kind=TransactionKind.SWAP,
        chain_id=terms.chain_id,
        sender=terms.vault_address,
        target=router,
        nonce=nonce,
        value=amount if terms.source_is_native else 0,
        call=CallData(
            "swap",
            (
                ("source_asset", terms.source_asset),
                ("destination_asset", payload.destination_asset),
                ("amount_in", amount),
                ("min_amount_out", min_out),
                ("recipient", terms.vault_address),
                ("deadline", deadline),
            ),
        ),
    )


def transfer_transaction(
    policy: ValidatedPolicy,
    amount: int,
    nonce: int,
) -> TransactionDescriptor:
    payload = policy.payload
    assert isinstance(payload, SendPolicy)
    terms = payload.terms
    if terms.source_is_native:
        return TransactionDescriptor(
            kind=TransactionKind.TRANSFER,
            chain_id=terms.chain_id,
            sender=terms.vault_address,
            target=payload.recipient,
            nonce=nonce,
            value=amount,
        )
    return TransactionDescriptor(
        kind=TransactionKind.TRANSFER,
        chain_id=terms.chain_id,
        sender=terms.vault_address,
        target=terms.source_asset,
        nonce=nonce,
        value=0,
        call=CallData("transfer", (("recipient", payload.recipient), ("amount", amount))),
    )


# =============================================================================
# Proposer
# =============================================================================


class TransactionProposer:
    """
    Proposes the next order of a policy.

    Contract:
        ``propose(policy, progress)`` is read-only with respect to engine
        state.  Calling it twice with the same inputs and the same chain
        answers yields the same batch.
    """

    def __init__(
        self,
        chain: ChainReader,
        routers: Mapping[str, str],
        clock: Clock | None = None,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
        approval_mode: ApprovalMode = ApprovalMode.EXACT,
    ):
        self._chain = chain
        self._routers = dict(routers)
        self._clock = clock or SystemClock()
        self.slippage_bps = slippage_bps
        self.deadline_seconds = deadline_seconds
        self.approval_mode = approval_mode

    def router_for(self, policy: ValidatedPolicy) -> str:
        chain_id = policy.terms.chain_id
        router = self._routers.get(chain_id)
        if not router:
            raise OutOfRangeError(
                "chain_id", f"no swap router configured for chain {chain_id!r}",
                str(policy.policy_id),
            )
        return router

    def propose(self, policy: ValidatedPolicy, progress: Progress) -> ProposalOutcome:
        terms = policy.terms
        order_count = terms.order_count

        if progress.is_terminal or progress.completed_count >= order_count:
            logger.info(
                "policy_complete",
                extra={"policy_id": str(policy.policy_id), "order_count": order_count},
            )
            return PolicyComplete(policy_id=policy.policy_id, order_count=order_count)

        order_index = progress.completed_count
        amount = amount_for_order(terms.total_amount, order_count, order_index)

        if isinstance(policy.payload, SwapPolicy):
            return self._propose_swap(policy, policy.payload, order_index, amount)
        return self._propose_send(policy, order_index, amount)

    def _propose_swap(
        self,
        policy: ValidatedPolicy,
        payload: SwapPolicy,
        order_index: int,
        amount: int,
    ) -> ProposalOutcome:
        terms = payload.terms
        router = self.router_for(policy)
        rate = self._chain.rate(terms.chain_id, terms.source_asset, payload.destination_asset)

        bounds = payload.price_bounds
        if bounds is not None and not bounds.contains(rate):
            logger.info(
                "order_range_skipped",
                extra={
                    "policy_id": str(policy.policy_id),
                    "order_index": order_index,
                    "rate": rate,
                    "min_price": bounds.min_price,
                    "max_price": bounds.max_price,
                },
            )
            return RangeSkipped(
                policy_id=policy.policy_id,
                order_index=order_index,
                rate=rate,
                min_price=bounds.min_price,
                max_price=bounds.max_price,
            )

        nonce = self._chain.nonce(terms.chain_id, terms.vault_address)
        transactions: list[TransactionDescriptor] = []

        if not terms.source_is_native:
            allowance = self._chain.allowance(
                terms.chain_id, terms.vault_address, router, terms.source_asset
            )
            step = plan_approval(
                allowance,
                amount,
                spender=router,
                token=terms.source_asset,
                mode=self.approval_mode,
                remaining_budget=remaining_budget(
                    terms.total_amount, terms.order_count, order_index
                ),
            )
            if step is not None:
                transactions.append(approval_transaction(policy, step, nonce))
                nonce += 1

        deadline = self._clock.timestamp() + self.deadline_seconds
        min_out = min_amount_out(amount, rate, self.slippage_bps)
        transactions.append(swap_transaction(policy, amount, nonce, router, min_out, deadline))

        return self._proposed(policy, order_index, amount, transactions, rate, deadline)

    def _propose_send(
        self,
        policy: ValidatedPolicy,
        order_index: int,
        amount: int,
    ) -> ProposalOutcome:
        terms = policy.terms
        nonce = self._chain.nonce(terms.chain_id, terms.vault_address)
        transactions = [transfer_transaction(policy, amount, nonce)]
        return self._proposed(policy, order_index, amount, transactions, None, None)

    def _proposed(
        self,
        policy: ValidatedPolicy,
        order_index: int,
        amount: int,
        transactions: list[TransactionDescriptor],
        rate: Decimal | None,
        deadline: int | None,
    ) -> BatchProposed:
        batch = build_batch(
            policy_id=policy.policy_id,
            order_index=order_index,
            amount=amount,
            transactions=transactions,
            quoted_rate=rate,
            slippage_bps=self.slippage_bps if rate is not None else 0,
            deadline=deadline,
        )
        logger.info(
            "batch_proposed",
            extra={
                "policy_id": str(policy.policy_id),
                "order_index": order_index,
                "amount": amount,
                "transaction_count": len(batch),
                "with_approval": batch.approval is not None,
                "first_nonce": batch.transactions[0].nonce,
            },
        )
        return BatchProposed(batch=batch)
