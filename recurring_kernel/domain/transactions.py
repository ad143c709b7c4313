"""
Transaction descriptors, batches and digests.

Responsibility:
    Chain-neutral description of the unsigned transactions an order needs,
    plus the message digests handed to the signing service.  Chain-specific
    encoding is a collaborator concern: a descriptor carries a structured
    ``CallData`` (method + named arguments) instead of ABI bytes, and its
    digest is the SHA-256 of the descriptor's canonical JSON.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - A batch holds transactions and digests 1:1, in execution order.
    - An approval, when present, is first and is followed by the
      transaction that depends on it.
    - Nonces are consecutive starting from the first transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, localcontext
from enum import Enum
from typing import Any
from uuid import UUID

from recurring_kernel.utils.hashing import hash_payload

BPS_DENOMINATOR = 10_000


class TransactionKind(str, Enum):
    APPROVE = "approve"
    SWAP = "swap"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class CallData:
    """Structured contract call: method name and ordered named arguments."""

    method: str
    args: tuple[tuple[str, Any], ...] = ()

    def get(self, name: str, default: Any = None) -> Any:
        for key, value in self.args:
            if key == name:
                return value
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "args": [[key, list(value) if isinstance(value, tuple) else value]
                     for key, value in self.args],
        }


@dataclass(frozen=True)
class TransactionDescriptor:
    """One unsigned transaction.

    ``target`` is the contract (or recipient for a native transfer),
    ``value`` the native amount attached, ``nonce`` the sender's nonce slot.
    """

    kind: TransactionKind
    chain_id: str
    sender: str
    target: str
    nonce: int
    value: int = 0
    call: CallData | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "chain_id": self.chain_id,
            "sender": self.sender,
            "target": self.target,
            "nonce": self.nonce,
            "value": str(self.value),
            "call": self.call.to_dict() if self.call is not None else None,
        }

    def digest(self) -> str:
        """Message digest submitted to the signing service."""
        return hash_payload(self.to_payload())


@dataclass(frozen=True)
class TransactionBatch:
    """Ordered unsigned transactions for one order of one policy."""

    policy_id: UUID
    order_index: int
    amount: int
    transactions: tuple[TransactionDescriptor, ...]
    digests: tuple[str, ...]
    quoted_rate: Decimal | None = None
    slippage_bps: int = 0
    deadline: int | None = None

    def __post_init__(self) -> None:
        if not self.transactions:
            raise ValueError("TransactionBatch requires at least one transaction")
        if len(self.transactions) != len(self.digests):
            raise ValueError(
                f"TransactionBatch has {len(self.transactions)} transactions "
                f"but {len(self.digests)} digests"
            )

    @property
    def final_transaction(self) -> TransactionDescriptor:
        """The order's main transaction (swap or transfer)."""
        return self.transactions[-1]

    @property
    def approval(self) -> TransactionDescriptor | None:
        first = self.transactions[0]
        if len(self.transactions) > 1 and first.kind is TransactionKind.APPROVE:
            return first
        return None

    def __len__(self) -> int:
        return len(self.transactions)


@dataclass(frozen=True)
class SignedTransaction:
    """A descriptor with the signature produced for its digest."""

    descriptor: TransactionDescriptor
    digest: str
    signature: str


def build_batch(
    policy_id: UUID,
    order_index: int,
    amount: int,
    transactions: list[TransactionDescriptor] | tuple[TransactionDescriptor, ...],
    quoted_rate: Decimal | None = None,
    slippage_bps: int = 0,
    deadline: int | None = None,
) -> TransactionBatch:
    """Assemble a batch, computing digests in transaction order."""
    txs = tuple(transactions)
    return TransactionBatch(
        policy_id=policy_id,
        order_index=order_index,
        amount=amount,
        transactions=txs,
        digests=tuple(tx.digest() for tx in txs),
        quoted_rate=quoted_rate,
        slippage_bps=slippage_bps,
        deadline=deadline,
    )


def expected_amount_out(amount_in: int, rate: Decimal) -> Decimal:
    return Decimal(amount_in) * rate


def min_amount_out(amount_in: int, rate: Decimal, slippage_bps: int) -> int:
    """
    Minimum acceptable output for ``amount_in`` at ``rate`` with tolerance.

    floor(amount_in * rate * (10000 - slippage_bps) / 10000)
    """
    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {slippage_bps}")
    # uint256 amounts exceed the default 28-digit context
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = (
            expected_amount_out(amount_in, rate)
            * (BPS_DENOMINATOR - slippage_bps)
            / BPS_DENOMINATOR
        )
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))
