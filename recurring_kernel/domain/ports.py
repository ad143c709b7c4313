"""
Ports -- capabilities the engine consumes from collaborators.

The chain client, the threshold-signing service and the broadcaster are
external systems; the engine sees them only through these protocols.
Policy and progress stores are ports as well; SQLAlchemy implementations
live in ``recurring_kernel.services``.

Chain client contract notes:
    - Every method may raise any exception on transport failure; the
      engine wraps such failures in ChainQueryError and never guesses.
    - ``nonce`` MUST return the sender's nonce as of the latest confirmed
      state (not the pending pool).  Re-proposals after a confirmation
      timeout then reuse the nonce slot of the unconfirmed attempt, so the
      chain accepts at most one of them.
    - ``rate`` returns destination smallest units per source smallest unit.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable
from uuid import UUID

if TYPE_CHECKING:
    from recurring_kernel.domain.policy import PolicyEnvelope, PolicyRecord
    from recurring_kernel.domain.progress import Progress
    from recurring_kernel.domain.transactions import SignedTransaction


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@runtime_checkable
class ChainState(Protocol):
    def allowance(self, chain_id: str, owner: str, spender: str, token: str) -> int: ...

    def rate(self, chain_id: str, source_asset: str, destination_asset: str) -> Decimal: ...

    def nonce(self, chain_id: str, address: str) -> int: ...

    def confirmation_status(self, chain_id: str, tx_hash: str) -> ConfirmationStatus | str: ...


@runtime_checkable
class SigningService(Protocol):
    def sign(self, digests: Sequence[str]) -> Sequence[str]:
        """Signatures correlated 1:1 by position with ``digests``."""
        ...


@runtime_checkable
class Broadcaster(Protocol):
    def send(self, signed_tx: SignedTransaction) -> str:
        """Submit a signed transaction; returns its hash."""
        ...


@runtime_checkable
class PolicyStore(Protocol):
    def get(self, policy_id: UUID) -> PolicyEnvelope: ...

    def get_record(self, policy_id: UUID) -> PolicyRecord: ...

    def list_due(self, now: datetime) -> list[PolicyEnvelope]: ...


@runtime_checkable
class ProgressStore(Protocol):
    def get(self, policy_id: UUID) -> Progress: ...

    def advance(
        self,
        policy_id: UUID,
        expected_count: int | None = None,
        executed_at: datetime | None = None,
    ) -> Progress: ...
