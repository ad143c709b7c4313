"""
ChainReader -- the engine's only path to chain state.

Every query goes through here so that a transport failure or an unusable
answer always surfaces as ChainQueryError.  No method ever substitutes a
default for an answer it did not get.
"""

from decimal import Decimal, InvalidOperation

from recurring_kernel.domain.allowance import query_allowance
from recurring_kernel.domain.ports import ChainState, ConfirmationStatus
from recurring_kernel.exceptions import ChainQueryError
from recurring_kernel.logging_config import get_logger

logger = get_logger("services.chain_reader")


class ChainReader:
    def __init__(self, chain: ChainState):
        self._chain = chain

    def allowance(self, chain_id: str, owner: str, spender: str, token: str) -> int:
        return query_allowance(self._chain, chain_id, owner, spender, token)

    def rate(self, chain_id: str, source_asset: str, destination_asset: str) -> Decimal:
        try:
            raw = self._chain.rate(chain_id, source_asset, destination_asset)
        except Exception as exc:
            raise self._failed("rate", chain_id, exc) from exc
        try:
            rate = raw if isinstance(raw, Decimal) else Decimal(str(raw))
        except InvalidOperation:
            raise ChainQueryError("rate", chain_id, f"unusable rate {raw!r}") from None
        if isinstance(raw, bool) or not rate.is_finite() or rate <= 0:
            raise ChainQueryError("rate", chain_id, f"unusable rate {raw!r}")
        return rate

    def nonce(self, chain_id: str, address: str) -> int:
        try:
            value = self._chain.nonce(chain_id, address)
        except Exception as exc:
            raise self._failed("nonce", chain_id, exc) from exc
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ChainQueryError("nonce", chain_id, f"unusable nonce {value!r}")
        return value

    def confirmation_status(self, chain_id: str, tx_hash: str) -> ConfirmationStatus:
        try:
            raw = self._chain.confirmation_status(chain_id, tx_hash)
        except Exception as exc:
            raise self._failed("confirmation_status", chain_id, exc) from exc
        try:
            return ConfirmationStatus(raw)
        except ValueError:
            raise ChainQueryError(
                "confirmation_status", chain_id, f"unknown status {raw!r}"
            ) from None

    @staticmethod
    def _failed(operation: str, chain_id: str, exc: Exception) -> ChainQueryError:
        logger.warning(
            "chain_query_failed",
            extra={
                "operation": operation,
                "chain_id": chain_id,
                "error_type": type(exc).__name__,
            },
        )
        return ChainQueryError(operation, chain_id, str(exc) or type(exc).__name__)
