"""
Allowance / approval manager.

Responsibility:
    Decides whether an approval transaction must precede the main
    transaction, and queries the current allowance without ever guessing.

Rules:
    - No approval when ``current_allowance >= required_amount``.
    - Otherwise approve at least ``required_amount``: exactly that amount
      (ApprovalMode.EXACT) or the policy's remaining budget
      (ApprovalMode.REMAINING_BUDGET, fewer approvals over the policy's
      life, never more than the policy can spend).
    - A failed allowance query raises ChainQueryError; it is never treated
      as "allowance sufficient".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from recurring_kernel.domain.ports import ChainState
from recurring_kernel.exceptions import ChainQueryError
from recurring_kernel.logging_config import get_logger

logger = get_logger("domain.allowance")


class ApprovalMode(str, Enum):
    EXACT = "exact"
    REMAINING_BUDGET = "remaining_budget"


@dataclass(frozen=True)
class ApprovalStep:
    """Authorize ``spender`` to move ``amount`` of ``token`` from the vault."""

    token: str
    spender: str
    amount: int
    current_allowance: int


def plan_approval(
    current_allowance: int,
    required_amount: int,
    spender: str,
    token: str,
    mode: ApprovalMode = ApprovalMode.EXACT,
    remaining_budget: int | None = None,
) -> ApprovalStep | None:
    """
    Return the approval step needed for ``required_amount``, or None.

    Args:
        current_allowance: Allowance confirmed by the chain.
        required_amount: Amount the main transaction will pull.
        spender: Contract that will pull the tokens.
        token: Token being approved.
        mode: How much to approve when an approval is needed.
        remaining_budget: Unspent budget including this order; used by
            REMAINING_BUDGET mode and ignored when smaller than required.
    """
    if current_allowance < 0 or required_amount < 0:
        raise ValueError("allowance and required amount must be non-negative")
    if current_allowance >= required_amount:
        return None

    amount = required_amount
    if mode is ApprovalMode.REMAINING_BUDGET and remaining_budget is not None:
        amount = max(required_amount, remaining_budget)

    return ApprovalStep(
        token=token,
        spender=spender,
        amount=amount,
        current_allowance=current_allowance,
    )


def query_allowance(
    chain: ChainState,
    chain_id: str,
    owner: str,
    spender: str,
    token: str,
) -> int:
    """
    Current allowance of ``spender`` over ``owner``'s ``token``.

    Raises:
        ChainQueryError: On any collaborator failure or non-integer answer.
    """
    try:
        value = chain.allowance(chain_id, owner, spender, token)
    except Exception as exc:
        logger.warning(
            "allowance_query_failed",
            extra={"chain_id": chain_id, "token": token, "spender": spender},
        )
        raise ChainQueryError("allowance", chain_id, str(exc) or type(exc).__name__) from exc

    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ChainQueryError("allowance", chain_id, f"unusable allowance answer {value!r}")
    return value
