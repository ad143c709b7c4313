"""
Amount distributor -- splits a fixed budget across N orders.

Algorithm:
    base, remainder = divmod(total_budget, order_count)
    order i receives base + 1 when i < remainder, otherwise base.

The earliest orders absorb the remainder one unit each, so the sum over
all indices is exactly ``total_budget`` for any positive inputs, including
a budget smaller than the order count (base 0, the first ``total_budget``
orders receive 1 unit each).

Pure: no hidden state, same inputs always give the same output.
"""

__all__ = [
    "amount_for_order",
    "distribute",
    "remaining_budget",
]


def _check_terms(total_budget: int, order_count: int) -> None:
    if isinstance(total_budget, bool) or not isinstance(total_budget, int) or total_budget <= 0:
        raise ValueError(f"total_budget must be a positive integer, got {total_budget!r}")
    if isinstance(order_count, bool) or not isinstance(order_count, int) or order_count <= 0:
        raise ValueError(f"order_count must be a positive integer, got {order_count!r}")


def amount_for_order(total_budget: int, order_count: int, completed_count: int) -> int:
    """
    Amount for the order at index ``completed_count`` (zero-based).

    Raises:
        ValueError: If the budget or order count is not a positive integer,
            or ``completed_count`` is outside ``0..order_count-1``.
    """
    _check_terms(total_budget, order_count)
    if not 0 <= completed_count < order_count:
        raise ValueError(
            f"completed_count {completed_count} outside 0..{order_count - 1}"
        )
    base, remainder = divmod(total_budget, order_count)
    return base + 1 if completed_count < remainder else base


def distribute(total_budget: int, order_count: int) -> tuple[int, ...]:
    """Full schedule of per-order amounts, in execution order."""
    _check_terms(total_budget, order_count)
    return tuple(
        amount_for_order(total_budget, order_count, i) for i in range(order_count)
    )


def remaining_budget(total_budget: int, order_count: int, completed_count: int) -> int:
    """Unspent budget from order ``completed_count`` onwards (inclusive)."""
    _check_terms(total_budget, order_count)
    if not 0 <= completed_count <= order_count:
        raise ValueError(
            f"completed_count {completed_count} outside 0..{order_count}"
        )
    base, remainder = divmod(total_budget, order_count)
    spent = base * completed_count + min(completed_count, remainder)
    return total_budget - spent
