"""Progress snapshot -- read-only view of a policy's execution counter."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True)
class Progress:
    """Immutable snapshot of one policy's progress row.

    ``completed_count`` is the only fact that decides which order comes
    next: the next order index IS the completed count.
    """

    policy_id: UUID
    order_count: int
    completed_count: int = 0
    last_executed_at: datetime | None = None
    is_terminal: bool = False
    version: int = 0

    def __post_init__(self) -> None:
        if self.order_count < 1:
            raise ValueError(f"order_count must be >= 1, got {self.order_count}")
        if not 0 <= self.completed_count <= self.order_count:
            raise ValueError(
                f"completed_count {self.completed_count} outside 0..{self.order_count}"
            )

    @property
    def next_order_index(self) -> int:
        return self.completed_count

    @property
    def remaining_orders(self) -> int:
        return self.order_count - self.completed_count

    @property
    def is_complete(self) -> bool:
        return self.completed_count >= self.order_count
