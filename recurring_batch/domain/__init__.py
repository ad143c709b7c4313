"""
recurring_batch.domain -- Pure schedule evaluation.

ZERO I/O.
"""

from recurring_batch.domain.schedule import add_months, compute_next_run, should_fire

__all__ = [
    "add_months",
    "compute_next_run",
    "should_fire",
]
