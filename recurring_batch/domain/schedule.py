"""
Pure schedule evaluation functions.

Contract:
    ``should_fire(record, as_of)`` and ``compute_next_run()`` are PURE --
    no I/O, no side effects, all timestamps from the caller.

Slots:
    A policy's run times form the series ``anchor + k * interval units``
    (k = 0, 1, 2, ...).  The anchor is the first run (``schedule.start_at``
    or the creation time).  Computing from the anchor rather than from the
    previous run keeps the series free of drift: late ticks and month-end
    clamping never shift later slots.

Month arithmetic is calendar-aware: a slot on the 31st falls on the last
day of shorter months and returns to the 31st afterwards.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from recurring_kernel.domain.policy import PolicyRecord, Schedule, ScheduleUnit

_UNIT_DELTAS = {
    ScheduleUnit.MINUTE: timedelta(minutes=1),
    ScheduleUnit.HOUR: timedelta(hours=1),
    ScheduleUnit.DAY: timedelta(days=1),
    ScheduleUnit.WEEK: timedelta(weeks=1),
}


def add_months(value: datetime, months: int) -> datetime:
    """``value`` shifted by whole calendar months, day clamped to month end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _slot(schedule: Schedule, anchor: datetime, k: int) -> datetime:
    if schedule.unit is ScheduleUnit.MONTH:
        return add_months(anchor, k * schedule.interval)
    return anchor + _UNIT_DELTAS[schedule.unit] * (k * schedule.interval)


def compute_next_run(
    schedule: Schedule,
    after: datetime,
    anchor: datetime | None = None,
) -> datetime:
    """First slot strictly after ``after``.

    Args:
        schedule: The policy's validated schedule.
        after: Reference time, usually the time of the run just finished.
        anchor: First slot of the series; defaults to ``schedule.start_at``,
            then to ``after`` itself.
    """
    anchor = anchor or schedule.start_at or after
    if anchor > after:
        return anchor

    if schedule.unit is ScheduleUnit.MONTH:
        elapsed_months = (after.year - anchor.year) * 12 + (after.month - anchor.month)
        k = max(elapsed_months // schedule.interval, 0)
    else:
        step = _UNIT_DELTAS[schedule.unit] * schedule.interval
        k = (after - anchor) // step

    # At most one or two steps from the estimate
    candidate = _slot(schedule, anchor, k)
    while candidate <= after:
        k += 1
        candidate = _slot(schedule, anchor, k)
    return candidate


def should_fire(record: PolicyRecord, as_of: datetime) -> bool:
    """Determine if a policy is due at ``as_of``.

    Rules:
        - Only ACTIVE policies fire; INVALID waits for an owner edit and
          COMPLETED never fires again.
        - A policy without ``next_run_at`` never fires.
        - Otherwise it fires once ``as_of >= next_run_at``.
    """
    return record.is_due(as_of)
