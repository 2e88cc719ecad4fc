"""
Billing cycle arithmetic.

Rollover is detected lazily on access: there is no background job that
resets counters. Every function here is pure.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Tuple

from invow.entitlements.catalog import Tier, cycle_length_days


@dataclass(frozen=True)
class CycleEvaluation:
    """Outcome of a rollover check."""

    rolled_over: bool
    new_start: datetime
    new_end: datetime


def evaluate(cycle_start: datetime, period_length_days: int, now: datetime) -> CycleEvaluation:
    """
    Decide whether the accounting period starting at cycle_start has ended.

    The boundary is inclusive: at now == cycle_start + period the period has
    rolled over and the new period starts at now. When it rolls over the
    caller must reset the usage counter to zero.

    Args:
        cycle_start: Start of the currently recorded period
        period_length_days: Period length in days
        now: Current time

    Returns:
        CycleEvaluation with the (possibly unchanged) period boundaries
    """
    period = timedelta(days=period_length_days)
    end = cycle_start + period
    if now >= end:
        return CycleEvaluation(rolled_over=True, new_start=now, new_end=now + period)
    return CycleEvaluation(rolled_over=False, new_start=cycle_start, new_end=end)


def initial_cycle(tier: Tier, now: datetime) -> Tuple[datetime, datetime]:
    """Period boundaries for a freshly created or replaced subscription."""
    return now, now + timedelta(days=cycle_length_days(tier))
