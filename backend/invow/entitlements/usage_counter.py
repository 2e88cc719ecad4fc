"""
Usage counter: admission control and bounded counter adjustment.

These are the pure rules. The repository applies the same rules as
conditional UPDATE statements so that check and mutation are one step
against the store.
"""

from datetime import datetime

from invow.entitlements.catalog import UNLIMITED


def can_create(limit: int, current_count: int) -> bool:
    """True if one more resource fits in the quota."""
    return limit == UNLIMITED or current_count < limit


def record_creation(count: int) -> int:
    """Counter value after an admitted creation."""
    return count + 1


def record_deletion(
    count: int,
    resource_created_at: datetime,
    cycle_start: datetime,
    cycle_end: datetime,
) -> int:
    """
    Counter value after a resource is deleted.

    Only resources created inside [cycle_start, cycle_end) were counted in
    this period, so only those decrement. Never goes below zero.
    """
    if in_window(resource_created_at, cycle_start, cycle_end):
        return max(0, count - 1)
    return count


def in_window(moment: datetime, cycle_start: datetime, cycle_end: datetime) -> bool:
    """Half-open period membership."""
    return cycle_start <= moment < cycle_end


def remaining(limit: int, current_count: int) -> int:
    """Creations left this period; UNLIMITED when the tier has no limit."""
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - current_count)
