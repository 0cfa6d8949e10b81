"""
services/billing_cycle.py
-------------------------
Calendar arithmetic for billing cadences.
"""

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from models.subscription import Cadence

# relativedelta clamps to the last valid day of the target month:
# Jan 31 + 1 month -> Feb 28/29, Feb 29 + 1 year -> Feb 28.
_STEPS = {
    Cadence.DAILY: relativedelta(days=1),
    Cadence.WEEKLY: relativedelta(days=7),
    Cadence.MONTHLY: relativedelta(months=1),
    Cadence.YEARLY: relativedelta(years=1),
}


def advance(current: datetime, cadence: Cadence) -> datetime:
    """
    Compute the next due timestamp exactly one cadence step after ``current``.

    Always call with the subscription's pre-advance ``next_run_at``, never
    with "now": an overdue subscription moves forward one step per batch.

    Args:
        current: The due timestamp being settled.
        cadence: Recurrence unit.

    Returns:
        The following due timestamp (time of day and tzinfo preserved).
    """
    return current + _STEPS[Cadence(cadence)]


def reminder_time(next_run_at: datetime, offset_days: int) -> datetime:
    """Moment the reminder window opens for the cycle ending at ``next_run_at``."""
    return next_run_at - timedelta(days=offset_days)
