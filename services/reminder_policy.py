"""
services/reminder_policy.py
---------------------------
Decides whether a subscription's advance reminder should go out now.
"""

from datetime import datetime

from models.subscription import Subscription
from services.billing_cycle import reminder_time


def should_remind(sub: Subscription, now: datetime, has_target: bool = True) -> bool:
    """
    Return True when the reminder window for the current cycle is open
    and no reminder has been sent for it yet.

    A reminder that fires late (because batches run on an interval) is
    still sent as soon as the window is observed open. At most one
    reminder fires per cycle: ``last_reminder_at`` is cleared when the
    cycle advances.

    Args:
        sub: The subscription to evaluate.
        now: The batch's reference time.
        has_target: False when no notification service is configured.
    """
    if not has_target or sub.notification_offset_days <= 0:
        return False

    opens_at = reminder_time(sub.next_run_at, sub.notification_offset_days)
    if now < opens_at:
        return False

    return sub.last_reminder_at is None or sub.last_reminder_at < opens_at
