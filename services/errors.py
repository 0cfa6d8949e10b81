"""
services/errors.py
------------------
Failures the billing engine reports per subscription.
"""

from typing import Optional


class SubscriptionProcessingError(Exception):
    """Base class; carries the affected subscription's id."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(message)
        self.subscription_id = subscription_id


class ExpenseDispatchFailed(SubscriptionProcessingError):
    """The expense service rejected or never answered the charge. The record is left unchanged."""


class ReminderDispatchFailed(SubscriptionProcessingError):
    """The notification service failed. Non-fatal: the cycle still advances."""


class SubscriptionVanished(SubscriptionProcessingError):
    """The record was deleted or deactivated between scan and processing."""


class PersistFailed(SubscriptionProcessingError):
    """The charge was created but the advanced record could not be written."""
