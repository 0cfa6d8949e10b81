"""
models/subscription.py
----------------------
Domain model for recurring subscriptions billed by the engine.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Cadence(str, Enum):
    """Billing recurrence unit."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass
class Subscription:
    """
    Represents a recurring financial obligation (Netflix, rent, insurance...).

    Attributes:
        owner_id: Owning principal (opaque, e.g. a Telegram user ID).
        name: Display label, non-empty.
        amount: Charge amount, non-negative.
        cadence: How often a charge is created.
        start_date: Timestamp of the first intended charge.
        next_run_at: Timestamp of the next scheduled charge.
        currency: Currency code (not validated).
        notification_offset_days: Days before next_run_at to send a reminder; 0 disables.
        last_run_at: Timestamp of the last successful charge.
        last_reminder_at: When the reminder for the current cycle was sent.
        is_active: Inactive subscriptions are never touched by the scanner.
        expense_category_id: Passed through to the expense service.
        id: Database primary key (None for new records).
        created_at: Timestamp when the record was created.
        updated_at: Timestamp of the last write.
    """
    owner_id: str
    name: str
    amount: Decimal
    cadence: Cadence
    start_date: datetime
    next_run_at: datetime
    currency: str = "EUR"
    notification_offset_days: int = 1
    last_run_at: Optional[datetime] = None
    last_reminder_at: Optional[datetime] = None
    is_active: bool = True
    expense_category_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Normalize types and reject invalid values.

        Raises:
            ValueError: On an empty name, negative amount or negative offset.
        """
        self.cadence = Cadence(self.cadence)
        self.amount = Decimal(str(self.amount))
        if not self.name or not self.name.strip():
            raise ValueError("Subscription name must not be empty")
        if self.amount < 0:
            raise ValueError(f"Subscription amount must be non-negative, got {self.amount}")
        if self.notification_offset_days < 0:
            raise ValueError("notification_offset_days must be non-negative")

    def __str__(self) -> str:
        status = "✅" if self.is_active else "⏸️"
        return (
            f"{status} {self.name}: {self.amount:.2f} {self.currency} "
            f"({self.cadence.value}) - Next: {self.next_run_at:%Y-%m-%d %H:%M}"
        )
