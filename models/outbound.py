"""
models/outbound.py
------------------
Payloads sent to the expense and notification services.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from models.subscription import Subscription


@dataclass
class ExpenseRequest:
    """
    A charge to materialize in the expense service.

    Attributes:
        subscription_id: Key of the charge (sent as the line item id).
        name: Subscription label.
        amount: Charge amount.
        currency: Currency code.
        category_id: Optional expense category reference.
    """
    subscription_id: str
    name: str
    amount: Decimal
    currency: str = "EUR"
    category_id: Optional[str] = None

    @classmethod
    def for_subscription(cls, sub: Subscription) -> "ExpenseRequest":
        return cls(
            subscription_id=str(sub.id),
            name=sub.name,
            amount=sub.amount,
            currency=sub.currency,
            category_id=sub.expense_category_id,
        )

    def to_payload(self) -> dict:
        payload = {
            "description": f"Subscription payment: {self.name}",
            "currency": self.currency,
            "items": [
                {
                    "item_id": self.subscription_id,
                    "item_name": self.name,
                    # The expense API expects a JSON number
                    "item_price": float(self.amount),
                    "item_quantity": 1,
                }
            ],
        }
        if self.category_id:
            payload["category_id"] = self.category_id
        return payload


@dataclass
class ReminderRequest:
    """An advance notice that a subscription will be charged soon."""
    owner_id: str
    subscription_id: str
    title: str
    body: str
    send_at: datetime

    @classmethod
    def for_subscription(cls, sub: Subscription, send_at: datetime) -> "ReminderRequest":
        return cls(
            owner_id=str(sub.owner_id),
            subscription_id=str(sub.id),
            title=f"Subscription reminder: {sub.name}",
            body=(
                f"In {sub.notification_offset_days} day(s) you will be charged "
                f"{sub.amount:.2f} {sub.currency}."
            ),
            send_at=send_at,
        )

    def to_payload(self) -> dict:
        return {
            "userId": self.owner_id,
            "title": self.title,
            "body": self.body,
            "sendAt": self.send_at.isoformat(),
            "meta": {
                "subscriptionId": self.subscription_id,
                "type": "subscription-reminder",
            },
        }
