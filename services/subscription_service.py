"""
services/subscription_service.py
--------------------------------
Business logic for managing subscriptions on behalf of their owners,
including the manual "charge now" trigger.
"""

from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal
from typing import Callable, ContextManager, Optional

from config import DEFAULT_CURRENCY, DEFAULT_NOTIFICATION_OFFSET_DAYS
from models.context import RunContext
from models.subscription import Cadence, Subscription
from repositories.subscription_repo import SubscriptionRepository
from services.batch_orchestrator import utc_now
from services.cycle_processor import CycleProcessor
from services.errors import SubscriptionVanished
from utils.logger import get_logger

logger = get_logger(__name__)

_EDITABLE_FIELDS = {
    "name", "amount", "currency", "cadence", "start_date", "next_run_at",
    "notification_offset_days", "expense_category_id",
}


class SubscriptionService:
    """
    Handles the subscription lifecycle outside of the periodic batch.

    Responsibilities:
        - Create, list, read and edit subscriptions.
        - Pause/deactivate (soft, terminal for the engine) and hard delete.
        - Manually charge one subscription through the same cycle processor
          the batch uses.
    """

    def __init__(self, repo: SubscriptionRepository,
                 processor: Optional[CycleProcessor] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.processor = processor
        self.clock = clock

    def create(self, owner_id: str, name: str, amount: Decimal, cadence: Cadence,
               start_date: datetime, currency: str = DEFAULT_CURRENCY,
               notification_offset_days: int = DEFAULT_NOTIFICATION_OFFSET_DAYS,
               expense_category_id: Optional[str] = None) -> Subscription:
        """
        Create a subscription whose first charge is due on ``start_date``.

        Raises:
            ValueError: If a field is invalid (empty name, negative amount...).
        """
        sub = Subscription(
            owner_id=owner_id,
            name=name.strip(),
            amount=amount,
            cadence=cadence,
            start_date=start_date,
            next_run_at=start_date,
            currency=currency,
            notification_offset_days=notification_offset_days,
            expense_category_id=expense_category_id,
        )
        return self.repo.add(sub)

    def list_active(self, owner_id: str) -> list[Subscription]:
        return self.repo.get_all(owner_id, active_only=True)

    def get(self, subscription_id: str, owner_id: str) -> Optional[Subscription]:
        return self.repo.get_for_owner(subscription_id, owner_id)

    def update(self, subscription_id: str, owner_id: str, **changes) -> Subscription:
        """
        Edit a subscription. Setting ``next_run_at`` is an explicit manual
        reschedule and is the only way it can move backwards.

        Raises:
            SubscriptionVanished: If no such subscription belongs to the owner.
            ValueError: On unknown or invalid fields.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit fields: {', '.join(sorted(unknown))}")

        with self._locked(subscription_id):
            sub = self.repo.get_for_owner(subscription_id, owner_id)
            if sub is None:
                raise SubscriptionVanished(f"Subscription {subscription_id} not found", subscription_id)

            for key, value in changes.items():
                setattr(sub, key, value)
            sub.validate()
            return self.repo.save(sub)

    def pause(self, subscription_id: str) -> bool:
        """Stop automatic billing for a subscription (any owner)."""
        with self._locked(subscription_id):
            return self.repo.set_active(subscription_id, False)

    def deactivate(self, subscription_id: str, owner_id: str) -> bool:
        """Stop automatic billing for one of the owner's subscriptions."""
        with self._locked(subscription_id):
            return self.repo.set_active(subscription_id, False, owner_id=owner_id)

    def hard_delete(self, subscription_id: str, owner_id: Optional[str] = None) -> bool:
        with self._locked(subscription_id):
            return self.repo.delete(subscription_id, owner_id=owner_id)

    def trigger(self, subscription_id: str, owner_id: Optional[str] = None) -> Subscription:
        """
        Charge one subscription now and advance it by one cycle.

        Args:
            subscription_id: Subscription to charge.
            owner_id: When given, the subscription must belong to this owner.

        Returns:
            The advanced subscription.

        Raises:
            RuntimeError: If no expense service is configured.
            SubscriptionVanished: If the subscription does not exist or is inactive.
            ExpenseDispatchFailed: If the charge could not be created.
            PersistFailed: If the charge was created but the record not saved.
        """
        if self.processor is None:
            raise RuntimeError("Expense service is not configured")

        if owner_id is not None:
            sub = self.repo.get_for_owner(subscription_id, owner_id)
        else:
            sub = self.repo.get(subscription_id)
        if sub is None:
            raise SubscriptionVanished(f"Subscription {subscription_id} not found", subscription_id)

        ctx = RunContext(trigger="manual")
        result = self.processor.process(sub, self.clock(), ctx, force_charge=True)
        if result.error is not None:
            raise result.error
        for warning in result.warnings:
            logger.warning(f"Manual trigger of {subscription_id}: {warning}")
        return result.subscription

    def _locked(self, subscription_id: str) -> ContextManager:
        """Serialize with any in-flight charge of the same subscription."""
        if self.processor is None:
            return nullcontext()
        return self.processor.locked(subscription_id)
