"""
Pytest fixtures: in-memory record store and recording service clients.
"""
import copy
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from models.subscription import Cadence, Subscription
from services.errors import ExpenseDispatchFailed, ReminderDispatchFailed


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_sub(**overrides) -> Subscription:
    """Monthly 15.99 EUR subscription due 2025-01-01 with a 3-day reminder."""
    fields = dict(
        id=str(uuid.uuid4()),
        owner_id="42",
        name="Netflix",
        amount=Decimal("15.99"),
        cadence=Cadence.MONTHLY,
        start_date=utc(2025, 1, 1),
        next_run_at=utc(2025, 1, 1),
        notification_offset_days=3,
    )
    fields.update(overrides)
    return Subscription(**fields)


class InMemorySubscriptionRepository:
    """Record store fake. Hands out copies, like rows read from a database."""

    def __init__(self, subs=()):
        self.rows: dict[str, Subscription] = {}
        self.write_calls = 0
        self.write_failures = 0
        for sub in subs:
            self.rows[sub.id] = copy.deepcopy(sub)

    def add(self, sub: Subscription) -> Subscription:
        sub.id = str(uuid.uuid4())
        self.rows[sub.id] = copy.deepcopy(sub)
        return sub

    def find_due_active(self, now: datetime) -> list[Subscription]:
        due = [s for s in self.rows.values() if s.is_active and s.next_run_at <= now]
        return [copy.deepcopy(s) for s in sorted(due, key=lambda s: (s.next_run_at, s.id))]

    def find_reminder_candidates(self, now: datetime) -> list[Subscription]:
        found = []
        for s in self.rows.values():
            if not s.is_active or s.notification_offset_days <= 0 or s.next_run_at <= now:
                continue
            opens_at = s.next_run_at - timedelta(days=s.notification_offset_days)
            if opens_at <= now and (s.last_reminder_at is None or s.last_reminder_at < opens_at):
                found.append(s)
        return [copy.deepcopy(s) for s in sorted(found, key=lambda s: (s.next_run_at, s.id))]

    def get(self, subscription_id: str) -> Optional[Subscription]:
        row = self.rows.get(subscription_id)
        return copy.deepcopy(row) if row else None

    def get_for_owner(self, subscription_id: str, owner_id: str) -> Optional[Subscription]:
        row = self.rows.get(subscription_id)
        return copy.deepcopy(row) if row and row.owner_id == owner_id else None

    def get_all(self, owner_id: str, active_only: bool = True) -> list[Subscription]:
        subs = [s for s in self.rows.values()
                if s.owner_id == owner_id and (s.is_active or not active_only)]
        return [copy.deepcopy(s) for s in sorted(subs, key=lambda s: s.next_run_at)]

    def _write(self) -> None:
        self.write_calls += 1
        if self.write_failures > 0:
            self.write_failures -= 1
            raise ConnectionError("database unavailable")

    def save(self, sub: Subscription) -> Subscription:
        self._write()
        self.rows[sub.id] = copy.deepcopy(sub)
        return sub

    def update_cycle(self, sub: Subscription) -> bool:
        self._write()
        row = self.rows.get(sub.id)
        if row is None or not row.is_active:
            return False
        row.last_run_at = sub.last_run_at
        row.next_run_at = sub.next_run_at
        row.last_reminder_at = sub.last_reminder_at
        return True

    def set_active(self, subscription_id: str, active: bool, owner_id: Optional[str] = None) -> bool:
        row = self.rows.get(subscription_id)
        if row is None or (owner_id is not None and row.owner_id != owner_id):
            return False
        row.is_active = active
        return True

    def delete(self, subscription_id: str, owner_id: Optional[str] = None) -> bool:
        row = self.rows.get(subscription_id)
        if row is None or (owner_id is not None and row.owner_id != owner_id):
            return False
        del self.rows[subscription_id]
        return True


class RecordingExpenseClient:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.requests = []

    def create_expense(self, request, ctx) -> None:
        self.requests.append((request, ctx))
        if request.subscription_id in self.fail_for:
            raise ExpenseDispatchFailed("expense service returned 503", request.subscription_id)


class RecordingNotificationClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests = []

    def send_reminder(self, request, ctx) -> None:
        self.requests.append((request, ctx))
        if self.fail:
            raise ReminderDispatchFailed("notification service timed out", request.subscription_id)


@pytest.fixture
def repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def expense_client():
    return RecordingExpenseClient()


@pytest.fixture
def notification_client():
    return RecordingNotificationClient()
