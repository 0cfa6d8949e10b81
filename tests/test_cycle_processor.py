"""
Tests for processing a single subscription.

Covers:
  - Due charge: expense created, cycle advanced by one step, reminder mark cleared
  - Reminder-only pass before the due date
  - Expense failure leaves next_run_at / last_run_at untouched
  - Reminder failure is a warning, billing still advances
  - Vanished and inactive records are skipped
  - Persist retries and PersistFailed after a successful charge
  - Pause or delete while a charge is in flight is never undone
"""
import threading
from unittest.mock import MagicMock

import pytest

from models.context import RunContext
from models.subscription import Cadence
from services.cycle_processor import CycleProcessor, ResultStatus
from services.errors import (
    ExpenseDispatchFailed,
    PersistFailed,
    ReminderDispatchFailed,
    SubscriptionProcessingError,
    SubscriptionVanished,
)
from services.subscription_service import SubscriptionService

from conftest import (
    InMemorySubscriptionRepository,
    RecordingExpenseClient,
    RecordingNotificationClient,
    make_sub,
    utc,
)


CTX = RunContext(trigger="scheduled", correlation_id="cid-test")


class HookedExpenseClient(RecordingExpenseClient):
    """Runs ``on_charge(subscription_id)`` after recording each charge."""

    def __init__(self, on_charge=None):
        super().__init__()
        self.on_charge = on_charge

    def create_expense(self, request, ctx) -> None:
        super().create_expense(request, ctx)
        if self.on_charge is not None:
            self.on_charge(request.subscription_id)


def _processor(repo, expense, notifier=None, sink=None, attempts=3):
    return CycleProcessor(repo, expense, notification_client=notifier,
                          sink=sink, persist_attempts=attempts)


class TestDueCharge:
    def test_monthly_scenario(self, expense_client, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        processor = _processor(repo, expense_client, notification_client)

        result = processor.process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.ADVANCED
        stored = repo.rows[sub.id]
        assert stored.next_run_at == utc(2025, 2, 1)
        assert stored.last_run_at == utc(2025, 1, 2)
        assert stored.last_reminder_at is None

    def test_exactly_one_expense_call(self, repo, expense_client):
        sub = make_sub()
        repo.rows[sub.id] = sub
        _processor(repo, expense_client).process(sub, utc(2025, 1, 2), CTX)

        assert len(expense_client.requests) == 1
        request, ctx = expense_client.requests[0]
        assert request.subscription_id == sub.id
        assert request.name == "Netflix"
        assert ctx.correlation_id == "cid-test"
        assert repo.write_calls == 1

    def test_overdue_advances_by_one_step(self, repo, expense_client):
        sub = make_sub(cadence=Cadence.WEEKLY, next_run_at=utc(2025, 1, 1))
        repo.rows[sub.id] = sub
        _processor(repo, expense_client).process(sub, utc(2025, 1, 20), CTX)

        # still in the past: the next batch picks it up again
        assert repo.rows[sub.id].next_run_at == utc(2025, 1, 8)

    def test_late_reminder_sent_then_reset(self, expense_client, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        result = _processor(repo, expense_client, notification_client).process(sub, utc(2025, 1, 2), CTX)

        assert result.reminder_sent is True
        assert len(notification_client.requests) == 1
        assert repo.rows[sub.id].last_reminder_at is None

    def test_uses_stored_record_not_scanned_copy(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        repo.rows[sub.id].amount = 19.99
        stale = make_sub(id=sub.id, amount=15.99)

        _processor(repo, expense_client).process(stale, utc(2025, 1, 2), CTX)

        assert float(expense_client.requests[0][0].amount) == pytest.approx(19.99)


class TestReminderOnly:
    def test_reminder_window_open_not_due(self, expense_client, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        result = _processor(repo, expense_client, notification_client).process(sub, utc(2024, 12, 30), CTX)

        assert result.status == ResultStatus.REMINDED
        stored = repo.rows[sub.id]
        assert stored.last_reminder_at == utc(2024, 12, 30)
        assert stored.next_run_at == utc(2025, 1, 1)
        assert stored.last_run_at is None
        assert expense_client.requests == []

    def test_reminder_payload_uses_reminder_time(self, expense_client, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        _processor(repo, expense_client, notification_client).process(sub, utc(2024, 12, 30), CTX)

        request, _ = notification_client.requests[0]
        assert request.send_at == utc(2024, 12, 29)
        assert request.owner_id == "42"

    def test_second_pass_same_cycle_sends_nothing(self, expense_client, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        processor = _processor(repo, expense_client, notification_client)

        processor.process(sub, utc(2024, 12, 30), CTX)
        result = processor.process(sub, utc(2024, 12, 31), CTX)

        assert result.status == ResultStatus.IDLE
        assert len(notification_client.requests) == 1

    def test_window_closed_is_idle(self, repo, expense_client, notification_client):
        sub = make_sub()
        repo.rows[sub.id] = sub
        result = _processor(repo, expense_client, notification_client).process(sub, utc(2024, 12, 1), CTX)

        assert result.status == ResultStatus.IDLE
        assert repo.write_calls == 0


class TestExpenseFailure:
    def test_record_unchanged(self):
        sub = make_sub(last_run_at=utc(2024, 12, 1))
        repo = InMemorySubscriptionRepository([sub])
        expense = RecordingExpenseClient(fail_for={sub.id})

        result = _processor(repo, expense).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.FAILED
        assert isinstance(result.error, ExpenseDispatchFailed)
        stored = repo.rows[sub.id]
        assert stored.next_run_at == utc(2025, 1, 1)
        assert stored.last_run_at == utc(2024, 12, 1)
        assert repo.write_calls == 0

    def test_reminder_mark_kept_for_retry(self, notification_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        expense = RecordingExpenseClient(fail_for={sub.id})
        processor = _processor(repo, expense, notification_client)

        processor.process(sub, utc(2025, 1, 2), CTX)
        processor.process(sub, utc(2025, 1, 2, 0, 1), CTX)

        stored = repo.rows[sub.id]
        assert stored.next_run_at == utc(2025, 1, 1)
        assert stored.last_run_at is None
        assert len(notification_client.requests) == 1
        assert len(expense.requests) == 2

    def test_error_event_emitted(self):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        sink = MagicMock()
        _processor(repo, RecordingExpenseClient(fail_for={sub.id}), sink=sink).process(sub, utc(2025, 1, 2), CTX)

        levels = [c.args[0] for c in sink.emit.call_args_list]
        assert "ERROR" in levels


class TestReminderFailure:
    def test_billing_still_advances(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        notifier = RecordingNotificationClient(fail=True)

        result = _processor(repo, expense_client, notifier).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.ADVANCED
        assert len(result.warnings) == 1
        assert isinstance(result.warnings[0], ReminderDispatchFailed)
        assert result.reminder_sent is False
        assert repo.rows[sub.id].next_run_at == utc(2025, 2, 1)

    def test_failed_reminder_not_recorded(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        notifier = RecordingNotificationClient(fail=True)

        result = _processor(repo, expense_client, notifier).process(sub, utc(2024, 12, 30), CTX)

        assert result.status == ResultStatus.IDLE
        assert repo.rows[sub.id].last_reminder_at is None
        assert repo.write_calls == 0


class TestVanished:
    def test_missing_record(self, repo, expense_client):
        sub = make_sub()
        result = _processor(repo, expense_client).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.VANISHED
        assert isinstance(result.error, SubscriptionVanished)
        assert expense_client.requests == []

    def test_inactive_record_not_touched(self, expense_client):
        sub = make_sub(is_active=False)
        repo = InMemorySubscriptionRepository([sub])
        result = _processor(repo, expense_client).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.VANISHED
        assert repo.write_calls == 0
        assert expense_client.requests == []


class TestPersist:
    def test_retries_then_succeeds(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        repo.write_failures = 2

        result = _processor(repo, expense_client, attempts=3).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.ADVANCED
        assert repo.write_calls == 3
        assert repo.rows[sub.id].next_run_at == utc(2025, 2, 1)

    def test_gives_up_with_persist_failed(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        repo.write_failures = 5
        sink = MagicMock()

        result = _processor(repo, expense_client, sink=sink, attempts=3).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.FAILED
        assert isinstance(result.error, PersistFailed)
        assert repo.write_calls == 3
        assert len(expense_client.requests) == 1
        assert sink.emit.call_args.args[0] == "CRITICAL"


class TestForceCharge:
    def test_charges_before_due_date(self, repo, expense_client):
        sub = make_sub(next_run_at=utc(2025, 1, 10))
        repo.rows[sub.id] = sub
        result = _processor(repo, expense_client).process(sub, utc(2025, 1, 2), CTX, force_charge=True)

        assert result.status == ResultStatus.ADVANCED
        assert repo.rows[sub.id].next_run_at == utc(2025, 2, 10)
        assert repo.rows[sub.id].last_run_at == utc(2025, 1, 2)


class TestUnexpectedErrors:
    def test_store_read_error_is_contained(self, expense_client):
        repo = MagicMock()
        repo.get.side_effect = RuntimeError("connection reset")
        sub = make_sub()

        result = _processor(repo, expense_client).process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.FAILED
        assert isinstance(result.error, SubscriptionProcessingError)
        assert result.error.subscription_id == sub.id


class TestLifecycleDuringCharge:
    def test_pause_during_charge_is_kept(self):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        expense = HookedExpenseClient()
        sink = MagicMock()
        processor = _processor(repo, expense, sink=sink)
        service = SubscriptionService(repo, processor)
        expense.on_charge = lambda sid: service.deactivate(sid, "42")

        result = processor.process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.VANISHED
        assert isinstance(result.error, SubscriptionVanished)
        stored = repo.rows[sub.id]
        assert stored.is_active is False
        assert stored.next_run_at == utc(2025, 1, 1)
        assert stored.last_run_at is None
        assert len(expense.requests) == 1
        assert sink.emit.call_args.args[0] == "CRITICAL"

    def test_delete_during_charge_is_not_reinserted(self):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        expense = HookedExpenseClient()
        processor = _processor(repo, expense)
        service = SubscriptionService(repo, processor)
        expense.on_charge = lambda sid: service.hard_delete(sid, owner_id="42")

        result = processor.process(sub, utc(2025, 1, 2), CTX)

        assert result.status == ResultStatus.VANISHED
        assert sub.id not in repo.rows

    def test_pause_during_reminder_drops_mark(self, expense_client):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        notifier = RecordingNotificationClient()
        processor = _processor(repo, expense_client, notifier)
        service = SubscriptionService(repo, processor)
        original = notifier.send_reminder

        def send_then_pause(request, ctx):
            original(request, ctx)
            service.pause(request.subscription_id)

        notifier.send_reminder = send_then_pause

        result = processor.process(sub, utc(2024, 12, 30), CTX)

        assert result.status == ResultStatus.VANISHED
        stored = repo.rows[sub.id]
        assert stored.is_active is False
        assert stored.last_reminder_at is None

    def test_pause_from_another_thread_waits_for_charge(self):
        sub = make_sub()
        repo = InMemorySubscriptionRepository([sub])
        charging, release = threading.Event(), threading.Event()

        def hold(_sid):
            charging.set()
            release.wait(5)

        expense = HookedExpenseClient(on_charge=hold)
        processor = _processor(repo, expense)
        service = SubscriptionService(repo, processor)
        results = []

        billing = threading.Thread(
            target=lambda: results.append(processor.process(sub, utc(2025, 1, 2), CTX))
        )
        billing.start()
        assert charging.wait(5)

        pausing = threading.Thread(target=service.deactivate, args=(sub.id, "42"))
        pausing.start()
        pausing.join(0.2)
        assert pausing.is_alive()

        release.set()
        billing.join(5)
        pausing.join(5)

        assert results[0].status == ResultStatus.ADVANCED
        stored = repo.rows[sub.id]
        assert stored.next_run_at == utc(2025, 2, 1)
        assert stored.is_active is False


class TestLocks:
    def test_lock_entries_are_released(self, expense_client):
        subs = [make_sub() for _ in range(3)]
        repo = InMemorySubscriptionRepository(subs)
        processor = _processor(repo, expense_client)

        for sub in subs:
            processor.process(sub, utc(2025, 1, 2), CTX)
        SubscriptionService(repo, processor).pause(subs[0].id)

        assert processor._locks == {}

    def test_lock_is_reentrant(self, expense_client):
        processor = _processor(InMemorySubscriptionRepository(), expense_client)

        with processor.locked("a"):
            with processor.locked("a"):
                assert processor._locks["a"].users == 2
        assert "a" not in processor._locks
