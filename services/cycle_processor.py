"""
services/cycle_processor.py
---------------------------
Processes one subscription for one batch (or one manual trigger).

Order of work for a single subscription:
    1. Re-read the record; a missing or inactive record is skipped.
    2. Send the advance reminder if its window is open (best-effort).
    3. If the charge is due, create the expense. Only a confirmed expense
       lets the cycle advance.
    4. Set last_run_at, advance next_run_at by one cadence step, clear
       last_reminder_at, and write those fields in one statement that
       matches only a still-active record.

Every failure is caught here and returned as a ProcessingResult, so one
bad subscription never stops the rest of a batch.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, Optional

from clients.expense_client import ExpenseClient
from clients.notification_client import NotificationClient
from models.context import RunContext
from models.outbound import ExpenseRequest, ReminderRequest
from models.subscription import Subscription
from repositories.subscription_repo import SubscriptionRepository
from services.billing_cycle import advance, reminder_time
from services.errors import (
    ExpenseDispatchFailed,
    PersistFailed,
    ReminderDispatchFailed,
    SubscriptionProcessingError,
    SubscriptionVanished,
)
from services.reminder_policy import should_remind
from utils.event_sink import EventSink
from utils.logger import get_logger

logger = get_logger(__name__)


class ResultStatus(str, Enum):
    ADVANCED = "advanced"      # charged and moved to the next cycle
    REMINDED = "reminded"      # reminder sent, charge not yet due
    IDLE = "idle"              # nothing to do yet
    FAILED = "failed"
    VANISHED = "vanished"


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


@dataclass
class ProcessingResult:
    """Outcome of processing one subscription."""
    subscription_id: str
    status: ResultStatus
    subscription: Optional[Subscription] = None
    error: Optional[SubscriptionProcessingError] = None
    warnings: list[SubscriptionProcessingError] = field(default_factory=list)
    reminder_sent: bool = False

    @property
    def ok(self) -> bool:
        return self.status not in (ResultStatus.FAILED, ResultStatus.VANISHED)


class CycleProcessor:
    """
    Applies reminder, charge and cycle advancement to one subscription.

    Args:
        repo: Record store.
        expense_client: Required; a cycle never advances without a charge.
        notification_client: Optional; None disables reminders.
        sink: Optional structured event sink.
        persist_attempts: Writes attempted after a successful charge
            before giving up with PersistFailed.
    """

    def __init__(self, repo: SubscriptionRepository, expense_client: ExpenseClient,
                 notification_client: Optional[NotificationClient] = None,
                 sink: Optional[EventSink] = None, persist_attempts: int = 3):
        self.repo = repo
        self.expense_client = expense_client
        self.notification_client = notification_client
        self.sink = sink
        self.persist_attempts = max(1, persist_attempts)
        self._guard = threading.Lock()
        self._locks: dict[str, _LockEntry] = {}

    def process(self, sub: Subscription, now: datetime, ctx: RunContext,
                force_charge: bool = False) -> ProcessingResult:
        """
        Process one subscription.

        Two calls for the same id never overlap; a call for a different
        id is not blocked.

        Args:
            sub: Scanned record. Only its id is trusted; the full record is
                re-read under the lock before any decision is made.
            now: Reference time shared by the whole batch.
            ctx: Run context passed to every outbound call.
            force_charge: Charge even if next_run_at is still in the future
                (manual trigger).

        Returns:
            ProcessingResult describing what happened. Never raises.
        """
        subscription_id = str(sub.id)
        with self.locked(subscription_id):
            try:
                return self._process_locked(subscription_id, now, ctx, force_charge)
            except Exception as e:
                logger.exception(f"Unexpected error processing subscription {subscription_id}")
                error = SubscriptionProcessingError(str(e), subscription_id)
                self._event("ERROR", f"Error processing subscription {subscription_id}", ctx,
                            subscription_id=subscription_id, detail=str(e))
                return ProcessingResult(subscription_id, ResultStatus.FAILED, error=error)

    # ── STEPS ─────────────────────────────────────────────

    def _process_locked(self, subscription_id: str, now: datetime, ctx: RunContext,
                        force_charge: bool) -> ProcessingResult:
        sub = self.repo.get(subscription_id)
        if sub is None or not sub.is_active:
            logger.info(f"Subscription {subscription_id} vanished or inactive, skipping")
            return ProcessingResult(
                subscription_id, ResultStatus.VANISHED,
                error=SubscriptionVanished(f"Subscription {subscription_id} not found", subscription_id),
            )

        result = ProcessingResult(subscription_id, ResultStatus.IDLE, subscription=sub)
        self._maybe_remind(sub, now, ctx, result)

        if not force_charge and sub.next_run_at > now:
            if result.reminder_sent:
                self._persist_reminder_mark(sub, ctx, result)
                if result.error is None:
                    result.status = ResultStatus.REMINDED
            return result

        try:
            self.expense_client.create_expense(ExpenseRequest.for_subscription(sub), ctx)
        except ExpenseDispatchFailed as e:
            logger.error(f"{e} - will retry on next scan")
            self._event("ERROR", f"Expense dispatch failed for subscription {sub.id}", ctx,
                        subscription_id=sub.id, detail=str(e))
            if result.reminder_sent:
                # keep the reminder mark so the retry does not re-send it
                self._persist_reminder_mark(sub, ctx, result)
            result.status = ResultStatus.FAILED
            result.error = e
            return result

        previous_run = sub.next_run_at
        sub.last_run_at = now
        sub.next_run_at = advance(previous_run, sub.cadence)
        sub.last_reminder_at = None

        try:
            self._persist(sub)
        except SubscriptionVanished as e:
            logger.critical(
                f"Charged subscription {sub.id} for {previous_run} but it was paused or "
                f"deleted before the cycle could be advanced"
            )
            self._event("CRITICAL", f"Subscription {sub.id} vanished after charge", ctx,
                        subscription_id=sub.id, charged_for=previous_run.isoformat(),
                        detail=str(e))
            result.status = ResultStatus.VANISHED
            result.error = e
            return result
        except PersistFailed as e:
            logger.critical(
                f"Charged subscription {sub.id} for {previous_run} but could not persist "
                f"the advanced cycle: {e}"
            )
            self._event("CRITICAL", f"Persist failed after charge for subscription {sub.id}", ctx,
                        subscription_id=sub.id, charged_for=previous_run.isoformat(),
                        detail=str(e))
            result.status = ResultStatus.FAILED
            result.error = e
            return result

        logger.info(
            f"Advanced subscription '{sub.name}' #{sub.id}: {previous_run} -> {sub.next_run_at}"
        )
        result.status = ResultStatus.ADVANCED
        return result

    def _maybe_remind(self, sub: Subscription, now: datetime, ctx: RunContext,
                      result: ProcessingResult) -> None:
        if not should_remind(sub, now, has_target=self.notification_client is not None):
            return

        send_at = reminder_time(sub.next_run_at, sub.notification_offset_days)
        try:
            self.notification_client.send_reminder(
                ReminderRequest.for_subscription(sub, send_at), ctx
            )
        except ReminderDispatchFailed as e:
            logger.warning(f"{e} - continuing with billing")
            self._event("WARN", f"Reminder dispatch failed for subscription {sub.id}", ctx,
                        subscription_id=sub.id, detail=str(e))
            result.warnings.append(e)
            return

        sub.last_reminder_at = now
        result.reminder_sent = True

    def _persist(self, sub: Subscription) -> Subscription:
        """
        Write the engine-owned fields, re-attempting before raising PersistFailed.

        Raises:
            SubscriptionVanished: If the record was paused or deleted meanwhile.
            PersistFailed: If every attempt failed.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.persist_attempts + 1):
            try:
                written = self.repo.update_cycle(sub)
            except Exception as e:
                last_error = e
                logger.error(
                    f"Persist attempt {attempt}/{self.persist_attempts} failed "
                    f"for subscription {sub.id}: {e}"
                )
                continue
            if not written:
                raise SubscriptionVanished(
                    f"Subscription {sub.id} was paused or deleted during processing", sub.id
                )
            return sub
        raise PersistFailed(
            f"Could not persist subscription {sub.id}: {last_error}", sub.id
        ) from last_error

    def _persist_reminder_mark(self, sub: Subscription, ctx: RunContext,
                               result: ProcessingResult) -> None:
        try:
            self._persist(sub)
        except SubscriptionVanished as e:
            logger.info(f"Subscription {sub.id} was paused or deleted, reminder mark dropped")
            result.status = ResultStatus.VANISHED
            result.error = e
        except PersistFailed as e:
            self._event("ERROR", f"Could not record reminder for subscription {sub.id}", ctx,
                        subscription_id=sub.id, detail=str(e))
            result.status = ResultStatus.FAILED
            result.error = e

    # ── HELPERS ───────────────────────────────────────────

    @contextmanager
    def locked(self, subscription_id: str) -> Iterator[None]:
        """
        Hold the per-subscription lock shared with every other caller.

        The lock is re-entrant, and its entry is dropped once nobody holds
        or waits on it.
        """
        with self._guard:
            entry = self._locks.get(subscription_id)
            if entry is None:
                entry = self._locks[subscription_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[subscription_id]

    def _event(self, level: str, message: str, ctx: RunContext, **context) -> None:
        if self.sink is not None:
            self.sink.emit(level, message, ctx, **context)
