"""
services/batch_orchestrator.py
------------------------------
One billing batch: sample the clock once, find due subscriptions, and run
the cycle processor over each of them independently.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from models.context import RunContext
from models.subscription import Subscription
from repositories.subscription_repo import SubscriptionRepository
from services.cycle_processor import CycleProcessor, ProcessingResult, ResultStatus
from utils.event_sink import EventSink
from utils.logger import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DueItemScanner:
    """Read-only queries that select the work for one batch."""

    def __init__(self, repo: SubscriptionRepository):
        self.repo = repo

    def find_due(self, now: datetime) -> list[Subscription]:
        """Active subscriptions with ``next_run_at <= now``, oldest first."""
        return self.repo.find_due_active(now)

    def find_reminders(self, now: datetime) -> list[Subscription]:
        """Active subscriptions not yet due whose reminder window has opened."""
        return self.repo.find_reminder_candidates(now)


@dataclass
class BatchReport:
    """Per-item outcomes of one batch."""
    started_at: datetime
    correlation_id: str
    results: list[ProcessingResult] = field(default_factory=list)

    def count(self, status: ResultStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def reminders_sent(self) -> int:
        return sum(1 for r in self.results if r.reminder_sent)

    @property
    def reminder_failures(self) -> int:
        return sum(len(r.warnings) for r in self.results)

    def summary(self) -> dict:
        return {
            "total": len(self.results),
            "advanced": self.count(ResultStatus.ADVANCED),
            "reminded": self.count(ResultStatus.REMINDED),
            "failed": self.count(ResultStatus.FAILED),
            "vanished": self.count(ResultStatus.VANISHED),
            "reminders_sent": self.reminders_sent,
            "reminder_failures": self.reminder_failures,
        }


class BatchOrchestrator:
    """
    Runs billing batches, one at a time.

    A call to ``run_batch`` while another batch is still running returns
    None immediately instead of starting a second, overlapping batch.

    Args:
        scanner: Selects due subscriptions.
        processor: Handles one subscription.
        sink: Optional structured event sink.
        clock: Source of "now"; sampled exactly once per batch.
    """

    def __init__(self, scanner: DueItemScanner, processor: CycleProcessor,
                 sink: Optional[EventSink] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.scanner = scanner
        self.processor = processor
        self.sink = sink
        self.clock = clock
        self._running = threading.Lock()
        self._stopping = threading.Event()

    def run_batch(self) -> Optional[BatchReport]:
        """
        Execute one batch.

        Returns:
            The BatchReport, or None if skipped because a batch was already
            running or shutdown was requested.
        """
        if self._stopping.is_set():
            return None
        if not self._running.acquire(blocking=False):
            logger.warning("Previous billing batch still running, skipping this trigger")
            return None
        try:
            return self._run(self.clock(), RunContext(trigger="scheduled"))
        finally:
            self._running.release()

    def stop(self) -> None:
        """Stop after the in-flight subscription finishes, and wait for it."""
        self._stopping.set()
        with self._running:
            logger.info("Billing batches stopped.")

    def _run(self, now: datetime, ctx: RunContext) -> BatchReport:
        report = BatchReport(started_at=now, correlation_id=ctx.correlation_id)

        items = self._scan(now, ctx)
        if not items:
            return report

        logger.info(f"Processing {len(items)} subscriptions [cid={ctx.correlation_id}]")
        self._event("INFO", f"Processing {len(items)} subscriptions", ctx, count=len(items))

        for sub in items:
            if self._stopping.is_set():
                logger.info("Shutdown requested, leaving remaining subscriptions for the next run")
                break
            report.results.append(self.processor.process(sub, now, ctx))

        summary = report.summary()
        logger.info(f"Billing batch finished: {summary}")
        level = "WARN" if summary["failed"] else "INFO"
        self._event(level, "Billing batch finished", ctx, **summary)
        return report

    def _scan(self, now: datetime, ctx: RunContext) -> list[Subscription]:
        """Due subscriptions first, then reminder-only ones; never raises."""
        try:
            due = self.scanner.find_due(now)
        except Exception as e:
            logger.error(f"Due scan failed: {e}")
            self._event("ERROR", "Due scan failed", ctx, detail=str(e))
            return []

        items = list(due)
        if self.processor.notification_client is None:
            return items

        try:
            upcoming = self.scanner.find_reminders(now)
        except Exception as e:
            logger.error(f"Reminder scan failed: {e}")
            self._event("ERROR", "Reminder scan failed", ctx, detail=str(e))
            return items

        seen = {s.id for s in items}
        items.extend(s for s in upcoming if s.id not in seen)
        return items

    def _event(self, level: str, message: str, ctx: RunContext, **context) -> None:
        if self.sink is not None:
            self.sink.emit(level, message, ctx, **context)
