"""
main.py
-------
Entry point for the SubTrack bot.

Responsibilities:
    - Initialize the database connection pool and schema.
    - Wire the record store, outbound clients, event sink and billing engine.
    - Configure and start the Telegram bot with all handlers.
    - Schedule the periodic billing batch.
"""

from dataclasses import dataclass
from typing import Optional

from telegram import BotCommand
from telegram.ext import Application, CommandHandler

from clients.expense_client import ExpenseClient
from clients.notification_client import NotificationClient
from config import (
    EVENT_LOG_PATH,
    EXPENSE_SERVICE_URL,
    HTTP_TIMEOUT_SECONDS,
    NOTIFICATION_SERVICE_URL,
    PERSIST_RETRY_ATTEMPTS,
    SCAN_INTERVAL_SECONDS,
    SERVICE_NAME,
    TELEGRAM_BOT_TOKEN,
)
from db.connection import close_pool, init_pool
from db.init_db import create_tables
from handlers.start_handler import help_command, myid_command, start_command
from handlers.subscription_handler import (
    add_subscription_command,
    delete_subscription_command,
    pause_subscription_command,
    subscriptions_command,
    trigger_command,
)
from repositories.subscription_repo import SubscriptionRepository
from services.batch_orchestrator import BatchOrchestrator, DueItemScanner
from services.cycle_processor import CycleProcessor
from services.scheduler import schedule_billing
from services.subscription_service import SubscriptionService
from utils.event_sink import EventSink
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Engine:
    """Everything the bot needs to bill subscriptions, built once at startup."""
    service: SubscriptionService
    sink: EventSink
    orchestrator: Optional[BatchOrchestrator] = None
    expense_client: Optional[ExpenseClient] = None
    notification_client: Optional[NotificationClient] = None

    def close(self) -> None:
        if self.orchestrator is not None:
            self.orchestrator.stop()
        for client in (self.expense_client, self.notification_client):
            if client is not None:
                client.close()
        self.sink.stop()


def build_engine() -> Engine:
    """
    Construct the billing engine from configuration.

    Without EXPENSE_SERVICE_URL no orchestrator is built: a cycle must never
    advance without a confirmed charge.
    """
    sink = EventSink(SERVICE_NAME, path=EVENT_LOG_PATH)
    sink.start()
    repo = SubscriptionRepository()

    notification_client = None
    if NOTIFICATION_SERVICE_URL:
        notification_client = NotificationClient(NOTIFICATION_SERVICE_URL, HTTP_TIMEOUT_SECONDS)
    else:
        logger.warning("NOTIFICATION_SERVICE_URL not set, reminders are disabled.")

    if not EXPENSE_SERVICE_URL:
        logger.error("EXPENSE_SERVICE_URL not set, billing batches will not run.")
        return Engine(SubscriptionService(repo), sink, notification_client=notification_client)

    expense_client = ExpenseClient(EXPENSE_SERVICE_URL, HTTP_TIMEOUT_SECONDS)
    processor = CycleProcessor(
        repo,
        expense_client,
        notification_client=notification_client,
        sink=sink,
        persist_attempts=PERSIST_RETRY_ATTEMPTS,
    )
    orchestrator = BatchOrchestrator(DueItemScanner(repo), processor, sink=sink)
    return Engine(
        service=SubscriptionService(repo, processor),
        sink=sink,
        orchestrator=orchestrator,
        expense_client=expense_client,
        notification_client=notification_client,
    )


async def set_bot_commands(application: Application) -> None:
    """Register bot commands menu in Telegram on startup."""
    commands = [
        BotCommand("start", "🚀 Start the bot"),
        BotCommand("help", "📖 Show help"),
        BotCommand("subscriptions", "🔁 Active subscriptions"),
        BotCommand("add_subscription", "➕ Add a subscription"),
        BotCommand("pause_subscription", "⏸️ Pause a subscription"),
        BotCommand("delete_subscription", "❌ Delete a subscription"),
        BotCommand("trigger", "💳 Charge a subscription now"),
        BotCommand("myid", "🆔 Your Telegram ID"),
    ]
    await application.bot.set_my_commands(commands)
    logger.info("Bot commands menu registered successfully.")


def main() -> None:
    """Initialize and run the bot."""

    # ── 1. Database setup ─────────────────────────────────
    logger.info("Initializing database...")
    init_pool()
    create_tables()

    # ── 2. Billing engine ─────────────────────────────────
    engine = build_engine()

    # ── 3. Build the Telegram application ─────────────────
    logger.info("Starting Telegram bot...")
    app = Application.builder().token(TELEGRAM_BOT_TOKEN).post_init(set_bot_commands).build()
    app.bot_data["subscription_service"] = engine.service

    # ── 4. Register command handlers ──────────────────────
    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("myid", myid_command))
    app.add_handler(CommandHandler("subscriptions", subscriptions_command))
    app.add_handler(CommandHandler("add_subscription", add_subscription_command))
    app.add_handler(CommandHandler("pause_subscription", pause_subscription_command))
    app.add_handler(CommandHandler("delete_subscription", delete_subscription_command))
    app.add_handler(CommandHandler("trigger", trigger_command))

    # ── 5. Schedule the billing batch ─────────────────────
    if engine.orchestrator is not None and app.job_queue:
        schedule_billing(app.job_queue, engine.orchestrator, SCAN_INTERVAL_SECONDS)

    # ── 6. Start polling ──────────────────────────────────
    logger.info("🚀 SubTrack is running! Press Ctrl+C to stop.")
    app.run_polling(drop_pending_updates=True, allowed_updates=["message"])

    # ── 7. Cleanup on shutdown ────────────────────────────
    engine.close()
    close_pool()
    logger.info("SubTrack stopped.")


if __name__ == "__main__":
    main()
