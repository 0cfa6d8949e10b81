"""
handlers/subscription_handler.py
--------------------------------
Handles subscription management commands.
The Telegram user ID is the subscription owner.
"""

import asyncio
import re
import uuid
from datetime import datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from telegram import Update
from telegram.ext import ContextTypes

from models.subscription import Cadence
from security.auth import authorized_only
from security.rate_limiter import rate_limited
from services.errors import (
    ExpenseDispatchFailed,
    PersistFailed,
    SubscriptionProcessingError,
    SubscriptionVanished,
)
from services.subscription_service import SubscriptionService
from utils.logger import get_logger

logger = get_logger(__name__)

_CADENCE_MAP = {
    "daily": Cadence.DAILY, "day": Cadence.DAILY,
    "weekly": Cadence.WEEKLY, "week": Cadence.WEEKLY,
    "monthly": Cadence.MONTHLY, "month": Cadence.MONTHLY,
    "yearly": Cadence.YEARLY, "year": Cadence.YEARLY, "annual": Cadence.YEARLY,
}

ADD_USAGE = (
    "📝 *Add a subscription*\n\n"
    "*Format:*\n"
    "`/add_subscription name | amount | cadence [| start date | reminder days | currency]`\n\n"
    "*Examples:*\n"
    "• `/add_subscription Netflix | 15.99 | monthly`\n"
    "• `/add_subscription Rent | 800 | monthly | 2026-03-01 | 3`\n"
    "• `/add_subscription Car insurance | 600 | yearly | 2026-06-15 | 7 | USD`\n\n"
    "*Cadence:* daily, weekly, monthly, yearly"
)


def _service(context: ContextTypes.DEFAULT_TYPE) -> SubscriptionService:
    return context.bot_data["subscription_service"]


def _parse_start(raw: str) -> datetime:
    """Accept an ISO date or datetime; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"Invalid start date: {raw}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_add_args(text: str, today: Optional[datetime] = None) -> dict:
    """
    Parse the pipe-separated /add_subscription arguments.

    Raises:
        ValueError: With a user-facing message when a part is invalid.
    """
    parts = [p.strip() for p in text.split("|")]
    if len(parts) < 3 or not parts[0]:
        raise ValueError("Expected at least: name | amount | cadence")

    if "-" in parts[1]:
        raise ValueError(f"Amount cannot be negative: {parts[1]}")
    amount_str = re.sub(r"[^\d.]", "", parts[1])
    try:
        amount = Decimal(amount_str)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {parts[1]}")

    cadence = _CADENCE_MAP.get(parts[2].lower())
    if cadence is None:
        raise ValueError(f"Unknown cadence: {parts[2]}")

    if len(parts) >= 4 and parts[3]:
        start = _parse_start(parts[3])
    else:
        now = today or datetime.now(timezone.utc)
        start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)

    parsed = {"name": parts[0], "amount": amount, "cadence": cadence, "start_date": start}

    if len(parts) >= 5 and parts[4]:
        if not parts[4].isdigit():
            raise ValueError(f"Reminder days must be a whole number: {parts[4]}")
        parsed["notification_offset_days"] = int(parts[4])
    if len(parts) >= 6 and parts[5]:
        parsed["currency"] = parts[5].upper()
    return parsed


async def _id_argument(update: Update, context: ContextTypes.DEFAULT_TYPE,
                       command: str) -> Optional[str]:
    if not context.args:
        await update.message.reply_text(f"⚠️ Usage: /{command} <subscription id>")
        return None
    raw = context.args[0].strip()
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        await update.message.reply_text(f"⚠️ '{raw}' is not a valid subscription id.")
        return None


@authorized_only
@rate_limited
async def subscriptions_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /subscriptions - list the user's active subscriptions."""
    owner_id = str(update.effective_user.id)
    subs = _service(context).list_active(owner_id)
    if not subs:
        await update.message.reply_text("📭 No active subscriptions.")
        return

    lines = ["🔁 Active subscriptions:\n"]
    for sub in subs:
        lines.append(f"{sub}\n   🔖 {sub.id}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
@rate_limited
async def add_subscription_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /add_subscription name | amount | cadence [| start | reminder days | currency]."""
    if not context.args:
        await update.message.reply_text(ADD_USAGE, parse_mode="Markdown")
        return

    owner_id = str(update.effective_user.id)
    try:
        parsed = parse_add_args(" ".join(context.args))
        sub = _service(context).create(owner_id=owner_id, **parsed)
    except ValueError as e:
        await update.message.reply_text(f"🤔 {e}")
        return

    await update.message.reply_text(
        f"🔁 Subscription added:\n"
        f"  📌 Name: {sub.name}\n"
        f"  💶 Amount: {sub.amount:.2f} {sub.currency}\n"
        f"  🔄 Cadence: {sub.cadence.value}\n"
        f"  📅 First charge: {sub.next_run_at:%Y-%m-%d}\n"
        f"  ⏰ Reminder: {sub.notification_offset_days} day(s) before\n"
        f"  🔖 ID: {sub.id}"
    )


@authorized_only
@rate_limited
async def pause_subscription_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pause_subscription <id> - stop automatic billing."""
    subscription_id = await _id_argument(update, context, "pause_subscription")
    if subscription_id is None:
        return
    owner_id = str(update.effective_user.id)
    if await asyncio.to_thread(_service(context).deactivate, subscription_id, owner_id):
        await update.message.reply_text(f"⏸️ Subscription {subscription_id} paused.")
    else:
        await update.message.reply_text(f"⚠️ Subscription {subscription_id} not found.")


@authorized_only
@rate_limited
async def delete_subscription_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /delete_subscription <id> - permanently remove a subscription."""
    subscription_id = await _id_argument(update, context, "delete_subscription")
    if subscription_id is None:
        return
    owner_id = str(update.effective_user.id)
    if await asyncio.to_thread(_service(context).hard_delete, subscription_id, owner_id):
        await update.message.reply_text(f"🗑️ Subscription {subscription_id} deleted.")
    else:
        await update.message.reply_text(f"⚠️ Subscription {subscription_id} not found.")


@authorized_only
@rate_limited
async def trigger_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /trigger <id> - charge a subscription now and move it to the next cycle."""
    subscription_id = await _id_argument(update, context, "trigger")
    if subscription_id is None:
        return
    owner_id = str(update.effective_user.id)

    try:
        sub = await asyncio.to_thread(_service(context).trigger, subscription_id, owner_id)
    except SubscriptionVanished:
        await update.message.reply_text(f"⚠️ Subscription {subscription_id} not found or paused.")
        return
    except ExpenseDispatchFailed:
        await update.message.reply_text("❌ The expense service did not accept the charge. Nothing was changed.")
        return
    except PersistFailed:
        await update.message.reply_text(
            "🚨 The charge was created but the subscription could not be updated. "
            "Please contact support before retrying."
        )
        return
    except (SubscriptionProcessingError, RuntimeError) as e:
        logger.error(f"Manual trigger of {subscription_id} failed: {e}")
        await update.message.reply_text(f"❌ Charge failed: {e}")
        return

    await update.message.reply_text(
        f"✅ Charged {sub.name} ({sub.amount:.2f} {sub.currency}).\n"
        f"📅 Next charge: {sub.next_run_at:%Y-%m-%d}"
    )
