"""
config.py
---------
Central configuration module. Loads all environment variables
from the .env file and exposes them as typed constants.
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value.rstrip("/") if value else None


# ── Service ───────────────────────────────────────────────
SERVICE_NAME: str = os.getenv("SERVICE_NAME", "subtrack")

# ── Telegram ──────────────────────────────────────────────
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

# ── PostgreSQL ────────────────────────────────────────────
DB_HOST: str = os.getenv("DB_HOST", "localhost")
DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
DB_NAME: str = os.getenv("DB_NAME", "subtrack")
DB_USER: str = os.getenv("DB_USER", "subtrack_user")
DB_PASS: str = os.getenv("DB_PASS", "")
DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "5"))

DATABASE_URL: str = (
    f"postgresql://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)

# ── External services ─────────────────────────────────────
# Without an expense service the periodic scan is not scheduled.
EXPENSE_SERVICE_URL: Optional[str] = _optional("EXPENSE_SERVICE_URL")
# Without a notification service reminders are disabled.
NOTIFICATION_SERVICE_URL: Optional[str] = _optional("NOTIFICATION_SERVICE_URL")
HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# ── Billing engine ────────────────────────────────────────
SCAN_INTERVAL_SECONDS: int = int(os.getenv("SCAN_INTERVAL_SECONDS", "60"))
PERSIST_RETRY_ATTEMPTS: int = int(os.getenv("PERSIST_RETRY_ATTEMPTS", "3"))
DEFAULT_NOTIFICATION_OFFSET_DAYS: int = int(
    os.getenv("DEFAULT_NOTIFICATION_OFFSET_DAYS", "1")
)

# ── Observability ─────────────────────────────────────────
EVENT_LOG_PATH: Optional[str] = _optional("EVENT_LOG_PATH")

# ── Security ──────────────────────────────────────────────
_raw_ids = os.getenv("ALLOWED_USER_IDS", "")
ALLOWED_USER_IDS: list[int] = (
    [int(uid.strip()) for uid in _raw_ids.split(",") if uid.strip()]
    if _raw_ids
    else []
)

# ── Rate Limiting ─────────────────────────────────────────
RATE_LIMIT_MESSAGES: int = int(os.getenv("RATE_LIMIT_MESSAGES", "30"))
RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# ── Currency ──────────────────────────────────────────────
DEFAULT_CURRENCY: str = "EUR"
