"""
db/init_db.py
-------------
Creates the database schema (tables) if they do not already exist.
Run this module directly to initialize a fresh database:
    python -m db.init_db
"""

from db.connection import get_connection, release_connection
from utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

-- Subscriptions table: recurring charges processed by the billing engine
CREATE TABLE IF NOT EXISTS subscriptions (
    id                          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    owner_id                    VARCHAR(64) NOT NULL,
    name                        VARCHAR(100) NOT NULL CHECK (length(trim(name)) > 0),
    amount                      NUMERIC(12,2) NOT NULL CHECK (amount >= 0),
    currency                    VARCHAR(8) NOT NULL DEFAULT 'EUR',
    cadence                     VARCHAR(20) NOT NULL CHECK (cadence IN ('daily', 'weekly', 'monthly', 'yearly')),
    start_date                  TIMESTAMPTZ NOT NULL,
    next_run_at                 TIMESTAMPTZ NOT NULL,
    last_run_at                 TIMESTAMPTZ,
    notification_offset_days    INT NOT NULL DEFAULT 1 CHECK (notification_offset_days >= 0),
    last_reminder_at            TIMESTAMPTZ,
    is_active                   BOOLEAN NOT NULL DEFAULT TRUE,
    expense_category_id         VARCHAR(64),
    created_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Indexes for the due scan and per-owner listing
CREATE INDEX IF NOT EXISTS idx_subscriptions_due ON subscriptions(next_run_at) WHERE is_active = TRUE;
CREATE INDEX IF NOT EXISTS idx_subscriptions_owner ON subscriptions(owner_id, next_run_at);
"""


def create_tables() -> None:
    """
    Execute the schema SQL to create all tables.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    conn = get_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
        logger.info("Database schema initialized successfully.")
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to initialize schema: {e}")
        raise
    finally:
        release_connection(conn)


if __name__ == "__main__":
    from db.connection import init_pool
    init_pool()
    create_tables()
    print("Database schema created successfully.")
