"""
repositories/subscription_repo.py
---------------------------------
Data access layer for subscriptions.
All SQL queries related to the `subscriptions` table live here.

Every write is a single statement, so a reader never observes a
half-updated subscription. The billing engine writes through
``update_cycle``, which never touches an inactive or deleted row.
"""

from datetime import datetime
from typing import Optional

from db.connection import get_connection, release_connection
from models.subscription import Subscription
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = """
    id::text, owner_id, name, amount, currency, cadence, start_date, next_run_at,
    last_run_at, notification_offset_days, last_reminder_at, is_active,
    expense_category_id, created_at, updated_at
"""


class SubscriptionRepository:
    """Repository for CRUD operations on the subscriptions table."""

    # ── CREATE ────────────────────────────────────────────

    def add(self, sub: Subscription) -> Subscription:
        """
        Insert a new subscription.

        Args:
            sub: The Subscription to persist (``id`` is generated).

        Returns:
            The same object with ``id``, ``created_at`` and ``updated_at`` populated.
        """
        sql = """
            INSERT INTO subscriptions
                (owner_id, name, amount, currency, cadence, start_date, next_run_at,
                 last_run_at, notification_offset_days, last_reminder_at, is_active,
                 expense_category_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id::text, created_at, updated_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, self._params(sub))
                row = cur.fetchone()
                sub.id, sub.created_at, sub.updated_at = row[0], row[1], row[2]
            conn.commit()
            logger.info(f"Added subscription '{sub.name}' #{sub.id}")
            return sub
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to add subscription '{sub.name}': {e}")
            raise
        finally:
            release_connection(conn)

    # ── READ ──────────────────────────────────────────────

    def find_due_active(self, now: datetime) -> list[Subscription]:
        """
        Get every active subscription whose next charge has elapsed.

        Args:
            now: The batch's reference time.

        Returns:
            Subscriptions ordered by ``next_run_at`` then ``id``.
        """
        sql = f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE is_active = TRUE AND next_run_at <= %s
            ORDER BY next_run_at ASC, id ASC;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (now,))
                return [self._row_to_subscription(r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    def find_reminder_candidates(self, now: datetime) -> list[Subscription]:
        """
        Get active subscriptions not yet due whose reminder window is open
        and whose reminder for the current cycle has not been sent.

        Args:
            now: The batch's reference time.

        Returns:
            Subscriptions ordered by ``next_run_at`` then ``id``.
        """
        sql = f"""
            SELECT {_COLUMNS} FROM subscriptions
            WHERE is_active = TRUE
              AND notification_offset_days > 0
              AND next_run_at > %s
              AND next_run_at - make_interval(days => notification_offset_days) <= %s
              AND (last_reminder_at IS NULL
                   OR last_reminder_at < next_run_at - make_interval(days => notification_offset_days))
            ORDER BY next_run_at ASC, id ASC;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (now, now))
                return [self._row_to_subscription(r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    def get(self, subscription_id: str) -> Optional[Subscription]:
        """Fetch a single subscription by ID, regardless of owner."""
        sql = f"SELECT {_COLUMNS} FROM subscriptions WHERE id = %s::uuid;"
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (subscription_id,))
                row = cur.fetchone()
                return self._row_to_subscription(row) if row else None
        finally:
            release_connection(conn)

    def get_for_owner(self, subscription_id: str, owner_id: str) -> Optional[Subscription]:
        """Fetch a single subscription by ID, scoped to its owner."""
        sql = f"SELECT {_COLUMNS} FROM subscriptions WHERE id = %s::uuid AND owner_id = %s;"
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (subscription_id, owner_id))
                row = cur.fetchone()
                return self._row_to_subscription(row) if row else None
        finally:
            release_connection(conn)

    def get_all(self, owner_id: str, active_only: bool = True) -> list[Subscription]:
        """
        Get all subscriptions for an owner.

        Args:
            owner_id: Owning principal.
            active_only: If True, only return active subscriptions.

        Returns:
            List of Subscription objects ordered by next charge.
        """
        sql = f"SELECT {_COLUMNS} FROM subscriptions WHERE owner_id = %s"
        if active_only:
            sql += " AND is_active = TRUE"
        sql += " ORDER BY next_run_at ASC;"

        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (owner_id,))
                return [self._row_to_subscription(r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    # ── UPDATE ────────────────────────────────────────────

    def save(self, sub: Subscription) -> Subscription:
        """
        Upsert the full record in one statement.

        Args:
            sub: The subscription with every field already computed.

        Returns:
            The same object with ``updated_at`` refreshed.
        """
        if sub.id is None:
            return self.add(sub)

        sql = """
            INSERT INTO subscriptions
                (owner_id, name, amount, currency, cadence, start_date, next_run_at,
                 last_run_at, notification_offset_days, last_reminder_at, is_active,
                 expense_category_id, id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::uuid)
            ON CONFLICT (id) DO UPDATE SET
                owner_id = EXCLUDED.owner_id,
                name = EXCLUDED.name,
                amount = EXCLUDED.amount,
                currency = EXCLUDED.currency,
                cadence = EXCLUDED.cadence,
                start_date = EXCLUDED.start_date,
                next_run_at = EXCLUDED.next_run_at,
                last_run_at = EXCLUDED.last_run_at,
                notification_offset_days = EXCLUDED.notification_offset_days,
                last_reminder_at = EXCLUDED.last_reminder_at,
                is_active = EXCLUDED.is_active,
                expense_category_id = EXCLUDED.expense_category_id,
                updated_at = NOW()
            RETURNING created_at, updated_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, self._params(sub) + (sub.id,))
                row = cur.fetchone()
                sub.created_at, sub.updated_at = row[0], row[1]
            conn.commit()
            logger.info(f"Saved subscription '{sub.name}' #{sub.id} (next run {sub.next_run_at})")
            return sub
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to save subscription #{sub.id}: {e}")
            raise
        finally:
            release_connection(conn)

    def update_cycle(self, sub: Subscription) -> bool:
        """
        Write the engine-owned fields of an active subscription.

        Only ``last_run_at``, ``next_run_at`` and ``last_reminder_at`` are
        written, and only while the row exists and is active, so a pause or
        delete that happened meanwhile is never undone.

        Returns:
            True if the row was updated, False if it is gone or inactive.
        """
        sql = """
            UPDATE subscriptions
            SET last_run_at = %s, next_run_at = %s, last_reminder_at = %s,
                updated_at = NOW()
            WHERE id = %s::uuid AND is_active = TRUE
            RETURNING updated_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (sub.last_run_at, sub.next_run_at, sub.last_reminder_at, sub.id))
                row = cur.fetchone()
            conn.commit()
            if row is None:
                logger.warning(f"Subscription #{sub.id} is gone or inactive, cycle not written")
                return False
            sub.updated_at = row[0]
            logger.info(f"Updated cycle of subscription #{sub.id} (next run {sub.next_run_at})")
            return True
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to update cycle of subscription #{sub.id}: {e}")
            raise
        finally:
            release_connection(conn)

    def set_active(self, subscription_id: str, active: bool,
                   owner_id: Optional[str] = None) -> bool:
        """Enable or disable a subscription, optionally scoped to its owner."""
        sql = "UPDATE subscriptions SET is_active = %s, updated_at = NOW() WHERE id = %s::uuid"
        params: list = [active, subscription_id]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)

        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql + ";", params)
                updated = cur.rowcount > 0
            conn.commit()
            return updated
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to set active={active} on subscription #{subscription_id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── DELETE ────────────────────────────────────────────

    def delete(self, subscription_id: str, owner_id: Optional[str] = None) -> bool:
        """Permanently delete a subscription, optionally scoped to its owner."""
        sql = "DELETE FROM subscriptions WHERE id = %s::uuid"
        params: list = [subscription_id]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)

        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql + ";", params)
                deleted = cur.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"Deleted subscription #{subscription_id}")
            return deleted
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to delete subscription #{subscription_id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── HELPERS ───────────────────────────────────────────

    @staticmethod
    def _params(sub: Subscription) -> tuple:
        return (
            sub.owner_id, sub.name, sub.amount, sub.currency, sub.cadence.value,
            sub.start_date, sub.next_run_at, sub.last_run_at,
            sub.notification_offset_days, sub.last_reminder_at, sub.is_active,
            sub.expense_category_id,
        )

    @staticmethod
    def _row_to_subscription(row: tuple) -> Subscription:
        """Convert a database row tuple to a Subscription domain object."""
        return Subscription(
            id=row[0],
            owner_id=row[1],
            name=row[2],
            amount=row[3],
            currency=row[4],
            cadence=row[5],
            start_date=row[6],
            next_run_at=row[7],
            last_run_at=row[8],
            notification_offset_days=row[9],
            last_reminder_at=row[10],
            is_active=row[11],
            expense_category_id=row[12],
            created_at=row[13],
            updated_at=row[14],
        )
