"""
Waste Reminder Bot — Subscription Store.

Users, their category subscriptions and the pickup events persist in
SQLite. Invariants are enforced here rather than trusted to callers:
location ids are validated on the way in, subscriptions cannot outlive
their user, and every write runs in its own IMMEDIATE transaction so
concurrent handlers cannot interleave.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path

from src.core.errors import InvalidIdentifier, NotFound, StoreUnavailable
from src.core.validator import (
    LocationId,
    ensure_location_id,
    validate_alias,
    validate_notify_time,
)
from src.data.models import PickupEvent, Subscription, User

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """SQLite-backed storage for users, subscriptions and pickup events."""

    def __init__(self, db_path: str | None = None, timeout: float | None = None) -> None:
        if db_path is None or timeout is None:
            from src.config import settings
            db_path = db_path if db_path is not None else settings.DATABASE_PATH
            timeout = timeout if timeout is not None else settings.DB_TIMEOUT_SECONDS

        self._db_path = db_path
        self._timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; writers take the lock up front.

        Busy and I/O failures surface as StoreUnavailable after at most
        `timeout` seconds of waiting on the lock.
        """
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"cannot open {self._db_path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailable(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create the tables and indexes if they don't exist."""
        with self._transaction(write=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id               INTEGER PRIMARY KEY,
                    location_id      TEXT NOT NULL,
                    notify_time      TEXT NOT NULL DEFAULT '18:00',
                    created_at       TEXT NOT NULL,
                    last_notified_on TEXT,
                    alias            TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_id    INTEGER NOT NULL,
                    waste_type TEXT    NOT NULL,
                    PRIMARY KEY (user_id, waste_type),
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pickup_events (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    location_id TEXT NOT NULL,
                    date        TEXT NOT NULL,
                    waste_type  TEXT NOT NULL,
                    UNIQUE (location_id, date, waste_type)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_location_id ON users(location_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_notify_time ON users(notify_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pickup_events_date ON pickup_events(date)"
            )
        logger.debug("Subscription store initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            location_id=row["location_id"],
            notify_time=row["notify_time"],
            created_at=row["created_at"],
            last_notified_on=row["last_notified_on"],
            alias=row["alias"],
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> PickupEvent:
        return PickupEvent(
            date=date.fromisoformat(row["date"]),
            waste_type=row["waste_type"],
            location_id=row["location_id"],
        )

    @staticmethod
    def _fetch_user(conn: sqlite3.Connection, user_id: int) -> User | None:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return SubscriptionStore._row_to_user(row)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def upsert_user(
        self,
        user_id: int,
        location_id: LocationId | str,
        notify_time: str | None = None,
        default_categories: Iterable[str] = (),
        alias: str | None = None,
    ) -> User:
        """Create a user or overwrite their location (and time, if given).

        `default_categories` are subscribed only when the row is created.
        Moving to a different location clears the last-notified marker and
        replaces the alias; staying keeps the old alias unless a new one
        is given.

        Raises:
            ValidationError: if the location id, time or alias is invalid.
        """
        location = ensure_location_id(location_id)
        if notify_time is not None:
            notify_time = validate_notify_time(notify_time)
        if alias is not None:
            alias = validate_alias(alias)

        with self._transaction(write=True) as conn:
            existing = self._fetch_user(conn, user_id)
            if existing is None:
                if notify_time is None:
                    from src.config import settings
                    notify_time = settings.DEFAULT_NOTIFY_TIME
                conn.execute(
                    "INSERT INTO users (id, location_id, notify_time, created_at, alias) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, location.value, notify_time, datetime.now().isoformat(), alias),
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO subscriptions (user_id, waste_type) VALUES (?, ?)",
                    [(user_id, category) for category in default_categories],
                )
                logger.info("User registered: %d at location %s", user_id, location)
            else:
                moved = existing.location_id != location.value
                if not moved and alias is None:
                    alias = existing.alias
                conn.execute(
                    """
                    UPDATE users
                       SET location_id = ?,
                           alias = ?,
                           notify_time = COALESCE(?, notify_time),
                           last_notified_on = CASE WHEN ? THEN NULL ELSE last_notified_on END
                     WHERE id = ?
                    """,
                    (location.value, alias, notify_time, int(moved), user_id),
                )
                logger.info("User %d updated (location %s)", user_id, location)
            user = self._fetch_user(conn, user_id)
        return user

    def get_user(self, user_id: int) -> User | None:
        """Fetch a user by chat id."""
        with self._transaction() as conn:
            return self._fetch_user(conn, user_id)

    def update_notify_time(self, user_id: int, notify_time: str) -> User:
        """Change a user's reminder time.

        Raises:
            ValidationError: if the time is not HH:MM.
            NotFound: if the user is not registered.
        """
        notify_time = validate_notify_time(notify_time)
        with self._transaction(write=True) as conn:
            cursor = conn.execute(
                "UPDATE users SET notify_time = ? WHERE id = ?", (notify_time, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"User {user_id} not found")
            user = self._fetch_user(conn, user_id)
        logger.info("User %d notify time set to %s", user_id, notify_time)
        return user

    def update_alias(self, user_id: int, alias: str) -> User:
        """Rename a user's location.

        Raises:
            ValidationError: if the alias is empty or too long.
            NotFound: if the user is not registered.
        """
        alias = validate_alias(alias)
        with self._transaction(write=True) as conn:
            cursor = conn.execute("UPDATE users SET alias = ? WHERE id = ?", (alias, user_id))
            if cursor.rowcount == 0:
                raise NotFound(f"User {user_id} not found")
            user = self._fetch_user(conn, user_id)
        logger.info("User %d location renamed to %r", user_id, alias)
        return user

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and all of their subscriptions. No-op if absent."""
        with self._transaction(write=True) as conn:
            conn.execute("DELETE FROM subscriptions WHERE user_id = ?", (user_id,))
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("User %d deleted", user_id)
        return deleted

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def add_subscription(self, user_id: int, category: str, require_user: bool = False) -> bool:
        """Subscribe a user to a category. Idempotent.

        Returns True if a new row was written. A missing user raises
        NotFound when `require_user` is set and is a silent no-op otherwise.
        """
        with self._transaction(write=True) as conn:
            exists = conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
            if exists is None:
                if require_user:
                    raise NotFound(f"User {user_id} not found")
                return False
            cursor = conn.execute(
                "INSERT OR IGNORE INTO subscriptions (user_id, waste_type) VALUES (?, ?)",
                (user_id, category),
            )
        return cursor.rowcount > 0

    def remove_subscription(self, user_id: int, category: str) -> bool:
        """Unsubscribe a user from a category. Idempotent."""
        with self._transaction(write=True) as conn:
            cursor = conn.execute(
                "DELETE FROM subscriptions WHERE user_id = ? AND waste_type = ?",
                (user_id, category),
            )
        return cursor.rowcount > 0

    def get_subscriptions(self, user_id: int) -> list[str]:
        """Return the user's categories, sorted by name."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT waste_type FROM subscriptions WHERE user_id = ? ORDER BY waste_type",
                (user_id,),
            ).fetchall()
        return [r["waste_type"] for r in rows]

    def list_subscriptions_by_location(
        self,
        location_id: LocationId | str,
        due_by: str | None = None,
        pending_for: date | None = None,
    ) -> set[Subscription]:
        """Return every (user, category) pair registered at a location.

        If `due_by` ("HH:MM") is given, only users whose reminder time is
        at or before it are included. If `pending_for` is given, users
        already reminded about that date (or a later one) are left out.
        """
        location = ensure_location_id(location_id)
        query = """
            SELECT s.user_id, s.waste_type
              FROM users u
              JOIN subscriptions s ON s.user_id = u.id
             WHERE u.location_id = ?
        """
        params: list = [location.value]
        if due_by is not None:
            query += " AND u.notify_time <= ?"
            params.append(validate_notify_time(due_by))
        if pending_for is not None:
            query += " AND (u.last_notified_on IS NULL OR u.last_notified_on < ?)"
            params.append(pending_for.isoformat())

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return {Subscription(user_id=r["user_id"], waste_type=r["waste_type"]) for r in rows}

    # ------------------------------------------------------------------
    # Pickup events
    # ------------------------------------------------------------------

    def events_on(self, target_date: date) -> list[PickupEvent]:
        """Return all pickup events on a date, ordered by location and category."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT location_id, date, waste_type FROM pickup_events
                 WHERE date = ?
                 ORDER BY location_id, waste_type
                """,
                (target_date.isoformat(),),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def replace_events(
        self,
        location_id: LocationId,
        events: Iterable[PickupEvent],
        from_date: date,
    ) -> int:
        """Replace a location's events from `from_date` on with `events`.

        Events dated before `from_date` or belonging to another location are
        skipped. Returns the number of rows inserted.
        """
        location = ensure_location_id(location_id)
        rows = sorted({
            (location.value, ev.date.isoformat(), ev.waste_type)
            for ev in events
            if ev.date >= from_date and ev.location_id == location.value
        })
        with self._transaction(write=True) as conn:
            conn.execute(
                "DELETE FROM pickup_events WHERE location_id = ? AND date >= ?",
                (location.value, from_date.isoformat()),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO pickup_events (location_id, date, waste_type) VALUES (?, ?, ?)",
                rows,
            )
        logger.info("Stored %d pickup events for location %s", len(rows), location)
        return len(rows)

    def distinct_locations(self) -> list[LocationId]:
        """Return every location at least one user is registered at."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT DISTINCT location_id FROM users ORDER BY location_id"
            ).fetchall()
        locations: list[LocationId] = []
        for r in rows:
            try:
                locations.append(ensure_location_id(r["location_id"]))
            except InvalidIdentifier:
                logger.warning("Skipping invalid stored location id %r", r["location_id"])
        return locations

    # ------------------------------------------------------------------
    # Last-notified marker
    # ------------------------------------------------------------------

    def claim_notification(self, user_id: int, target_date: date) -> bool:
        """Atomically mark a user as reminded for `target_date`.

        Returns False if the user is gone or was already reminded for this
        date (or a later one).
        """
        day = target_date.isoformat()
        with self._transaction(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE users SET last_notified_on = ?
                 WHERE id = ? AND (last_notified_on IS NULL OR last_notified_on < ?)
                """,
                (day, user_id, day),
            )
        return cursor.rowcount > 0

    def release_notification(self, user_id: int, target_date: date) -> None:
        """Undo a claim after a failed send so the next tick retries."""
        with self._transaction(write=True) as conn:
            conn.execute(
                "UPDATE users SET last_notified_on = NULL WHERE id = ? AND last_notified_on = ?",
                (user_id, target_date.isoformat()),
            )

