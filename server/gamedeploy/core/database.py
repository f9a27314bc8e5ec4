"""SQLite persistence layer.

Thin wrapper over the DB-API connection, NOT an ORM: it owns one connection,
serialises access to it with a lock and provides a scoped transaction.

Usage:
    db = Database("data/deployer.db")
    db.migrate()

    with db.transaction() as cursor:
        cursor.execute("INSERT INTO settings (key, value) VALUES (?, ?)", ("k", "v"))

    row = db.fetch_one("SELECT value FROM settings WHERE key = ?", ("k",))
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from .errors import PersistenceError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 5.0

SCHEMA_STATEMENTS = (
    # settings: generic key/value configuration store
    """CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )""",
    # deployments: high-level deployment records
    """CREATE TABLE IF NOT EXISTS deployments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        game TEXT NOT NULL,
        type TEXT NOT NULL,
        request_json TEXT NOT NULL,
        result_json TEXT,
        vmid INTEGER,
        ip_address TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    # deployment_logs: append-only audit trail
    """CREATE TABLE IF NOT EXISTS deployment_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        deployment_id INTEGER NOT NULL,
        ts TEXT NOT NULL,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
    )""",
    # jobs: internal work queue
    """CREATE TABLE IF NOT EXISTS jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        status TEXT NOT NULL,
        deployment_id INTEGER,
        run_after TEXT NOT NULL,
        last_error TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE SET NULL
    )""",
    # address_reservations: one row per automatically allocated address
    """CREATE TABLE IF NOT EXISTS address_reservations (
        ip_address TEXT PRIMARY KEY,
        deployment_id INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(deployment_id) REFERENCES deployments(id) ON DELETE CASCADE
    )""",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status_run_after ON jobs(status, run_after, id)",
    "CREATE INDEX IF NOT EXISTS idx_deployment_logs_deployment ON deployment_logs(deployment_id, id)",
)


def utc_now() -> datetime:
    """Current UTC time, centralised so tests can patch it."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialise a datetime so that string order matches chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Database:
    """A single SQLite connection shared by the API path and the worker."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path,
            timeout=BUSY_TIMEOUT_SECONDS,
            check_same_thread=False,
            isolation_level=None,  # explicit BEGIN/COMMIT in transaction()
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def migrate(self) -> None:
        """Apply all schema objects. Idempotent."""
        with self.transaction() as cursor:
            for index, statement in enumerate(SCHEMA_STATEMENTS):
                try:
                    cursor.execute(statement)
                except sqlite3.Error as exc:
                    raise PersistenceError(f"migration {index} failed: {exc}") from exc
        logger.info("Database schema ready at %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor inside a transaction.

        On success: commits. On any exception: rolls back and re-raises.
        The connection lock is released on every exit path.
        """
        with self._lock:
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def execute(self, sql: str, params: Sequence[Any] = ()) -> Tuple[int, Optional[int]]:
        """Run a single write statement; return (affected rows, last row id)."""
        try:
            with self.transaction() as cursor:
                cursor.execute(sql, params)
                return cursor.rowcount, cursor.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
