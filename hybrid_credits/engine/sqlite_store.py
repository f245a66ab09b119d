"""Shared SQLite plumbing for on-device persistence.

Both the balance cache and the identity store live in one SQLite file on
the device. SQLite is used because:
- Single-file database, survives process restarts and app updates
- WAL mode handles concurrent reads and serialized writes
- No external dependencies

Concurrency Handling:
    Read operations use DEFERRED isolation (default), allowing concurrent
    readers via WAL mode. Write operations use IMMEDIATE isolation to
    prevent deadlocks in read-then-write patterns.

    Write operations also use retry logic with exponential backoff to handle
    transient SQLite lock errors. The retry parameters are configurable:
    - timeouts.state_store_retry_max: Max retry attempts (default: 5)
    - timeouts.state_store_retry_base: Base delay in seconds (default: 0.1)
    - timeouts.state_store_retry_max_delay: Max delay cap (default: 5.0)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from ..config import get_validated_config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _with_retry(
    func: Callable[[], T],
    max_retries: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
) -> T:
    """Execute a function with retry logic for SQLite lock errors.

    Args:
        func: Callable to execute
        max_retries: Maximum retry attempts (uses config default if None)
        base_delay: Initial backoff delay in seconds (uses config default if None)
        max_delay: Maximum backoff delay cap (uses config default if None)

    Returns:
        The return value of func

    Raises:
        sqlite3.OperationalError: If func raises a non-lock error or
            exceeds max_retries with lock errors
    """
    config = get_validated_config()
    if max_retries is None:
        max_retries = config.timeouts.state_store_retry_max
    if base_delay is None:
        base_delay = config.timeouts.state_store_retry_base
    if max_delay is None:
        max_delay = config.timeouts.state_store_retry_max_delay

    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except sqlite3.OperationalError as e:
            # Only retry on "database is locked" errors
            if "database is locked" not in str(e):
                raise

            if attempt >= max_retries:
                logger.warning(
                    "SQLite lock error after %d attempts, giving up: %s",
                    attempt,
                    e,
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.debug(
                "SQLite lock error (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_retries,
                delay,
                e,
            )
            time.sleep(delay)


class SQLiteStore:
    """Base class for a table in the on-device SQLite file.

    Subclasses set SCHEMA to their CREATE TABLE statement.

    Thread safety: SQLite connections are NOT thread-safe by default, so
    every operation opens and closes its own connection.
    """

    SCHEMA: str = ""

    def __init__(self, db_path: Path | str, lock_timeout: float | None = None) -> None:
        """Initialize the store, creating the database file if needed.

        Args:
            db_path: Path to SQLite database file
            lock_timeout: SQLite busy timeout (uses config default if None)
        """
        self.db_path = Path(db_path)
        if lock_timeout is None:
            lock_timeout = get_validated_config().timeouts.state_store_lock
        self.lock_timeout = lock_timeout
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Create database and table if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect_write() as conn:
            conn.execute(self.SCHEMA)
            conn.commit()

    def _open(self, isolation_level: str | None = "") -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.lock_timeout,
            isolation_level=isolation_level,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connect_read(self) -> Iterator[sqlite3.Connection]:
        """Read connection, DEFERRED isolation (no lock until first write)."""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _connect_write(self) -> Iterator[sqlite3.Connection]:
        """Write connection, IMMEDIATE isolation (write lock taken early)."""
        conn = self._open("IMMEDIATE")
        try:
            yield conn
        finally:
            conn.close()
