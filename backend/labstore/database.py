from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("healthlab.store")


class StoreUnavailable(Exception):
    """Raised when the backing database cannot serve a request."""


class SQLiteLabDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Database error on %s: %s", self._path.name, exc)
            raise StoreUnavailable(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection holding the write lock from the first statement on."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  test_code TEXT NOT NULL,
                  scheduled_at TEXT NOT NULL,
                  address TEXT,
                  status TEXT NOT NULL DEFAULT 'pending',
                  pin_salt TEXT NOT NULL,
                  pin_digest TEXT NOT NULL,
                  idempotency_key TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, idempotency_key)
                );

                CREATE TABLE IF NOT EXISTS conversation_sessions (
                  user_id TEXT PRIMARY KEY,
                  pending_action TEXT NOT NULL DEFAULT 'none',
                  booking_hint TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversation_turns (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  role TEXT NOT NULL,
                  text TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY(user_id) REFERENCES conversation_sessions(user_id)
                );

                CREATE TABLE IF NOT EXISTS report_access_attempts (
                  booking_id TEXT PRIMARY KEY,
                  attempt_count INTEGER NOT NULL DEFAULT 0,
                  locked_until TEXT,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reports (
                  booking_id TEXT PRIMARY KEY,
                  test_code TEXT NOT NULL,
                  summary TEXT NOT NULL,
                  values_json TEXT,
                  url TEXT,
                  published_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                  id TEXT PRIMARY KEY,
                  event_type TEXT NOT NULL,
                  user_id TEXT,
                  booking_id TEXT,
                  details_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_bookings_user_scheduled
                  ON bookings(user_id, scheduled_at);
                CREATE INDEX IF NOT EXISTS idx_turns_user_seq
                  ON conversation_turns(user_id, seq);
                CREATE INDEX IF NOT EXISTS idx_audit_booking_created
                  ON audit_events(booking_id, created_at);
                """
            )
