from __future__ import annotations

import sqlite3
from typing import Any

from .time_utils import to_iso, utc_now


class AttemptStore:
    """Report-access attempt rows, read and written inside the caller's transaction."""

    def get(self, conn: sqlite3.Connection, booking_id: str) -> dict[str, Any] | None:
        row = conn.execute(
            """
            SELECT booking_id, attempt_count, locked_until, updated_at
            FROM report_access_attempts
            WHERE booking_id = ?
            """,
            (booking_id,),
        ).fetchone()
        return dict(row) if row else None

    def save(
        self,
        conn: sqlite3.Connection,
        *,
        booking_id: str,
        attempt_count: int,
        locked_until: str | None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO report_access_attempts (booking_id, attempt_count, locked_until, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(booking_id) DO UPDATE SET
              attempt_count = excluded.attempt_count,
              locked_until = excluded.locked_until,
              updated_at = excluded.updated_at
            """,
            (booking_id, attempt_count, locked_until, to_iso(utc_now())),
        )

    def clear(self, conn: sqlite3.Connection, booking_id: str) -> None:
        conn.execute("DELETE FROM report_access_attempts WHERE booking_id = ?", (booking_id,))
