from __future__ import annotations

from typing import Any

from .database import SQLiteLabDB
from .time_utils import to_iso, utc_now


class ConversationStore:
    def __init__(self, db: SQLiteLabDB) -> None:
        self._db = db

    def get_session(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, pending_action, booking_hint, created_at, updated_at
                FROM conversation_sessions
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def record_turn(
        self,
        *,
        user_id: str,
        user_text: str,
        assistant_text: str,
        pending_action: str,
        booking_hint: str | None,
    ) -> None:
        """Persist one inbound/outbound pair and the resulting session state together."""
        now = to_iso(utc_now())
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversation_sessions (user_id, pending_action, booking_hint, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  pending_action = excluded.pending_action,
                  booking_hint = excluded.booking_hint,
                  updated_at = excluded.updated_at
                """,
                (user_id, pending_action, booking_hint, now, now),
            )
            conn.executemany(
                """
                INSERT INTO conversation_turns (user_id, role, text, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (user_id, "user", user_text, now),
                    (user_id, "assistant", assistant_text, now),
                ],
            )

    def list_turns(self, user_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT seq, role, text, created_at
                FROM conversation_turns
                WHERE user_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (user_id, -1 if limit is None else max(1, limit)),
            ).fetchall()
        return [dict(row) for row in reversed(rows)]

    def count_turns(self, user_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM conversation_turns WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["total"])

    def list_idle_user_ids(self, idle_before: str) -> list[str]:
        """Users with no pending action whose last turn is older than ``idle_before``."""
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id
                FROM conversation_sessions
                WHERE pending_action = 'none'
                  AND updated_at < ?
                ORDER BY user_id ASC
                """,
                (idle_before,),
            ).fetchall()
        return [row["user_id"] for row in rows]
