from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

from .time_utils import to_iso, utc_now


@dataclass
class RetentionResult:
    expired_turn_count: int
    overflow_turn_count: int
    skipped: bool = False


class ConversationRetention:
    """Trims old turns for a user whose session is between conversations."""

    def __init__(self, retention_days: int = 30, max_turns: int = 500) -> None:
        self.retention_days = max(1, retention_days)
        self.max_turns = max(2, max_turns)

    def apply(self, conn: sqlite3.Connection, user_id: str, now: datetime | None = None) -> RetentionResult:
        session = conn.execute(
            "SELECT pending_action FROM conversation_sessions WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if session is None:
            return RetentionResult(0, 0, skipped=True)
        if session["pending_action"] != "none":
            return RetentionResult(0, 0, skipped=True)

        cutoff = to_iso((now or utc_now()) - timedelta(days=self.retention_days))
        expired = conn.execute(
            """
            DELETE FROM conversation_turns
            WHERE user_id = ?
              AND created_at < ?
            """,
            (user_id, cutoff),
        ).rowcount

        # Keep whole inbound/outbound pairs when capping.
        keep = self.max_turns - (self.max_turns % 2)
        overflow = conn.execute(
            """
            DELETE FROM conversation_turns
            WHERE user_id = ?
              AND seq NOT IN (
                SELECT seq FROM conversation_turns
                WHERE user_id = ?
                ORDER BY seq DESC
                LIMIT ?
              )
            """,
            (user_id, user_id, keep),
        ).rowcount

        return RetentionResult(expired_turn_count=expired, overflow_turn_count=overflow)
