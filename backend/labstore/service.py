from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from .attempt_store import AttemptStore
from .booking_store import AuditStore, BookingStore, ReportStore
from .conversation_store import ConversationStore
from .database import SQLiteLabDB
from .retention import ConversationRetention
from .time_utils import to_iso, utc_now


class LabStorage:
    def __init__(
        self,
        db: SQLiteLabDB,
        *,
        retention_days: int = 30,
        max_turns: int = 500,
    ) -> None:
        self.db = db
        self.bookings = BookingStore(db)
        self.reports = ReportStore(db)
        self.audit = AuditStore(db)
        self.conversation = ConversationStore(db)
        self.attempts = AttemptStore()
        self.retention = ConversationRetention(retention_days=retention_days, max_turns=max_turns)

    def apply_retention(self, user_id: str, now: datetime | None = None) -> dict[str, Any]:
        with self.db.connection() as conn:
            result = self.retention.apply(conn, user_id, now)
        return {
            "expired_turn_count": result.expired_turn_count,
            "overflow_turn_count": result.overflow_turn_count,
            "skipped": result.skipped,
        }

    def apply_retention_to_idle_sessions(
        self,
        *,
        idle_for: timedelta = timedelta(minutes=30),
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Trim every session that has been idle for at least ``idle_for``.

        Sessions waiting for a PIN or active more recently are left alone, so
        history is only trimmed between conversations.
        """
        current = now or utc_now()
        user_ids = self.conversation.list_idle_user_ids(to_iso(current - idle_for))
        expired = 0
        overflow = 0
        for user_id in user_ids:
            result = self.apply_retention(user_id, current)
            expired += result["expired_turn_count"]
            overflow += result["overflow_turn_count"]
        return {
            "session_count": len(user_ids),
            "expired_turn_count": expired,
            "overflow_turn_count": overflow,
        }
