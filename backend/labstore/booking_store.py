from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteLabDB
from .time_utils import to_iso, utc_now

_PUBLIC_COLUMNS = "id, user_id, test_code, scheduled_at, address, status, created_at, updated_at"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class BookingStore:
    def __init__(self, db: SQLiteLabDB) -> None:
        self._db = db

    def insert(
        self,
        *,
        booking_id: str,
        user_id: str,
        test_code: str,
        scheduled_at: str,
        address: str | None,
        pin_salt: str,
        pin_digest: str,
        idempotency_key: str | None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO bookings (
                  id, user_id, test_code, scheduled_at, address, status,
                  pin_salt, pin_digest, idempotency_key, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?)
                """,
                (
                    booking_id,
                    user_id,
                    test_code,
                    scheduled_at,
                    address,
                    pin_salt,
                    pin_digest,
                    idempotency_key,
                    now,
                    now,
                ),
            )
            row = conn.execute(f"SELECT {_PUBLIC_COLUMNS} FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return dict(row)

    def get(self, booking_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(f"SELECT {_PUBLIC_COLUMNS} FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return dict(row) if row else None

    def get_pin_secret(self, booking_id: str) -> tuple[str, str] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT pin_salt, pin_digest FROM bookings WHERE id = ?",
                (booking_id,),
            ).fetchone()
        if not row:
            return None
        return row["pin_salt"], row["pin_digest"]

    def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_PUBLIC_COLUMNS}
                FROM bookings
                WHERE user_id = ? AND idempotency_key = ?
                LIMIT 1
                """,
                (user_id, idempotency_key),
            ).fetchone()
        return dict(row) if row else None

    def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            return [
                dict(row)
                for row in conn.execute(
                    f"""
                    SELECT {_PUBLIC_COLUMNS}
                    FROM bookings
                    WHERE user_id = ?
                    ORDER BY scheduled_at ASC, created_at ASC
                    """,
                    (user_id,),
                ).fetchall()
            ]

    def update_status(self, booking_id: str, expected: str, status: str) -> bool:
        """Compare-and-set on status; False when another writer moved it first."""
        with self._db.connection() as conn:
            updated = conn.execute(
                """
                UPDATE bookings
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (status, to_iso(utc_now()), booking_id, expected),
            ).rowcount
        return updated == 1


class ReportStore:
    def __init__(self, db: SQLiteLabDB) -> None:
        self._db = db

    def put(
        self,
        *,
        booking_id: str,
        test_code: str,
        summary: str,
        values: dict[str, Any] | None = None,
        url: str | None = None,
    ) -> dict[str, Any]:
        published_at = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO reports (booking_id, test_code, summary, values_json, url, published_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(booking_id) DO UPDATE SET
                  summary = excluded.summary,
                  values_json = excluded.values_json,
                  url = excluded.url,
                  published_at = excluded.published_at
                """,
                (booking_id, test_code, summary, _json_dumps(values) if values is not None else None, url, published_at),
            )
        return self.get(booking_id) or {}

    def get(self, booking_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT booking_id, test_code, summary, values_json, url, published_at
                FROM reports
                WHERE booking_id = ?
                """,
                (booking_id,),
            ).fetchone()
        if not row:
            return None
        record = dict(row)
        values_json = record.pop("values_json")
        record["values"] = json.loads(values_json) if values_json else None
        return record


class AuditStore:
    def __init__(self, db: SQLiteLabDB) -> None:
        self._db = db

    def append(
        self,
        *,
        event_type: str,
        user_id: str | None,
        booking_id: str | None,
        details: dict[str, Any],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_events (id, event_type, user_id, booking_id, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, event_type, user_id, booking_id, _json_dumps(details), to_iso(utc_now())),
            )

    def list_for_booking(self, booking_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT event_type, user_id, booking_id, details_json, created_at
                FROM audit_events
                WHERE booking_id = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (booking_id, max(1, limit)),
            ).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "user_id": row["user_id"],
                "booking_id": row["booking_id"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

