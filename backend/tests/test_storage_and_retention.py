from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from labstore import LabStorage, SQLiteLabDB, StoreUnavailable
from labstore.time_utils import parse_iso, to_iso, utc_now


def _record(storage: LabStorage, user_id: str, count: int, pending: str = "none") -> None:
    for index in range(count):
        storage.conversation.record_turn(
            user_id=user_id,
            user_text=f"message {index}",
            assistant_text=f"reply {index}",
            pending_action=pending,
            booking_hint=None,
        )


def test_record_turn_persists_pair_and_session(storage):
    _record(storage, "user-a", 2)
    turns = storage.conversation.list_turns("user-a")
    assert [(turn["role"], turn["text"]) for turn in turns] == [
        ("user", "message 0"),
        ("assistant", "reply 0"),
        ("user", "message 1"),
        ("assistant", "reply 1"),
    ]
    assert storage.conversation.get_session("user-a")["pending_action"] == "none"
    assert [turn["text"] for turn in storage.conversation.list_turns("user-a", limit=2)] == ["message 1", "reply 1"]


def test_retention_caps_to_whole_pairs(tmp_path):
    storage = LabStorage(SQLiteLabDB(str(tmp_path / "cap.sqlite")), max_turns=5)
    _record(storage, "user-a", 4)
    result = storage.apply_retention("user-a")
    assert result["overflow_turn_count"] == 4
    turns = storage.conversation.list_turns("user-a")
    assert [turn["text"] for turn in turns] == ["message 2", "reply 2", "message 3", "reply 3"]


def test_retention_drops_expired_turns(storage):
    _record(storage, "user-a", 3)
    old = to_iso(utc_now() - timedelta(days=45))
    with storage.db.connection() as conn:
        conn.execute(
            "UPDATE conversation_turns SET created_at = ? WHERE text IN ('message 0', 'reply 0')",
            (old,),
        )
    result = storage.apply_retention("user-a")
    assert result["expired_turn_count"] == 2
    assert storage.conversation.count_turns("user-a") == 4


def test_retention_skips_sessions_waiting_for_a_pin(tmp_path):
    storage = LabStorage(SQLiteLabDB(str(tmp_path / "pending.sqlite")), max_turns=2)
    _record(storage, "user-a", 3, pending="awaiting_pin")
    assert storage.apply_retention("user-a")["skipped"] is True
    assert storage.conversation.count_turns("user-a") == 6
    assert storage.apply_retention("nobody")["skipped"] is True


def test_idle_sweep_only_trims_sessions_between_conversations(tmp_path):
    storage = LabStorage(SQLiteLabDB(str(tmp_path / "sweep.sqlite")), max_turns=2)
    _record(storage, "idle-user", 3)
    _record(storage, "pin-user", 3, pending="awaiting_pin")

    assert storage.apply_retention_to_idle_sessions()["session_count"] == 0
    assert storage.conversation.count_turns("idle-user") == 6

    later = utc_now() + timedelta(hours=2)
    assert storage.conversation.list_idle_user_ids(to_iso(later)) == ["idle-user"]
    result = storage.apply_retention_to_idle_sessions(idle_for=timedelta(minutes=30), now=later)
    assert result == {"session_count": 1, "expired_turn_count": 0, "overflow_turn_count": 4}
    assert storage.conversation.count_turns("idle-user") == 2
    assert storage.conversation.count_turns("pin-user") == 6


def test_audit_trail_is_ordered(storage):
    storage.audit.append(event_type="booking_created", user_id="user-a", booking_id="BK-1", details={"test_code": "CBC"})
    storage.audit.append(event_type="report_published", user_id="user-a", booking_id="BK-1", details={})
    events = storage.audit.list_for_booking("BK-1")
    assert [event["event_type"] for event in events] == ["booking_created", "report_published"]
    assert events[0]["details"] == {"test_code": "CBC"}


def test_booking_reads_never_expose_pin_columns(storage):
    row = storage.bookings.insert(
        booking_id="BK-0000ABCD",
        user_id="user-a",
        test_code="CBC",
        scheduled_at=to_iso(utc_now() + timedelta(days=1)),
        address=None,
        pin_salt="salt",
        pin_digest="digest",
        idempotency_key=None,
    )
    assert "pin_salt" not in row and "pin_digest" not in row
    assert storage.bookings.get_pin_secret("BK-0000ABCD") == ("salt", "digest")
    assert storage.bookings.update_status("BK-0000ABCD", "pending", "confirmed") is True
    assert storage.bookings.update_status("BK-0000ABCD", "pending", "cancelled") is False


def test_integrity_errors_propagate_and_other_errors_become_unavailable(storage):
    with pytest.raises(sqlite3.IntegrityError):
        with storage.db.connection() as conn:
            conn.execute("INSERT INTO reports (booking_id, test_code, summary, published_at) VALUES ('X', 'CBC', 's', 'now')")
            conn.execute("INSERT INTO reports (booking_id, test_code, summary, published_at) VALUES ('X', 'CBC', 's', 'now')")
    assert storage.reports.get("X") is None

    with pytest.raises(StoreUnavailable):
        with storage.db.connection() as conn:
            conn.execute("SELECT * FROM missing_table")


def test_timestamps_sort_lexically():
    earlier = utc_now()
    later = earlier + timedelta(microseconds=500_000)
    assert to_iso(earlier) <= to_iso(later)
    assert to_iso(earlier).endswith("Z")
    assert parse_iso(to_iso(earlier)) == earlier.replace(microsecond=0)
    assert parse_iso("not a date") is None
