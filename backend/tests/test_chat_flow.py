from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from healthlab_core import (
    BookingLedger,
    Catalog,
    ConversationOrchestrator,
    ReportAccessGate,
    SymptomMatcher,
    ValidationError,
)
from healthlab_core.intents import looks_like_pin_entry
from healthlab_scorers import KeywordSymptomScorer
from labstore import LabStorage, SQLiteLabDB, StoreUnavailable
from labstore.time_utils import to_iso, utc_now


def _chat(client, text: str, user_id: str = "user-a", **extra):
    response = client.post("/api/chat", json={"user_id": user_id, "text": text, **extra})
    assert response.status_code == 200, response.text
    return response.json()


def _history(client, user_id: str = "user-a") -> dict:
    response = client.get("/api/chat/history", params={"user_id": user_id})
    assert response.status_code == 200
    return response.json()


def _complete_with_report(client, booking_id: str, summary: str = "All values within range") -> None:
    assert client.patch(f"/api/bookings/{booking_id}", json={"status": "confirmed"}).status_code == 200
    assert client.post(f"/api/bookings/{booking_id}/report", json={"summary": summary}).status_code == 200


@pytest.fixture
def orchestrator(storage, ledger, gate, clock):
    catalog = Catalog.default()
    matcher = SymptomMatcher(catalog, KeywordSymptomScorer())
    yield ConversationOrchestrator(
        storage=storage,
        catalog=catalog,
        matcher=matcher,
        ledger=ledger,
        gate=gate,
        clock=clock,
    )
    matcher.close()


def test_symptoms_get_test_suggestions(client):
    reply = _chat(client, "I have fever and chills")
    assert reply["type"] == "suggestions"
    assert reply["intent"] == "symptom_report"
    codes = [item["code"] for item in reply["tests"]]
    assert "CBC" in codes and "MP" in codes
    assert {"code", "name"}.issubset(reply["tests"][0].keys())

    history = _history(client)
    assert [item["role"] for item in history["items"]] == ["user", "assistant"]
    assert history["items"][0]["text"] == "I have fever and chills"
    assert history["pending_action"] == "none"


def test_greeting_and_fallback_help(client):
    assert "Laura" in _chat(client, "hello")["message"]
    reply = _chat(client, "what is the weather like")
    assert reply["type"] == "text"
    assert "Book CBC tomorrow 10am" in reply["message"]


def test_every_message_appends_two_turns_in_order(client):
    messages = ["hi", "I feel dizzy", "thanks"]
    for text in messages:
        _chat(client, text)
    items = _history(client)["items"]
    assert len(items) == 2 * len(messages)
    assert [item["role"] for item in items] == ["user", "assistant"] * len(messages)
    assert [item["text"] for item in items[::2]] == messages


def test_booking_command_confirms_with_pin(client):
    reply = _chat(client, "Book CBC tomorrow 10am")
    assert reply["type"] == "booking_confirmed"
    assert reply["booking_id"].startswith("BK-")
    assert len(reply["pin"]) == 4
    assert "10:00 AM" in reply["message"]

    bookings = client.get("/api/bookings", params={"user_id": "user-a"}).json()["items"]
    assert [item["id"] for item in bookings] == [reply["booking_id"]]
    assert bookings[0]["scheduled_at"].endswith("T10:00:00Z")

    history = _history(client)["items"]
    assert history[1]["text"] == reply["message"]
    assert f"PIN {reply['pin']}" not in history[1]["text"]


def test_repeated_booking_command_does_not_duplicate(client):
    first = _chat(client, "Book TSH tomorrow 9am")
    second = _chat(client, "Book TSH tomorrow 9am")
    assert second["type"] == "booking_confirmed"
    assert second["booking_id"] == first["booking_id"]
    assert "pin" not in second
    assert "already" in second["message"]


def test_booking_command_errors_are_explained(client):
    unknown = _chat(client, "Book XRAY tomorrow 10am")
    assert unknown["error"] == "unknown_test"
    assert "CBC" in unknown["message"]

    past = _chat(client, "Book CBC 2020-01-01 09:00")
    assert past["error"] == "invalid_schedule"

    undated = _chat(client, "Book CBC")
    assert undated["error"] == "missing_schedule"

    assert client.get("/api/bookings", params={"user_id": "user-a"}).json()["items"] == []


def test_structured_booking_payload(client):
    when = to_iso(utc_now() + timedelta(days=4))
    reply = _chat(
        client,
        "",
        intent="book_test",
        payload={"test_code": "hba1c", "scheduled_at": when, "address": "5 Elm Road"},
    )
    assert reply["type"] == "booking_confirmed"
    booking = client.get("/api/bookings", params={"user_id": "user-a"}).json()["items"][0]
    assert booking["test_code"] == "HBA1C"
    assert booking["address"] == "5 Elm Road"
    assert booking["scheduled_at"] == when


def test_report_request_then_pin_releases_report(client):
    booked = _chat(client, "Book CBC tomorrow 10am")
    _complete_with_report(client, booked["booking_id"], summary="Hemoglobin 14.1 g/dL")

    prompt = _chat(client, "Can I see my report?")
    assert prompt["type"] == "action_required"
    assert prompt["action"] == "verify_pin"
    assert _history(client)["pending_action"] == "awaiting_pin"

    reply = _chat(client, f"{booked['booking_id']} {booked['pin']}")
    assert reply["type"] == "report"
    assert reply["report"]["summary"] == "Hemoglobin 14.1 g/dL"
    assert "Hemoglobin 14.1 g/dL" in reply["message"]

    history = _history(client)
    assert history["pending_action"] == "none"
    pin_turn = history["items"][-2]["text"]
    assert booked["booking_id"] in pin_turn
    assert booked["pin"] not in pin_turn.replace(booked["booking_id"], "")


def test_booking_hint_carries_between_turns(client):
    booked = _chat(client, "Book LFT tomorrow 8am")
    _complete_with_report(client, booked["booking_id"])

    prompt = _chat(client, f"show results for {booked['booking_id']}")
    assert booked["booking_id"] in prompt["message"]
    reply = _chat(client, "", payload={"pin": booked["pin"]})
    assert reply["type"] == "report"


def test_wrong_pin_keeps_waiting_and_cancel_exits(client):
    booked = _chat(client, "Book CRP tomorrow 11am")
    _complete_with_report(client, booked["booking_id"])
    _chat(client, "view my report")

    wrong_pin = f"{(int(booked['pin']) + 1) % 10_000:04d}"
    wrong = _chat(client, f"{booked['booking_id']} {wrong_pin}")
    unknown = _chat(client, "BK-00000000 1234")
    assert wrong["type"] == unknown["type"] == "action_required"
    assert wrong["message"] == unknown["message"]
    assert wrong["error"] == unknown["error"] == "invalid_credentials"
    assert _history(client)["pending_action"] == "awaiting_pin"

    reprompt = _chat(client, "I have a headache")
    assert reprompt["action"] == "verify_pin"

    cancelled = _chat(client, "never mind")
    assert cancelled["type"] == "text"
    assert _history(client)["pending_action"] == "none"


def test_lockout_through_chat_returns_to_idle(client):
    booked = _chat(client, "Book MP tomorrow 10am")
    _complete_with_report(client, booked["booking_id"])
    wrong_pin = f"{(int(booked['pin']) + 1) % 10_000:04d}"

    _chat(client, "check my results")
    for _ in range(5):
        _chat(client, f"{booked['booking_id']} {wrong_pin}")
    locked = _chat(client, f"{booked['booking_id']} {booked['pin']}")
    assert locked["error"] == "locked"
    assert "Too many incorrect attempts" in locked["message"]
    assert _history(client)["pending_action"] == "none"


def test_report_not_ready_through_chat(client):
    booked = _chat(client, "Book B12 tomorrow 10am")
    _chat(client, f"get my report {booked['booking_id']}")
    reply = _chat(client, booked["pin"])
    assert reply["error"] == "report_not_ready"
    assert _history(client)["pending_action"] == "none"


def test_invalid_chat_requests(client):
    assert client.post("/api/chat", json={"user_id": "user-a", "text": "   "}).status_code == 400
    assert client.post("/api/chat", json={"user_id": "", "text": "hi"}).status_code == 400
    assert client.post("/api/chat", json={"text": "hi"}).status_code == 422


def test_store_failure_leaves_conversation_unchanged(client, backend_module, monkeypatch):
    _chat(client, "hello")

    def _unavailable(**kwargs):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(backend_module.container.storage.conversation, "record_turn", _unavailable)
    response = client.post("/api/chat", json={"user_id": "user-a", "text": "show my report"})
    assert response.status_code == 503
    monkeypatch.undo()

    history = _history(client)
    assert len(history["items"]) == 2
    assert history["pending_action"] == "none"


def test_same_user_turns_are_serialized(orchestrator, storage):
    errors: list[Exception] = []

    def send(index: int) -> None:
        try:
            orchestrator.handle_message("user-a", f"hello {index}")
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=send, args=(index,)) for index in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    turns = storage.conversation.list_turns("user-a")
    assert len(turns) == 20
    assert [turn["role"] for turn in turns] == ["user", "assistant"] * 10


def test_orchestrator_rejects_blank_input(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.handle_message("user-a", "  ")
    with pytest.raises(ValidationError):
        orchestrator.handle_message("", "hello")


def test_booking_uses_injected_clock(orchestrator, clock, ledger):
    reply = orchestrator.handle_message("user-b", "Book FBS in 3 days at 07:30")
    assert reply.type == "booking_confirmed"
    booking = ledger.get_booking(reply.booking_id)
    expected = (clock() + timedelta(days=3)).replace(hour=7, minute=30, second=0, microsecond=0)
    assert booking.scheduled_at == to_iso(expected)


def test_history_is_not_trimmed_during_a_conversation(tmp_path, hooks, clock):
    storage = LabStorage(SQLiteLabDB(str(tmp_path / "capped.sqlite")), max_turns=4)
    catalog = Catalog.default()
    matcher = SymptomMatcher(catalog, KeywordSymptomScorer())
    chat = ConversationOrchestrator(
        storage=storage,
        catalog=catalog,
        matcher=matcher,
        ledger=BookingLedger(storage, catalog, hooks, clock=clock),
        gate=ReportAccessGate(storage, hooks, clock=clock),
        clock=clock,
    )
    counts = []
    try:
        for text in ["hello", "I feel dizzy", "thanks", "what can you do"]:
            chat.handle_message("user-a", text)
            counts.append(storage.conversation.count_turns("user-a"))
    finally:
        matcher.close()
    assert counts == [2, 4, 6, 8]

    assert storage.apply_retention_to_idle_sessions(now=utc_now())["session_count"] == 0
    result = storage.apply_retention_to_idle_sessions(now=utc_now() + timedelta(hours=1))
    assert result == {"session_count": 1, "expired_turn_count": 0, "overflow_turn_count": 4}
    assert [turn["text"] for turn in storage.conversation.list_turns("user-a")][0] == "thanks"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1234", True),
        ("BK-1A2B3C4D 1234", True),
        ("my booking id is BK-1A2B3C4D, pin 1234", True),
        ("pin: 0042", True),
        ("actually I've had a fever since 2019", False),
        ("can we do it at 1030 instead", False),
        ("BK-1A2B3C4D", False),
    ],
)
def test_only_credential_replies_count_as_pin_entries(text, expected):
    assert looks_like_pin_entry(text) is expected


def test_numbers_in_unrelated_text_do_not_spend_pin_attempts(client, backend_module):
    booked = _chat(client, "Book CBC tomorrow 10am")
    _complete_with_report(client, booked["booking_id"])
    _chat(client, f"show my report {booked['booking_id']}")

    reply = _chat(client, "actually I've had a fever since 2019")
    assert reply["type"] == "action_required"
    assert reply["action"] == "verify_pin"
    assert reply.get("error") is None
    assert booked["booking_id"] in reply["message"]
    assert backend_module.container.gate.attempt_state(booked["booking_id"]) is None
    assert _history(client)["pending_action"] == "awaiting_pin"

    released = _chat(client, f"my pin is {booked['pin']}")
    assert released["type"] == "report"
