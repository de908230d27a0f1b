from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any, Callable

from labstore.service import LabStorage
from labstore.time_utils import ensure_utc, parse_iso, to_iso, utc_now

from .catalog import Catalog
from .errors import InvalidPin, InvalidSchedule, Locked, NotFound, ReportNotReady, UnknownTest, ValidationError
from .gate import ReportAccessGate
from .intents import (
    INTENT_BOOKING_COMMAND,
    INTENT_REPORT_REQUEST,
    INTENT_SMALLTALK,
    INTENT_SYMPTOM_REPORT,
    IntentClassifier,
    IntentMatch,
    extract_booking_id,
    extract_pin,
    looks_like_pin_entry,
    redact_pins,
)
from .ledger import BookingLedger
from .locks import KeyedLocks
from .matcher import SymptomMatcher
from .models import PENDING_AWAITING_PIN, PENDING_NONE, ChatReply, Session

logger = logging.getLogger("healthlab.chat")

HELP_MESSAGE = (
    "I can help you book tests, suggest investigations from symptoms, apply promo codes, "
    "and fetch your reports securely. Try: 'I feel dizzy' or 'Book CBC tomorrow 10am'."
)
GREETING_MESSAGE = "Hi! I am Laura. Tell me how you're feeling or say \"Book CBC tomorrow 10am\"."
PIN_PROMPT = "Please enter your booking ID and 4-digit PIN to access your report."
PIN_MISMATCH = "That booking ID and PIN didn't match. Please try again."


def _chat_idempotency_key(user_id: str, test_code: str, scheduled_at: datetime) -> str:
    base = f"chat:{user_id}:{test_code}:{to_iso(scheduled_at)}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def _display_time(iso_value: str) -> str:
    parsed = parse_iso(iso_value)
    if not parsed:
        return iso_value
    return parsed.strftime("%d %b %Y, %I:%M %p UTC")


class ConversationOrchestrator:
    """Per-user chat state machine: ``Idle`` and ``AwaitingPin``.

    One turn (load session, compute reply, persist both turns and the new
    pending action) runs under the user's lock, so messages for the same
    user are applied in arrival order. Nothing is written until the reply is
    ready; a failed turn leaves the session as it was.
    """

    def __init__(
        self,
        *,
        storage: LabStorage,
        catalog: Catalog,
        matcher: SymptomMatcher,
        ledger: BookingLedger,
        gate: ReportAccessGate,
        classifier: IntentClassifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._catalog = catalog
        self._matcher = matcher
        self._ledger = ledger
        self._gate = gate
        self._classifier = classifier or IntentClassifier()
        self._clock = clock
        self._user_locks = KeyedLocks()

    def handle_message(self, user_id: str, text: str, payload: dict[str, Any] | None = None) -> ChatReply:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("user_id is required.")
        text = (text or "").strip()
        payload = dict(payload or {})
        if not text and not payload:
            raise ValidationError("text is required.")

        with self._user_locks.hold(user_id):
            session = self._load_session(user_id)
            if session.awaiting_pin:
                reply, next_session = self._handle_pin_entry(session, text, payload)
                stored_text = redact_pins(text) if text else "(booking ID and PIN submitted)"
            else:
                reply, next_session = self._handle_idle(session, text, payload)
                stored_text = text or "(structured request)"

            self._storage.conversation.record_turn(
                user_id=user_id,
                user_text=stored_text,
                assistant_text=reply.message,
                pending_action=next_session.pending_action,
                booking_hint=next_session.booking_hint,
            )
        logger.info(
            "Chat turn user=%s intent=%s type=%s state=%s",
            user_id,
            reply.intent,
            reply.type,
            next_session.pending_action,
        )
        return reply

    def history(self, user_id: str, limit: int | None = None) -> dict[str, Any]:
        session = self._load_session(user_id)
        return {
            "user_id": user_id,
            "pending_action": session.pending_action,
            "items": [
                {"role": row["role"], "text": row["text"], "created_at": row["created_at"]}
                for row in self._storage.conversation.list_turns(user_id, limit)
            ],
        }

    def _load_session(self, user_id: str) -> Session:
        row = self._storage.conversation.get_session(user_id)
        if not row:
            return Session(user_id=user_id)
        return Session(
            user_id=user_id,
            pending_action=row["pending_action"] or PENDING_NONE,
            booking_hint=row.get("booking_hint"),
        )

    # Idle

    def _handle_idle(self, session: Session, text: str, payload: dict[str, Any]) -> tuple[ChatReply, Session]:
        match = self._classifier.classify(text, self._clock(), payload)
        if match.intent == INTENT_BOOKING_COMMAND:
            return self._book(session, match), session

        if match.intent == INTENT_REPORT_REQUEST:
            hint = match.booking_id_hint
            message = f"Please enter the 4-digit PIN for booking {hint}." if hint else PIN_PROMPT
            reply = ChatReply(
                message=message,
                type="action_required",
                intent=INTENT_REPORT_REQUEST,
                action="verify_pin",
            )
            return reply, Session(session.user_id, PENDING_AWAITING_PIN, hint)

        suggestions = self._matcher.suggest_tests(text)
        if suggestions:
            reply = ChatReply(
                message="Here are some recommended tests based on your symptoms. Would you like to book one of these?",
                type="suggestions",
                intent=INTENT_SYMPTOM_REPORT,
                tests=[
                    {"code": item.test.code, "name": item.test.name, "score": item.score}
                    for item in suggestions
                ],
            )
            return reply, session

        message = GREETING_MESSAGE if self._classifier.is_greeting(text) else HELP_MESSAGE
        return ChatReply(message=message, intent=INTENT_SMALLTALK), session

    def _book(self, session: Session, match: IntentMatch) -> ChatReply:
        code = match.test_code or ""
        if match.scheduled_at is None:
            return ChatReply(
                message=f"When should I book {code}? Try 'Book {code} tomorrow 10am' or 'Book {code} 2026-11-02 09:30'.",
                intent=INTENT_BOOKING_COMMAND,
                error="missing_schedule",
            )
        scheduled_at = ensure_utc(match.scheduled_at)
        try:
            issued = self._ledger.create_booking(
                session.user_id,
                code,
                scheduled_at,
                address=match.address,
                idempotency_key=_chat_idempotency_key(session.user_id, code, scheduled_at),
            )
        except UnknownTest:
            available = ", ".join(test.code for test in self._catalog.list_tests())
            return ChatReply(
                message=f"I couldn't find a test called {code}. Available tests: {available}.",
                intent=INTENT_BOOKING_COMMAND,
                error="unknown_test",
            )
        except InvalidSchedule:
            return ChatReply(
                message="That time has already passed. Please pick a future date and time.",
                intent=INTENT_BOOKING_COMMAND,
                error="invalid_schedule",
            )

        booking = issued.booking
        test = self._catalog.get_test(booking.test_code)
        when = _display_time(booking.scheduled_at)
        if issued.replayed:
            message = f"You already have {test.name} booked for {when} (booking {booking.id})."
        else:
            message = (
                f"Your {test.name} is booked for {when}. Booking ID: {booking.id}. "
                "Keep the 4-digit PIN shown with this confirmation; you will need it to view your report."
            )
        return ChatReply(
            message=message,
            type="booking_confirmed",
            intent=INTENT_BOOKING_COMMAND,
            booking_id=booking.id,
            pin=issued.pin,
        )

    # AwaitingPin

    def _handle_pin_entry(self, session: Session, text: str, payload: dict[str, Any]) -> tuple[ChatReply, Session]:
        if text and self._classifier.is_cancel(text):
            reply = ChatReply(message="Okay, I've stopped the report request. " + HELP_MESSAGE, intent=INTENT_REPORT_REQUEST)
            return reply, Session(session.user_id)

        booking_id = str(payload.get("booking_id") or "").strip().upper() or extract_booking_id(text) or session.booking_hint
        pin = str(payload.get("pin") or "").strip()
        if not pin and looks_like_pin_entry(text):
            pin = extract_pin(text)

        if not pin:
            message = f"Please enter the 4-digit PIN for booking {booking_id}." if booking_id else PIN_PROMPT
            reply = ChatReply(message=message, type="action_required", intent=INTENT_REPORT_REQUEST, action="verify_pin")
            return reply, Session(session.user_id, PENDING_AWAITING_PIN, booking_id)
        if not booking_id:
            reply = ChatReply(
                message="Please include your booking ID (for example BK-1A2B3C4D) along with your PIN.",
                type="action_required",
                intent=INTENT_REPORT_REQUEST,
                action="verify_pin",
            )
            return reply, Session(session.user_id, PENDING_AWAITING_PIN, None)

        try:
            report = self._gate.verify_and_fetch(booking_id, pin)
        except (InvalidPin, NotFound):
            reply = ChatReply(
                message=PIN_MISMATCH,
                type="action_required",
                intent=INTENT_REPORT_REQUEST,
                action="verify_pin",
                error="invalid_credentials",
            )
            return reply, Session(session.user_id, PENDING_AWAITING_PIN, booking_id)
        except Locked as exc:
            reply = ChatReply(message=exc.message, intent=INTENT_REPORT_REQUEST, error="locked")
            return reply, Session(session.user_id)
        except ReportNotReady:
            reply = ChatReply(
                message=f"Your PIN is verified, but the report for {booking_id} is not ready yet. Please check back later.",
                intent=INTENT_REPORT_REQUEST,
                error="report_not_ready",
            )
            return reply, Session(session.user_id)

        reply = ChatReply(
            message=f"Here is your {report['test_code']} report summary: {report['summary']}",
            type="report",
            intent=INTENT_REPORT_REQUEST,
            report=report,
        )
        return reply, Session(session.user_id)
