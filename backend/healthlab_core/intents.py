from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

INTENT_SYMPTOM_REPORT = "symptom_report"
INTENT_BOOKING_COMMAND = "booking_command"
INTENT_REPORT_REQUEST = "report_request"
INTENT_SMALLTALK = "smalltalk"

_WEEKDAY_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

BOOKING_ID_RE = re.compile(r"\bBK-[0-9A-F]{8}\b", re.IGNORECASE)
_PIN_RE = re.compile(r"(?<![\w-])(\d{4})(?![\w-])")
_PIN_KEYWORD_RE = re.compile(r"\b(pin|passcode)\b", re.IGNORECASE)
_PIN_FILLER_RE = re.compile(r"\b(my|the|is|and|for|here|booking|id|report)\b", re.IGNORECASE)
_PUNCTUATION_ONLY_RE = re.compile(r"[\s,.:;/#()-]*")


@dataclass(frozen=True)
class IntentMatch:
    intent: str
    test_code: str | None = None
    scheduled_at: datetime | None = None
    address: str | None = None
    booking_id_hint: str | None = None


def extract_explicit_time(message: str) -> tuple[int, int] | None:
    match = re.search(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", message, flags=re.IGNORECASE)
    if match:
        hour = int(match.group(1)) % 12
        if match.group(3).lower() == "pm":
            hour += 12
        minute = int(match.group(2) or "0")
        return hour, minute

    match = re.search(r"\b(?:at\s+)?([01]?\d|2[0-3]):([0-5]\d)\b", message)
    if match:
        return int(match.group(1)), int(match.group(2))

    lowered = message.lower()
    if "morning" in lowered:
        return 9, 0
    if "afternoon" in lowered:
        return 14, 0
    if "evening" in lowered or "night" in lowered:
        return 18, 0
    return None


def extract_slot_datetime(message: str, reference: datetime) -> datetime | None:
    explicit_iso = re.search(r"\b(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{1,2}):(\d{2}))?\b", message)
    if explicit_iso:
        year, month, day = int(explicit_iso.group(1)), int(explicit_iso.group(2)), int(explicit_iso.group(3))
        if explicit_iso.group(4) is not None:
            hour, minute = int(explicit_iso.group(4)), int(explicit_iso.group(5))
        else:
            hour, minute = extract_explicit_time(message[explicit_iso.end():]) or (9, 0)
        try:
            return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
        except ValueError:
            return None

    lowered = message.lower()
    target_day_offset: int | None = None
    in_days = re.search(r"\bin (\d{1,2}) days?\b", lowered)
    if "day after tomorrow" in lowered:
        target_day_offset = 2
    elif "tomorrow" in lowered:
        target_day_offset = 1
    elif "today" in lowered or "tonight" in lowered:
        target_day_offset = 0
    elif in_days:
        target_day_offset = int(in_days.group(1))
    else:
        for name, weekday in _WEEKDAY_INDEX.items():
            if name not in lowered:
                continue
            offset = (weekday - reference.weekday()) % 7
            if offset == 0:
                offset = 7
            if "next week" in lowered and offset < 7:
                offset += 7
            target_day_offset = offset
            break
        if target_day_offset is None and "next week" in lowered:
            target_day_offset = 7

    if target_day_offset is None:
        return None

    hour, minute = extract_explicit_time(message) or (9, 0)
    slot = (reference + timedelta(days=target_day_offset)).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return slot


def extract_booking_id(message: str) -> str | None:
    match = BOOKING_ID_RE.search(message or "")
    return match.group(0).upper() if match else None


def extract_pin(message: str) -> str | None:
    remainder = BOOKING_ID_RE.sub(" ", message or "")
    matches = _PIN_RE.findall(remainder)
    return matches[-1] if matches else None


def looks_like_pin_entry(message: str) -> bool:
    """True for credential replies ("BK-1A2B3C4D 1234", "my pin is 1234").

    A 4-digit number inside other chat (a year, a time) is not a PIN entry.
    """
    text = message or ""
    if extract_pin(text) is None:
        return False
    if _PIN_KEYWORD_RE.search(text):
        return True
    remainder = _PIN_FILLER_RE.sub(" ", _PIN_RE.sub(" ", BOOKING_ID_RE.sub(" ", text)))
    return _PUNCTUATION_ONLY_RE.fullmatch(remainder) is not None


def redact_pins(message: str) -> str:
    return _PIN_RE.sub("****", message or "")


class IntentClassifier:
    """Deterministic intent precedence: booking command, report request, symptoms, smalltalk."""

    _BOOKING_PATTERN = re.compile(
        r"^\s*(?:please\s+|can you\s+|could you\s+|i want to\s+|i'd like to\s+)?"
        r"(?:book|schedule)\s+(?:me\s+)?(?:an?\s+|the\s+|my\s+)?"
        r"(?P<code>[A-Za-z][A-Za-z0-9]{1,9})\b(?:\s+test)?(?P<rest>.*)$",
        re.IGNORECASE | re.DOTALL,
    )
    _ADDRESS_PATTERN = re.compile(r"\b(?:at|to)\s+address\s+(?P<address>.+)$", re.IGNORECASE)
    _REPORT_PATTERNS = [
        re.compile(
            r"\b(view|show|see|open|download|access|get|check|read|fetch)\b.*\b(reports?|results?)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\bmy\s+(lab\s+|test\s+)?(reports?|results?)\b", re.IGNORECASE),
        re.compile(r"\b(reports?|results?)\s+(ready|available)\b", re.IGNORECASE),
    ]
    _CANCEL_PATTERN = re.compile(r"^\s*(cancel|stop|exit|never\s*mind|forget\s+it)\b", re.IGNORECASE)
    _GREETING_PATTERN = re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening)|thanks|thank you)\b", re.IGNORECASE)

    def classify(self, text: str, reference: datetime, payload: dict[str, Any] | None = None) -> IntentMatch:
        cleaned = (text or "").strip()
        structured = self._structured_booking(payload or {}, reference)
        if structured is not None:
            return structured

        booking = self._BOOKING_PATTERN.match(cleaned)
        if booking:
            rest = booking.group("rest") or ""
            address_match = self._ADDRESS_PATTERN.search(rest)
            address = address_match.group("address").strip() if address_match else None
            when_text = rest[: address_match.start()] if address_match else rest
            return IntentMatch(
                intent=INTENT_BOOKING_COMMAND,
                test_code=booking.group("code").upper(),
                scheduled_at=extract_slot_datetime(when_text, reference),
                address=address,
            )

        if self.is_report_request(cleaned):
            return IntentMatch(intent=INTENT_REPORT_REQUEST, booking_id_hint=extract_booking_id(cleaned))

        return IntentMatch(intent=INTENT_SYMPTOM_REPORT)

    def is_report_request(self, text: str) -> bool:
        return any(pattern.search(text or "") for pattern in self._REPORT_PATTERNS)

    def is_cancel(self, text: str) -> bool:
        return self._CANCEL_PATTERN.search(text or "") is not None

    def is_greeting(self, text: str) -> bool:
        return self._GREETING_PATTERN.search(text or "") is not None

    @staticmethod
    def _structured_booking(payload: dict[str, Any], reference: datetime) -> IntentMatch | None:
        if payload.get("intent") != "book_test" or not payload.get("test_code"):
            return None
        scheduled_at: datetime | None = None
        raw_when = payload.get("scheduled_at")
        if isinstance(raw_when, datetime):
            scheduled_at = raw_when
        elif isinstance(raw_when, str) and raw_when.strip():
            try:
                scheduled_at = datetime.fromisoformat(raw_when.strip().replace("Z", "+00:00"))
            except ValueError:
                scheduled_at = extract_slot_datetime(raw_when, reference)
        return IntentMatch(
            intent=INTENT_BOOKING_COMMAND,
            test_code=str(payload["test_code"]).strip().upper(),
            scheduled_at=scheduled_at,
            address=str(payload.get("address") or "").strip() or None,
        )
