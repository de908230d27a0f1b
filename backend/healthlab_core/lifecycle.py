from __future__ import annotations

from labstore.booking_store import BookingStore

from .errors import InvalidTransition, NotFound
from .models import BOOKING_STATUSES, Booking


class BookingLifecycle:
    _TRANSITIONS = {
        "pending": {"confirmed", "cancelled"},
        "confirmed": {"completed", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    }

    def __init__(self, store: BookingStore) -> None:
        self._store = store

    def check(self, current: str, next_status: str) -> None:
        if next_status not in BOOKING_STATUSES:
            raise InvalidTransition(f"Unknown booking status: {next_status}")
        if next_status not in self._TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Invalid transition: {current} -> {next_status}")

    def advance(self, booking_id: str, next_status: str) -> Booking:
        row = self._store.get(booking_id)
        if not row:
            raise NotFound(f"Booking not found: {booking_id}")
        current = row["status"]
        self.check(current, next_status)
        if not self._store.update_status(booking_id, current, next_status):
            latest = self._store.get(booking_id) or row
            raise InvalidTransition(f"Invalid transition: {latest['status']} -> {next_status}")
        return Booking.from_row(self._store.get(booking_id) or {**row, "status": next_status})
