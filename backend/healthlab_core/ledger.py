from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Callable

from labstore.service import LabStorage
from labstore.time_utils import ensure_utc, to_iso, utc_now

from .catalog import Catalog
from .errors import InvalidSchedule, NotFound, UnknownTest, ValidationError
from .hooks import HookRunner
from .lifecycle import BookingLifecycle
from .models import Booking, IssuedBooking
from .pins import generate_pin, new_salt, pin_digest

logger = logging.getLogger("healthlab.ledger")

_MAX_ID_ATTEMPTS = 5


def new_booking_id() -> str:
    return f"BK-{uuid.uuid4().hex[:8].upper()}"


class BookingLedger:
    def __init__(
        self,
        storage: LabStorage,
        catalog: Catalog,
        hooks: HookRunner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._catalog = catalog
        self._hooks = hooks
        self._clock = clock
        self.lifecycle = BookingLifecycle(storage.bookings)

    def create_booking(
        self,
        user_id: str,
        test_code: str,
        scheduled_at: datetime,
        address: str | None = None,
        idempotency_key: str | None = None,
    ) -> IssuedBooking:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("user_id is required.")
        try:
            test = self._catalog.get_test(test_code)
        except NotFound as exc:
            raise UnknownTest(f"Unknown test code: {test_code}") from exc

        when = ensure_utc(scheduled_at)
        if when <= self._clock():
            raise InvalidSchedule("scheduled_at must be in the future.")

        key = (idempotency_key or "").strip() or None
        if key:
            existing = self._storage.bookings.find_by_idempotency_key(user_id, key)
            if existing:
                logger.info("Replayed booking %s for user %s", existing["id"], user_id)
                return IssuedBooking(booking=Booking.from_row(existing), pin=None, replayed=True)

        pin = generate_pin()
        salt = new_salt()
        address = (address or "").strip() or None
        row: dict[str, Any] | None = None
        for _ in range(_MAX_ID_ATTEMPTS):
            booking_id = new_booking_id()
            try:
                row = self._storage.bookings.insert(
                    booking_id=booking_id,
                    user_id=user_id,
                    test_code=test.code,
                    scheduled_at=to_iso(when),
                    address=address,
                    pin_salt=salt,
                    pin_digest=pin_digest(salt, pin),
                    idempotency_key=key,
                )
                break
            except sqlite3.IntegrityError:
                if key:
                    existing = self._storage.bookings.find_by_idempotency_key(user_id, key)
                    if existing:
                        return IssuedBooking(booking=Booking.from_row(existing), pin=None, replayed=True)
                logger.warning("Booking id collision on %s; retrying", booking_id)
        if row is None:
            raise ValidationError("Could not allocate a booking id.")

        booking = Booking.from_row(row)
        logger.info("Created booking %s (%s) for user %s at %s", booking.id, booking.test_code, user_id, booking.scheduled_at)
        self._hooks.emit(
            "booking_created",
            user_id=user_id,
            booking_id=booking.id,
            test_code=booking.test_code,
            scheduled_at=booking.scheduled_at,
        )
        return IssuedBooking(booking=booking, pin=pin)

    def list_bookings(self, user_id: str) -> list[Booking]:
        return [Booking.from_row(row) for row in self._storage.bookings.list_for_user(user_id)]

    def get_booking(self, booking_id: str) -> Booking:
        row = self._storage.bookings.get((booking_id or "").strip().upper())
        if not row:
            raise NotFound(f"Booking not found: {booking_id}")
        return Booking.from_row(row)

    def advance_status(self, booking_id: str, next_status: str) -> Booking:
        booking = self.lifecycle.advance((booking_id or "").strip().upper(), (next_status or "").strip().lower())
        self._hooks.emit("booking_status_changed", user_id=booking.user_id, booking_id=booking.id, status=booking.status)
        return booking

    def publish_report(
        self,
        booking_id: str,
        *,
        summary: str,
        values: dict[str, Any] | None = None,
        url: str | None = None,
    ) -> dict[str, Any]:
        if not (summary or "").strip():
            raise ValidationError("Report summary is required.")
        booking = self.get_booking(booking_id)
        if booking.status == "confirmed":
            booking = self.advance_status(booking.id, "completed")
        elif booking.status != "completed":
            raise ValidationError(f"Cannot publish a report for a {booking.status} booking.")
        report = self._storage.reports.put(
            booking_id=booking.id,
            test_code=booking.test_code,
            summary=summary.strip(),
            values=values,
            url=url,
        )
        self._hooks.emit("report_published", user_id=booking.user_id, booking_id=booking.id)
        return report
