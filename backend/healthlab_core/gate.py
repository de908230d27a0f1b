from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable

from labstore.service import LabStorage
from labstore.time_utils import parse_iso, to_iso, utc_now

from .errors import InvalidPin, Locked, NotFound, ReportNotReady
from .hooks import HookRunner
from .locks import KeyedLocks
from .pins import pins_match

logger = logging.getLogger("healthlab.gate")

GENERIC_DENIAL = "Invalid booking ID or PIN."


class ReportAccessGate:
    """PIN challenge in front of report retrieval, with per-booking lockout.

    Failed attempts are counted per booking id. Reaching ``lockout_threshold``
    locks the booking for ``lockout_window`` regardless of later PIN
    correctness and starts a fresh count for the next window. A correct PIN
    clears the record.
    """

    def __init__(
        self,
        storage: LabStorage,
        hooks: HookRunner,
        *,
        lockout_threshold: int = 5,
        lockout_window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._hooks = hooks
        self.lockout_threshold = max(1, lockout_threshold)
        self.lockout_window = lockout_window
        self._clock = clock
        self._locks = KeyedLocks()

    def verify_and_fetch(self, booking_id: str, pin: str) -> dict[str, Any]:
        normalized_id = (booking_id or "").strip().upper()
        secret = self._storage.bookings.get_pin_secret(normalized_id) if normalized_id else None
        salt, digest = secret if secret is not None else (None, None)

        outcome, attempts, retry_after = self._check_pin(normalized_id, salt, digest, pin)
        booking = self._storage.bookings.get(normalized_id) or {}
        user_id = booking.get("user_id")

        if outcome == "unknown":
            # Same lock, transaction, attempt write and audit event as a wrong PIN.
            logger.info("Report access for unknown booking id")
            self._hooks.emit("report_access_denied", user_id=None, booking_id=normalized_id, attempt_count=attempts)
            raise NotFound(GENERIC_DENIAL)
        if outcome == "locked":
            self._hooks.emit("report_access_locked", user_id=user_id, booking_id=normalized_id)
            minutes = max(1, math.ceil(retry_after / 60))
            raise Locked(
                f"Too many incorrect attempts. Try again in {minutes} minute{'' if minutes == 1 else 's'}.",
                retry_after_seconds=retry_after,
            )
        if outcome == "lockout_started":
            logger.warning("Booking %s locked after %d failed PIN attempts", normalized_id, self.lockout_threshold)
            self._hooks.emit(
                "report_access_lockout",
                user_id=user_id,
                booking_id=normalized_id,
                window_seconds=int(self.lockout_window.total_seconds()),
            )
            raise InvalidPin(GENERIC_DENIAL)
        if outcome == "invalid":
            self._hooks.emit("report_access_denied", user_id=user_id, booking_id=normalized_id, attempt_count=attempts)
            raise InvalidPin(GENERIC_DENIAL)

        self._hooks.emit("report_access_verified", user_id=user_id, booking_id=normalized_id)
        report = self._storage.reports.get(normalized_id)
        if booking.get("status") != "completed" or report is None:
            raise ReportNotReady("Report not available yet.")
        self._hooks.emit("report_released", user_id=user_id, booking_id=normalized_id)
        return report

    def attempt_state(self, booking_id: str) -> dict[str, Any] | None:
        with self._storage.db.connection() as conn:
            return self._storage.attempts.get(conn, (booking_id or "").strip().upper())

    def _check_pin(self, booking_id: str, salt: str | None, digest: str | None, pin: str) -> tuple[str, int, float]:
        """Atomic read-increment-compare for one booking id.

        Returns ``(outcome, attempt_count, retry_after_seconds)``; outcomes are
        ``locked``, ``lockout_started``, ``invalid``, ``unknown`` and ``ok``.
        An unknown id (no ``salt``) is checked against a decoy digest and its
        attempt row is written then removed in the same transaction, so it
        never accumulates state. Errors are raised by the caller after the
        transaction commits.
        """
        with self._locks.hold(booking_id), self._storage.db.transaction() as conn:
            now = self._clock()
            record = self._storage.attempts.get(conn, booking_id)
            locked_until = parse_iso(record["locked_until"]) if record else None
            if locked_until is not None and locked_until > now:
                return "locked", int(record["attempt_count"]), (locked_until - now).total_seconds()

            if pins_match(salt, digest, pin) and salt is not None:
                if record is not None:
                    self._storage.attempts.clear(conn, booking_id)
                return "ok", 0, 0.0

            count = (int(record["attempt_count"]) if record else 0) + 1
            if salt is None:
                self._storage.attempts.save(conn, booking_id=booking_id, attempt_count=count, locked_until=None)
                self._storage.attempts.clear(conn, booking_id)
                return "unknown", count, 0.0
            if count >= self.lockout_threshold:
                self._storage.attempts.save(
                    conn,
                    booking_id=booking_id,
                    attempt_count=0,
                    locked_until=to_iso(now + self.lockout_window),
                )
                return "lockout_started", count, self.lockout_window.total_seconds()

            self._storage.attempts.save(conn, booking_id=booking_id, attempt_count=count, locked_until=None)
            return "invalid", count, 0.0
