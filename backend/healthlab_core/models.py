from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

BOOKING_STATUSES = {"pending", "confirmed", "completed", "cancelled"}

PENDING_NONE = "none"
PENDING_AWAITING_PIN = "awaiting_pin"


@dataclass(frozen=True)
class LabTest:
    code: str
    name: str
    category: str
    price: float
    preparation: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "preparation": self.preparation,
        }


@dataclass(frozen=True)
class Booking:
    id: str
    user_id: str
    test_code: str
    scheduled_at: str
    status: str
    address: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Booking":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            test_code=row["test_code"],
            scheduled_at=row["scheduled_at"],
            status=row["status"],
            address=row.get("address"),
            created_at=row.get("created_at"),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "test_code": self.test_code,
            "scheduled_at": self.scheduled_at,
            "status": self.status,
            "address": self.address,
        }


@dataclass(frozen=True)
class IssuedBooking:
    """Creation result; the only object that ever carries a plain PIN."""

    booking: Booking
    pin: str | None
    replayed: bool = False


@dataclass(frozen=True)
class PromoCode:
    code: str
    kind: str
    value: float
    min_price: float | None = None
    expires_at: datetime | None = None
    note: str = "Promo applied"


@dataclass(frozen=True)
class PromoResult:
    discount: float
    total: float
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"discount": self.discount, "total": self.total, "message": self.message}


@dataclass(frozen=True)
class Suggestion:
    test: LabTest
    score: float


@dataclass
class Session:
    user_id: str
    pending_action: str = PENDING_NONE
    booking_hint: str | None = None

    @property
    def awaiting_pin(self) -> bool:
        return self.pending_action == PENDING_AWAITING_PIN


@dataclass
class ChatReply:
    message: str
    type: str = "text"
    intent: str = "smalltalk"
    tests: list[dict[str, Any]] = field(default_factory=list)
    action: str | None = None
    booking_id: str | None = None
    pin: str | None = None
    report: dict[str, Any] | None = None
    error: str | None = None

    def as_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {"message": self.message, "type": self.type, "intent": self.intent}
        if self.tests:
            envelope["tests"] = self.tests
        if self.action:
            envelope["action"] = self.action
        if self.booking_id:
            envelope["booking_id"] = self.booking_id
        if self.pin:
            envelope["pin"] = self.pin
        if self.report is not None:
            envelope["report"] = self.report
        if self.error:
            envelope["error"] = self.error
        return envelope
