from __future__ import annotations

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Callable, Iterable

from labstore.time_utils import ensure_utc, parse_iso, utc_now

from .errors import ValidationError
from .models import PromoCode, PromoResult

PROMO_KINDS = {"percentage", "flat"}
_CENT = Decimal("0.01")

DEFAULT_PROMOS: list[dict[str, Any]] = [
    {"code": "NEWUSER10", "kind": "percentage", "value": 10, "note": "New user 10% discount applied"},
    {"code": "MEMBER5", "kind": "percentage", "value": 5, "note": "Membership 5% discount applied"},
    {"code": "HOMEVISIT15", "kind": "flat", "value": 15, "min_price": 40,
     "note": "Home collection $15 off applied"},
]


def _money(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def _coerce_promo(raw: dict[str, Any]) -> PromoCode:
    code = str(raw.get("code") or "").strip().upper()
    kind = str(raw.get("kind") or raw.get("type") or "percentage").strip().lower()
    if kind in {"percent", "pct"}:
        kind = "percentage"
    if kind in {"flat_amount", "flatamount"}:
        kind = "flat"
    if not code or kind not in PROMO_KINDS:
        raise ValidationError(f"Invalid promo definition: {raw!r}")
    value = float(raw.get("value", 0))
    if value < 0 or (kind == "percentage" and value > 100):
        raise ValidationError(f"Promo {code} has an out-of-range value.")
    expires_at = raw.get("expires_at")
    if isinstance(expires_at, str):
        expires_at = parse_iso(expires_at)
    elif isinstance(expires_at, datetime):
        expires_at = ensure_utc(expires_at)
    min_price = raw.get("min_price")
    return PromoCode(
        code=code,
        kind=kind,
        value=value,
        min_price=float(min_price) if min_price is not None else None,
        expires_at=expires_at,
        note=str(raw.get("note") or "Promo applied"),
    )


class PromoEngine:
    def __init__(self, promos: Iterable[dict[str, Any]], clock: Callable[[], datetime] = utc_now) -> None:
        self._promos: dict[str, PromoCode] = {}
        for raw in promos:
            promo = _coerce_promo(raw)
            if promo.code in self._promos:
                raise ValidationError(f"Duplicate promo code: {promo.code}")
            self._promos[promo.code] = promo
        self._clock = clock

    @classmethod
    def from_file(cls, path: str, clock: Callable[[], datetime] = utc_now) -> "PromoEngine":
        payload = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("items", [])
        return cls(payload, clock=clock)

    @classmethod
    def default(cls, clock: Callable[[], datetime] = utc_now) -> "PromoEngine":
        return cls(DEFAULT_PROMOS, clock=clock)

    def get(self, code: str) -> PromoCode | None:
        return self._promos.get((code or "").strip().upper())

    def apply_promo(self, code: str, base_price: float, now: datetime | None = None) -> PromoResult:
        """Evaluate ``code`` against ``base_price``; the first matching rule decides."""
        if base_price < 0:
            raise ValidationError("Price must not be negative.")
        # Rules compare against the price as given; only reported amounts are rounded.
        base = Decimal(str(base_price))
        promo = self.get(code)
        if promo is None:
            return self._no_discount(base, "Invalid code")

        current = ensure_utc(now) if now is not None else self._clock()
        if promo.expires_at is not None and current > promo.expires_at:
            return self._no_discount(base, "Code expired")
        if promo.min_price is not None and base < Decimal(str(promo.min_price)):
            return self._no_discount(base, "Minimum order not met")

        if promo.kind == "percentage":
            discount = _money(base * Decimal(str(promo.value)) / Decimal(100))
        else:
            discount = min(_money(promo.value), base)
        discount = min(discount, base)
        total = max(base - discount, Decimal(0))
        return PromoResult(discount=float(discount), total=float(_money(total)), message=promo.note)

    @staticmethod
    def _no_discount(base: Decimal, message: str) -> PromoResult:
        return PromoResult(discount=0.0, total=float(_money(base)), message=message)
