from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from .errors import NotFound, ValidationError
from .models import LabTest

DEFAULT_TESTS: list[dict[str, Any]] = [
    {"code": "CBC", "name": "Complete Blood Count", "category": "Hematology", "price": 20.0,
     "preparation": "No fasting required"},
    {"code": "IRON", "name": "Iron Studies", "category": "Hematology", "price": 25.0,
     "preparation": "8-10 hours fasting preferred"},
    {"code": "LFT", "name": "Liver Function Test", "category": "Biochemistry", "price": 30.0,
     "preparation": "No alcohol 24h before"},
    {"code": "CRP", "name": "C-Reactive Protein", "category": "Biochemistry", "price": 22.0,
     "preparation": "No special preparation"},
    {"code": "B12", "name": "Vitamin B12", "category": "Vitamins", "price": 28.0,
     "preparation": "Fasting 6-8 hours"},
    {"code": "FBS", "name": "Fasting Blood Sugar", "category": "Diabetes", "price": 12.0,
     "preparation": "Overnight fasting"},
    {"code": "HBA1C", "name": "HbA1c", "category": "Diabetes", "price": 18.0,
     "preparation": "No fasting required"},
    {"code": "TSH", "name": "Thyroid Stimulating Hormone", "category": "Endocrinology", "price": 24.0,
     "preparation": "Morning sample preferred"},
    {"code": "MP", "name": "Malaria Parasite Smear", "category": "Microbiology", "price": 15.0,
     "preparation": "Best collected during fever"},
]


def _coerce_test(raw: dict[str, Any]) -> LabTest:
    code = str(raw.get("code") or "").strip().upper()
    name = str(raw.get("name") or "").strip()
    if not code or not name:
        raise ValidationError("Catalog entries need a code and a name.")
    try:
        price = float(raw.get("price"))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Catalog entry {code} has an invalid price.") from exc
    if price <= 0:
        raise ValidationError(f"Catalog entry {code} must have a positive price.")
    return LabTest(
        code=code,
        name=name,
        category=str(raw.get("category") or "General"),
        price=price,
        preparation=str(raw.get("preparation") or raw.get("preparation_notes") or ""),
    )


class Catalog:
    def __init__(self, entries: Iterable[dict[str, Any]]) -> None:
        tests: dict[str, LabTest] = {}
        for raw in entries:
            test = _coerce_test(raw)
            if test.code in tests:
                raise ValidationError(f"Duplicate test code in catalog: {test.code}")
            tests[test.code] = test
        self._tests = dict(sorted(tests.items()))
        self._ordered = tuple(self._tests.values())

    @classmethod
    def from_file(cls, path: str) -> "Catalog":
        payload = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("items", [])
        return cls(payload)

    @classmethod
    def default(cls) -> "Catalog":
        return cls(DEFAULT_TESTS)

    def list_tests(self) -> list[LabTest]:
        return list(self._ordered)

    def get_test(self, code: str) -> LabTest:
        test = self._tests.get((code or "").strip().upper())
        if test is None:
            raise NotFound(f"Unknown test code: {code}")
        return test

    def has_test(self, code: str) -> bool:
        return (code or "").strip().upper() in self._tests

    def __len__(self) -> int:
        return len(self._ordered)
