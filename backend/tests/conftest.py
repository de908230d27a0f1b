from __future__ import annotations

import importlib
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from healthlab_core import BookingLedger, Catalog, HookRunner, ReportAccessGate  # noqa: E402
from labstore import LabStorage, SQLiteLabDB  # noqa: E402
from labstore.time_utils import utc_now  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "healthlab-test.sqlite"
    monkeypatch.setenv("HEALTHLAB_DB_PATH", str(db_path))
    monkeypatch.setenv("HEALTHLAB_SCORER", "keyword")
    monkeypatch.delenv("HEALTHLAB_CATALOG_PATH", raising=False)
    monkeypatch.delenv("HEALTHLAB_PROMOS_PATH", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(tmp_path) -> LabStorage:
    return LabStorage(SQLiteLabDB(str(tmp_path / "unit.sqlite")))


@pytest.fixture
def audit_log() -> list:
    return []


@pytest.fixture
def hooks(audit_log) -> HookRunner:
    runner = HookRunner()
    runner.add_after(audit_log.append)
    return runner


@pytest.fixture
def ledger(storage, hooks, clock) -> BookingLedger:
    return BookingLedger(storage, Catalog.default(), hooks, clock=clock)


@pytest.fixture
def gate(storage, hooks, clock) -> ReportAccessGate:
    return ReportAccessGate(storage, hooks, lockout_threshold=5, lockout_window=timedelta(minutes=15), clock=clock)
