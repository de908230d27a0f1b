from __future__ import annotations

import logging
import math
import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from healthlab_core import (
    GENERIC_DENIAL,
    AuditEvent,
    BookingLedger,
    Catalog,
    ConversationOrchestrator,
    HealthLabError,
    HookRunner,
    InvalidPin,
    Locked,
    NotFound,
    PromoEngine,
    ReportAccessGate,
    ReportNotReady,
    ScorerRegistry,
    SymptomMatcher,
    UnknownTest,
    ValidationError,
    log_event,
)
from healthlab_scorers import register_scorers
from labstore import LabStorage, SQLiteLabDB, StoreUnavailable

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("HEALTHLAB_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("healthlab.api")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Ignoring non-integer %s; using %s", name, default)
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning("Ignoring non-numeric %s; using %s", name, default)
        return default


class ChatRequest(BaseModel):
    user_id: str
    text: str = ""
    intent: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class CreateBookingRequest(BaseModel):
    user_id: str
    test_code: str
    scheduled_at: datetime
    address: str | None = None
    idempotency_key: str | None = None


class UpdateBookingRequest(BaseModel):
    status: str


class PublishReportRequest(BaseModel):
    summary: str
    values: dict[str, Any] | None = None
    url: str | None = None


class ViewReportRequest(BaseModel):
    booking_id: str
    pin: str


class ApplyPromoRequest(BaseModel):
    code: str
    price: float = Field(ge=0)


class HealthLabApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "HEALTHLAB_DB_PATH",
            str((Path(__file__).resolve().parent / "healthlab.sqlite")),
        )
        self.db = SQLiteLabDB(db_path)
        self.storage = LabStorage(
            self.db,
            retention_days=_env_int("HEALTHLAB_TURN_RETENTION_DAYS", 30),
            max_turns=_env_int("HEALTHLAB_MAX_TURNS", 500),
        )

        catalog_path = os.getenv("HEALTHLAB_CATALOG_PATH", "").strip()
        self.catalog = Catalog.from_file(catalog_path) if catalog_path else Catalog.default()
        promos_path = os.getenv("HEALTHLAB_PROMOS_PATH", "").strip()
        self.promos = PromoEngine.from_file(promos_path) if promos_path else PromoEngine.default()

        self.hooks = HookRunner()
        self.hooks.add_after(self._record_audit_event)
        self.hooks.add_after(log_event)

        self.scorers = ScorerRegistry()
        register_scorers(self.scorers)
        scorer_name = os.getenv("HEALTHLAB_SCORER", "keyword").strip().lower() or "keyword"
        self.matcher = SymptomMatcher(
            self.catalog,
            self.scorers.create(scorer_name),
            max_results=_env_int("HEALTHLAB_MAX_SUGGESTIONS", 5),
            min_score=_env_float("HEALTHLAB_MIN_RELEVANCE", 0.3),
            budget_seconds=_env_float("HEALTHLAB_MATCH_BUDGET_SECONDS", 2.0),
        )

        self.ledger = BookingLedger(self.storage, self.catalog, self.hooks)
        self.gate = ReportAccessGate(
            self.storage,
            self.hooks,
            lockout_threshold=_env_int("HEALTHLAB_LOCKOUT_THRESHOLD", 5),
            lockout_window=timedelta(minutes=_env_int("HEALTHLAB_LOCKOUT_MINUTES", 15)),
        )
        self.chat = ConversationOrchestrator(
            storage=self.storage,
            catalog=self.catalog,
            matcher=self.matcher,
            ledger=self.ledger,
            gate=self.gate,
        )
        logger.info(
            "HealthLab ready db=%s tests=%d scorer=%s",
            self.db.path,
            len(self.catalog),
            scorer_name,
        )

    def _record_audit_event(self, event: AuditEvent) -> None:
        self.storage.audit.append(
            event_type=event.event_type,
            user_id=event.user_id,
            booking_id=event.booking_id,
            details=event.details,
        )


container = HealthLabApp()
app = FastAPI(title="HealthLab Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_user_id(raw: str | None) -> str:
    candidate = (raw or "").strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid user_id")
    return candidate


def _to_http_error(exc: HealthLabError) -> HTTPException:
    if isinstance(exc, UnknownTest):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, (NotFound, ReportNotReady)):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, InvalidPin):
        return HTTPException(status_code=401, detail=exc.message)
    if isinstance(exc, Locked):
        return HTTPException(
            status_code=429,
            detail=exc.message,
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_seconds)))},
        )
    logger.error("Unmapped domain error %s: %s", exc.code, exc.message)
    return HTTPException(status_code=500, detail="Internal error")


@app.exception_handler(HealthLabError)
async def _healthlab_error_handler(request: Request, exc: HealthLabError) -> JSONResponse:
    http_error = _to_http_error(exc)
    return JSONResponse(
        status_code=http_error.status_code,
        content={"detail": http_error.detail, "code": exc.code},
        headers=http_error.headers,
    )


@app.exception_handler(StoreUnavailable)
async def _store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable. Please try again shortly.", "code": "store_unavailable"},
    )


@app.get("/")
def root():
    return {"message": "HealthLab backend running", "tests": len(container.catalog)}


@app.post("/api/chat")
def chat(payload: ChatRequest):
    user_id = _validated_user_id(payload.user_id)
    structured = dict(payload.payload)
    if payload.intent:
        structured.setdefault("intent", payload.intent)
    reply = container.chat.handle_message(user_id, payload.text, structured)
    return reply.as_envelope()


@app.get("/api/chat/history")
def chat_history(user_id: str, limit: int | None = None):
    return container.chat.history(_validated_user_id(user_id), limit)


@app.get("/api/tests")
def list_tests():
    return {"items": [test.as_dict() for test in container.catalog.list_tests()]}


@app.post("/api/bookings")
def create_booking(payload: CreateBookingRequest):
    user_id = _validated_user_id(payload.user_id)
    issued = container.ledger.create_booking(
        user_id,
        payload.test_code,
        payload.scheduled_at,
        address=payload.address,
        idempotency_key=payload.idempotency_key,
    )
    booking = issued.booking
    return {
        "id": booking.id,
        "pin": issued.pin,
        "status": booking.status,
        "test_code": booking.test_code,
        "scheduled_at": booking.scheduled_at,
        "replayed": issued.replayed,
        "message": "Booking already exists" if issued.replayed else "Booking confirmed",
    }


@app.get("/api/bookings")
def list_bookings(user_id: str):
    bookings = container.ledger.list_bookings(_validated_user_id(user_id))
    return {"items": [booking.as_dict() for booking in bookings]}


@app.patch("/api/bookings/{booking_id}")
def update_booking(booking_id: str, payload: UpdateBookingRequest):
    return container.ledger.advance_status(booking_id, payload.status).as_dict()


@app.post("/api/bookings/{booking_id}/report")
def publish_report(booking_id: str, payload: PublishReportRequest):
    report = container.ledger.publish_report(
        booking_id,
        summary=payload.summary,
        values=payload.values,
        url=payload.url,
    )
    return {"ok": True, "booking_id": report.get("booking_id"), "published_at": report.get("published_at")}


@app.post("/api/reports/view")
def view_report(payload: ViewReportRequest):
    try:
        report = container.gate.verify_and_fetch(payload.booking_id, payload.pin)
    except (NotFound, InvalidPin) as exc:
        raise HTTPException(status_code=401, detail=GENERIC_DENIAL) from exc
    except ReportNotReady as exc:
        raise HTTPException(status_code=404, detail="Report not available yet") from exc
    return {"report": report}


@app.post("/api/promos/apply")
def apply_promo(payload: ApplyPromoRequest):
    return container.promos.apply_promo(payload.code, payload.price).as_dict()
