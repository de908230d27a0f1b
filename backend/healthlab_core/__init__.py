from .catalog import Catalog
from .conversation import ConversationOrchestrator
from .errors import (
    HealthLabError,
    InvalidPin,
    InvalidSchedule,
    InvalidTransition,
    Locked,
    NotFound,
    ReportNotReady,
    ScoringTimeout,
    UnknownTest,
    ValidationError,
)
from .gate import GENERIC_DENIAL, ReportAccessGate
from .hooks import AuditEvent, HookRunner, log_event
from .intents import IntentClassifier
from .ledger import BookingLedger
from .matcher import SymptomMatcher
from .models import Booking, ChatReply, IssuedBooking, LabTest, PromoResult, Suggestion
from .promo import PromoEngine
from .registry import ScorerDefinition, ScorerRegistry, SymptomScorer

__all__ = [
    "GENERIC_DENIAL",
    "AuditEvent",
    "Booking",
    "BookingLedger",
    "Catalog",
    "ChatReply",
    "ConversationOrchestrator",
    "HealthLabError",
    "HookRunner",
    "IntentClassifier",
    "InvalidPin",
    "InvalidSchedule",
    "InvalidTransition",
    "IssuedBooking",
    "LabTest",
    "Locked",
    "NotFound",
    "PromoEngine",
    "PromoResult",
    "ReportAccessGate",
    "ReportNotReady",
    "ScorerDefinition",
    "ScorerRegistry",
    "ScoringTimeout",
    "Suggestion",
    "SymptomMatcher",
    "SymptomScorer",
    "UnknownTest",
    "ValidationError",
    "log_event",
]
