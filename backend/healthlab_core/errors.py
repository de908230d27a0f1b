from __future__ import annotations


class HealthLabError(Exception):
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(HealthLabError):
    code = "validation_error"


class UnknownTest(ValidationError):
    code = "unknown_test"


class InvalidSchedule(ValidationError):
    code = "invalid_schedule"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class NotFound(HealthLabError):
    code = "not_found"


class InvalidPin(HealthLabError):
    code = "invalid_pin"


class Locked(HealthLabError):
    code = "locked"

    def __init__(self, message: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(0.0, retry_after_seconds)


class ReportNotReady(HealthLabError):
    code = "report_not_ready"


class ScoringTimeout(HealthLabError):
    code = "scoring_timeout"
