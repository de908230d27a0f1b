from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("healthlab.audit")


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    user_id: str | None = None
    booking_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


AfterHook = Callable[[AuditEvent], None]


class HookRunner:
    def __init__(self) -> None:
        self._after_hooks: list[AfterHook] = []

    def add_after(self, hook: AfterHook) -> None:
        self._after_hooks.append(hook)

    def run_after(self, event: AuditEvent) -> None:
        for hook in self._after_hooks:
            hook(event)

    def emit(
        self,
        event_type: str,
        *,
        user_id: str | None = None,
        booking_id: str | None = None,
        **details: Any,
    ) -> None:
        self.run_after(AuditEvent(event_type=event_type, user_id=user_id, booking_id=booking_id, details=details))


def log_event(event: AuditEvent) -> None:
    logger.info(
        "audit event=%s user=%s booking=%s details=%s",
        event.event_type,
        event.user_id or "-",
        event.booking_id or "-",
        event.details,
    )
