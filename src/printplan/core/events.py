from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventKind = Literal["skip", "deferral", "rollback", "warning", "degraded_strategy", "allocation"]


@dataclass(frozen=True)
class PlanningEvent:
    kind: EventKind
    reason: str
    message: str
    printer_id: str | None = None
    project_id: str | None = None
    cycle_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "message": self.message,
            "printer_id": self.printer_id,
            "project_id": self.project_id,
            "cycle_id": self.cycle_id,
            "details": dict(self.details),
            "at": self.at.isoformat(),
        }


class DecisionLog:
    """Collects structured planning events for one run.

    Each record is also mirrored to the module logger so operators see it
    without reading the run result.
    """

    def __init__(self) -> None:
        self._events: list[PlanningEvent] = []

    def emit(
        self,
        kind: EventKind,
        reason: str,
        message: str,
        *,
        printer_id: str | None = None,
        project_id: str | None = None,
        cycle_id: str | None = None,
        **details: Any,
    ) -> PlanningEvent:
        event = PlanningEvent(
            kind=kind,
            reason=reason,
            message=message,
            printer_id=printer_id,
            project_id=project_id,
            cycle_id=cycle_id,
            details=details,
        )
        self._events.append(event)
        level = logging.WARNING if kind in ("rollback", "warning", "degraded_strategy") else logging.INFO
        logger.log(level, "[%s] %s: %s", kind, reason, message)
        return event

    @property
    def events(self) -> list[PlanningEvent]:
        return list(self._events)

    def by_kind(self, kind: EventKind) -> list[PlanningEvent]:
        return [e for e in self._events if e.kind == kind]

    def by_reason(self, reason: str) -> list[PlanningEvent]:
        return [e for e in self._events if e.reason == reason]

    def __len__(self) -> int:
        return len(self._events)
