"""
session/models.py — Per-Session State

One Session exists per submitted task. It holds the task identity, the
current phase, the embedded TodoLedger, a bounded execution log and a
free-form context map.

Sessions are owned by SessionStore; mutate them through the store so
batching, activity tracking and logging stay consistent.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from taskloop.exceptions import ClassifiedError
from taskloop.todos.ledger import DEFAULT_MAX_TODOS, TodoLedger

DEFAULT_MAX_LOG_ENTRIES = 50


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    COMPLETE = "complete"


def parse_phase(value: Any) -> Phase:
    if isinstance(value, Phase):
        return value
    try:
        return Phase(value)
    except ValueError:
        raise ClassifiedError.validation(
            f"Invalid phase: {value!r}. Must be one of: "
            f"{', '.join(p.value for p in Phase)}",
            code="INVALID_PHASE",
            context={"phase": value},
        ) from None


@dataclass
class LogEntry:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "type": self.type, "payload": dict(self.payload)}


class Session:
    """All runtime state for one task execution."""

    def __init__(
        self,
        session_id: str,
        original_task: str,
        model_id: str,
        request_id: str,
        now: Optional[float] = None,
        max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
        max_todos: int = DEFAULT_MAX_TODOS,
        max_description_length: int = 1000,
        clock=time.time,
    ):
        now = clock() if now is None else now
        self.id = session_id
        self.original_task = original_task
        self.model_id = model_id
        self.request_id = request_id
        self.phase = Phase.PLANNING
        self.start_time = now
        self.last_activity = now
        self.context: dict[str, Any] = {}

        self.todos = TodoLedger(
            max_todos=max_todos,
            max_description_length=max_description_length,
            clock=clock,
            owner_id=session_id,
        )
        # Oldest entries fall off once the cap is reached.
        self.execution_log: deque[LogEntry] = deque(maxlen=max_log_entries)

    # ── Activity ──────────────────────────────────────────────────────────────

    def touch(self, now: float) -> None:
        self.last_activity = now

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    # ── Log ───────────────────────────────────────────────────────────────────

    def add_log(self, entry_type: str, payload: Optional[dict[str, Any]] = None,
                now: Optional[float] = None) -> LogEntry:
        entry = LogEntry(
            type=entry_type,
            payload=dict(payload or {}),
            timestamp=time.time() if now is None else now,
        )
        self.execution_log.append(entry)
        return entry

    def recent_log(self, n: int) -> list[LogEntry]:
        if n <= 0:
            return []
        return list(self.execution_log)[-n:]

    # ── Summary ───────────────────────────────────────────────────────────────

    def status_summary(self, now: float) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "phase": self.phase.value,
            "todos": self.todos.stats(),
            "log_entries": len(self.execution_log),
            "idle_seconds": round(self.idle_for(now), 1),
            "age_seconds": round(now - self.start_time, 1),
        }

    def __repr__(self) -> str:
        return (f"<Session id={self.id} phase={self.phase.value} "
                f"todos={len(self.todos)} log={len(self.execution_log)}>")
