"""
session/store.py — Session Store

Owns every live Session: creation with capacity control, debounced batched
updates, context building for prompts, and the two housekeeping sweeps.

Batching:
    request_update() validates immediately, then queues the partial update.
    Updates for the same session inside the batch window (100 ms) merge,
    later keys winning, and are applied as ONE mutation with ONE
    `session_updated` log entry. With a running event loop the flush is
    scheduled on loop.call_later. In host-driven mode tick() applies every
    batch whose window has closed, and a new update for a session whose
    batch is already due applies that batch first instead of merging.
    flush_pending() and shutdown() apply everything immediately.

Sweeps (driven by a PeriodicSweeper):
    expire_sweep    every 5 min  — drop sessions idle > 30 min
    memory_compact  every 15 min — prune todos terminal for > 1 h

A session with a queued update is never expired.

Usage:
    store = SessionStore(settings.session, settings.todos)
    await store.start()
    session = store.create("Build X", "model-1", "req-1")
    store.request_update(session.id, {"phase": "execution"})
    prompt = store.build_context_prompt(session.id)
    await store.shutdown()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from taskloop.config.settings import SessionSettings, TodoSettings
from taskloop.errors.classifier import ErrorClassifier
from taskloop.exceptions import ClassifiedError, ErrorCategory
from taskloop.observability.logger import get_logger
from taskloop.session.models import Session, parse_phase
from taskloop.session.sweeper import PeriodicSweeper
from taskloop.todos.ledger import TodoLedger

log = get_logger(__name__)

EXPIRE_JOB = "expire_sweep"
COMPACT_JOB = "memory_compact"

_IDENTITY_FIELDS: dict[str, str] = {
    "original_task": "INVALID_TASK",
    "model_id": "INVALID_MODEL_ID",
    "request_id": "INVALID_REQUEST_ID",
}


def _new_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:16]}"


class SessionStore:
    """
    In-memory session registry for one process.

    Construct explicitly and pass it where needed; pair start() with
    shutdown() when the sweeps should run in the background.
    """

    def __init__(
        self,
        settings: Optional[SessionSettings] = None,
        todo_settings: Optional[TodoSettings] = None,
        *,
        clock: Callable[[], float] = time.time,
        classifier: Optional[ErrorClassifier] = None,
        logger=None,
        id_factory: Callable[[], str] = _new_session_id,
        sweeper: Optional[PeriodicSweeper] = None,
    ):
        self.settings = settings or SessionSettings()
        self.todo_settings = todo_settings or TodoSettings()
        self._clock = clock
        self._classifier = classifier if classifier is not None else ErrorClassifier()
        self._log = logger or log
        self._id_factory = id_factory

        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, dict[str, Any]] = {}
        self._pending_since: dict[str, float] = {}
        self._flush_handle: Optional[asyncio.TimerHandle] = None

        self._sweeper = sweeper or PeriodicSweeper(clock=clock)
        self._sweeps_registered = False

        self._metrics: dict[str, Any] = {
            "sessions_created": 0,
            "sessions_deleted": 0,
            "sessions_expired": 0,
            "peak_session_count": 0,
            "updates_requested": 0,
            "updates_applied": 0,
            "memory_cleanups": 0,
            "last_cleanup_time": None,
            "average_session_duration": 0.0,
        }

    # ── Create ────────────────────────────────────────────────────────────────

    def create(self, task: Any, model_id: Any, request_id: Any) -> Session:
        """
        Create a new session in phase `planning`.

        Raises ClassifiedError on bad arguments, when the store is still
        full after an expiry sweep, or when no unique id can be generated.
        """
        if not isinstance(task, str):
            raise self._field_error("task", "INVALID_TASK", "Task must be a non-empty string")
        if not task.strip():
            raise self._field_error("task", "EMPTY_TASK", "Task cannot be empty")
        if not isinstance(model_id, str) or not model_id.strip():
            raise self._field_error("model_id", "INVALID_MODEL_ID", "Model ID must be a non-empty string")
        if not isinstance(request_id, str) or not request_id.strip():
            raise self._field_error("request_id", "INVALID_REQUEST_ID", "Request ID must be a non-empty string")

        if len(self._sessions) >= self.settings.max_sessions:
            cleaned = self.expire_sweep()
            if len(self._sessions) >= self.settings.max_sessions:
                raise ClassifiedError(
                    f"Maximum number of sessions ({self.settings.max_sessions}) reached",
                    category=ErrorCategory.SYSTEM,
                    code="SESSION_LIMIT_EXCEEDED",
                    retryable=False,
                    context={
                        "current_sessions": len(self._sessions),
                        "max_sessions": self.settings.max_sessions,
                        "cleaned_sessions": cleaned,
                    },
                    suggestions=[
                        "Wait for existing sessions to complete",
                        "Delete finished sessions explicitly",
                        "Increase session.max_sessions",
                    ],
                )

        session_id = self._generate_id()
        now = self._clock()
        session = Session(
            session_id=session_id,
            original_task=task.strip(),
            model_id=model_id.strip(),
            request_id=request_id.strip(),
            now=now,
            max_log_entries=self.settings.max_log_entries,
            max_todos=self.todo_settings.max_todos,
            max_description_length=self.todo_settings.max_description_length,
            clock=self._clock,
        )
        session.add_log("session_created", {
            "task": session.original_task,
            "model_id": session.model_id,
            "request_id": session.request_id,
        }, now=now)

        self._sessions[session_id] = session
        self._metrics["sessions_created"] += 1
        self._metrics["peak_session_count"] = max(
            self._metrics["peak_session_count"], len(self._sessions)
        )
        self._log.info("session_store.created", session_id=session_id,
                       model_id=session.model_id, request_id=session.request_id,
                       task_preview=session.original_task[:80])
        return session

    def _generate_id(self) -> str:
        attempts = self.settings.id_generation_attempts
        for _ in range(attempts):
            candidate = self._id_factory()
            if candidate not in self._sessions:
                return candidate
        raise ClassifiedError(
            f"Could not generate a unique session ID after {attempts} attempts",
            category=ErrorCategory.SYSTEM,
            code="SESSION_ID_CONFLICT",
            context={"attempts": attempts},
        )

    @staticmethod
    def _field_error(field_name: str, code: str, message: str) -> ClassifiedError:
        return ClassifiedError.validation(message, code=code, context={"field": field_name})

    # ── Read ──────────────────────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch(self._clock())
        return session

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def count(self) -> int:
        return len(self._sessions)

    def has_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    # ── Batched updates ───────────────────────────────────────────────────────

    def request_update(self, session_id: str, fields: dict[str, Any]) -> bool:
        """
        Queue a partial update. Returns False if the session is unknown.

        Known keys: phase, context (merged), original_task, model_id,
        request_id, todos (list of todo dicts, replaces the ledger).
        Unknown keys are stored into context. `id` is ignored.
        """
        if session_id not in self._sessions:
            return False
        if not isinstance(fields, dict):
            raise ClassifiedError.validation(
                "Update must be a mapping of field names to values",
                code="INVALID_UPDATE",
                context={"type": type(fields).__name__},
            )

        update = self._normalize_update(session_id, fields)
        now = self._clock()
        if self._batch_due(session_id, now):
            self._flush_sessions([session_id])

        self._pending_since.setdefault(session_id, now)
        pending = self._pending.setdefault(session_id, {})
        for key, value in update.items():
            if key == "context":
                pending.setdefault("context", {}).update(value)
            else:
                pending[key] = value

        self._metrics["updates_requested"] += 1
        self._schedule_flush()
        return True

    def _normalize_update(self, session_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Validate eagerly so a deferred flush never fails on caller input."""
        update: dict[str, Any] = {}
        extra_context: dict[str, Any] = {}

        for key, value in fields.items():
            if key == "id":
                self._log.warning("session_store.id_update_ignored", session_id=session_id)
            elif key == "phase":
                update["phase"] = parse_phase(value)
            elif key == "context":
                if not isinstance(value, dict):
                    raise ClassifiedError.validation(
                        "context must be a mapping",
                        code="INVALID_CONTEXT",
                        context={"field": "context", "type": type(value).__name__},
                    )
                extra_context.update(value)
            elif key in _IDENTITY_FIELDS:
                if not isinstance(value, str) or not value.strip():
                    raise self._field_error(key, _IDENTITY_FIELDS[key], f"{key} must be a non-empty string")
                update[key] = value.strip()
            elif key == "todos":
                # Dry-run the import against a scratch ledger.
                TodoLedger(
                    max_todos=self.todo_settings.max_todos,
                    max_description_length=self.todo_settings.max_description_length,
                ).import_(value)
                update["todos"] = [dict(t) for t in value]
            else:
                extra_context[key] = value

        if extra_context:
            update["context"] = extra_context
        return update

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_handle = loop.call_later(self.settings.batch_window_seconds, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._flush_handle = None
        self.flush_pending()

    def flush_pending(self) -> int:
        """Apply every queued update now. Returns the number of sessions updated."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        return self._flush_sessions(list(self._pending))

    def flush_due(self, now: Optional[float] = None) -> int:
        """Apply only the batches whose window has closed."""
        now = self._clock() if now is None else now
        return self._flush_sessions([sid for sid in self._pending if self._batch_due(sid, now)])

    def _batch_due(self, session_id: str, now: float) -> bool:
        since = self._pending_since.get(session_id)
        return since is not None and now - since >= self.settings.batch_window_seconds

    def _flush_sessions(self, session_ids: list[str]) -> int:
        applied = 0
        for session_id in session_ids:
            update = self._pending.pop(session_id, None)
            self._pending_since.pop(session_id, None)
            session = self._sessions.get(session_id)
            if update is None or session is None:
                continue
            self._apply(session, update)
            applied += 1
        if applied:
            self._log.debug("session_store.batch_flushed", sessions=applied)
        return applied

    def _apply(self, session: Session, update: dict[str, Any]) -> None:
        now = self._clock()
        for key, value in update.items():
            if key == "phase":
                session.phase = value
            elif key == "context":
                session.context.update(value)
            elif key == "todos":
                try:
                    session.todos.import_(value)
                except ClassifiedError as err:
                    self._classifier.handle(err, {"session_id": session.id, "stage": "batch_apply"})
            else:
                setattr(session, key, value)

        session.add_log("session_updated", {"fields": sorted(update)}, now=now)
        session.touch(now)
        self._metrics["updates_applied"] += 1
        self._log.debug("session_store.updated", session_id=session.id,
                        fields=sorted(update), phase=session.phase.value)

    # ── Delete ────────────────────────────────────────────────────────────────

    def delete(self, session_id: str) -> bool:
        self._pending.pop(session_id, None)
        self._pending_since.pop(session_id, None)
        if self._sessions.pop(session_id, None) is None:
            return False
        self._metrics["sessions_deleted"] += 1
        self._log.info("session_store.deleted", session_id=session_id)
        return True

    def clear(self) -> int:
        """Drop every session and queued update. Returns the number of sessions removed."""
        removed = len(self._sessions)
        self._sessions.clear()
        self._pending.clear()
        self._pending_since.clear()
        if removed:
            self._log.info("session_store.cleared", sessions=removed)
        return removed

    # ── Context ───────────────────────────────────────────────────────────────

    def build_context(self, session_id: str) -> Optional[dict[str, Any]]:
        """Snapshot of a session for prompt construction. Touches activity."""
        session = self.get(session_id)
        if session is None:
            return None
        return {
            "session_id": session.id,
            "original_task": session.original_task,
            "model_id": session.model_id,
            "request_id": session.request_id,
            "phase": session.phase.value,
            "todos": session.todos.export(),
            "todo_stats": session.todos.stats(),
            "execution_log": [
                e.to_dict() for e in session.recent_log(self.settings.context_log_entries)
            ],
            "start_time": session.start_time,
            "last_activity": session.last_activity,
            "context": dict(session.context),
        }

    def build_context_prompt(self, session_id: str) -> Optional[str]:
        """Markdown rendering of build_context() for the next model request."""
        ctx = self.build_context(session_id)
        if ctx is None:
            return None

        lines = [
            "# Task Context",
            "",
            f"**Session ID:** {ctx['session_id']}",
            f"**Original Task:** {ctx['original_task']}",
            f"**Current Phase:** {ctx['phase']}",
            f"**Session Started:** {_iso(ctx['start_time'])}",
            "",
        ]

        if ctx["todos"]:
            lines += ["## Current TODOs", ""]
            for index, todo in enumerate(ctx["todos"], start=1):
                lines.append(f"{index}. **{todo['description']}** ({todo['status']}) [id: {todo['id']}]")
                if todo["expected_result"]:
                    lines.append(f"   Expected: {todo['expected_result']}")
                if todo["result"]:
                    lines.append(f"   Result: {todo['result']}")
                lines.append("")

        if ctx["execution_log"]:
            lines += ["## Recent Execution Log", ""]
            for entry in ctx["execution_log"]:
                lines.append(f"- **{entry['type']}** ({_iso(entry['timestamp'])})")
                if entry["payload"]:
                    details = ", ".join(f"{k}={v}" for k, v in entry["payload"].items())
                    lines.append(f"  {details[:300]}")
            lines.append("")

        lines += [
            "## Instructions",
            "Continue the task based on the context above. "
            "Respond with the JSON format for the current phase.",
        ]
        return "\n".join(lines) + "\n"

    def log_event(self, session_id: str, entry_type: str, payload: Optional[dict[str, Any]] = None) -> bool:
        """Append an entry to a session's execution log."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        now = self._clock()
        session.add_log(entry_type, payload, now=now)
        session.touch(now)
        return True

    # ── Sweeps ────────────────────────────────────────────────────────────────

    def expire_sweep(self) -> int:
        """Remove sessions idle longer than the timeout. Returns the number removed."""
        now = self._clock()
        timeout = self.settings.session_timeout_seconds
        expired = [
            s for s in self._sessions.values()
            if s.idle_for(now) > timeout and s.id not in self._pending
        ]

        self._metrics["last_cleanup_time"] = now
        if expired:
            durations = [s.last_activity - s.start_time for s in expired]
            self._metrics["average_session_duration"] = sum(durations) / len(durations)
            self._metrics["sessions_expired"] += len(expired)
            for session in expired:
                del self._sessions[session.id]
            self._log.info("session_store.expired", count=len(expired),
                           remaining=len(self._sessions))
        return len(expired)

    def memory_compact(self) -> int:
        """
        Prune todos that have been terminal longer than the retention window.

        Execution logs are bounded deques, so they never need trimming here.
        Returns the number of sessions modified.
        """
        now = self._clock()
        modified = 0
        for session in self._sessions.values():
            pruned = session.todos.prune_terminal(self.settings.todo_retention_seconds, now=now)
            if pruned:
                modified += 1
                session.touch(now)
                self._log.debug("session_store.todos_pruned", session_id=session.id, pruned=pruned)

        self._metrics["memory_cleanups"] += 1
        if modified:
            self._log.info("session_store.compacted", sessions=modified)
        return modified

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _register_sweeps(self) -> None:
        if self._sweeps_registered:
            return
        self._sweeper.add(EXPIRE_JOB, self.settings.cleanup_interval_seconds, self.expire_sweep)
        self._sweeper.add(COMPACT_JOB, self.settings.compact_interval_seconds, self.memory_compact)
        self._sweeps_registered = True

    async def start(self) -> None:
        """Register both sweeps and run them in the background."""
        self._register_sweeps()
        await self._sweeper.start()
        self._log.info("session_store.started", max_sessions=self.settings.max_sessions)

    def tick(self, now: Optional[float] = None) -> dict[str, Any]:
        """Advance the sweeps from the host instead of the background loop.

        Batches whose window has closed are applied before the sweeps run.
        """
        self._register_sweeps()
        self.flush_due(now)
        return self._sweeper.tick(now)

    async def shutdown(self) -> None:
        """Flush queued updates, then stop the sweeps."""
        flushed = self.flush_pending()
        await self._sweeper.stop()
        self._log.info("session_store.shutdown", flushed=flushed, sessions=len(self._sessions))

    # ── Stats ─────────────────────────────────────────────────────────────────

    def memory_stats(self) -> dict[str, Any]:
        now = self._clock()
        active_window = self.settings.active_window_seconds
        sessions = list(self._sessions.values())
        return {
            "session_count": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.idle_for(now) < active_window),
            "total_todos": sum(len(s.todos) for s in sessions),
            "total_log_entries": sum(len(s.execution_log) for s in sessions),
            "pending_updates": len(self._pending),
            "oldest_session_age": round(max((now - s.start_time for s in sessions), default=0.0)),
            "metrics": dict(self._metrics),
            "limits": {
                "max_sessions": self.settings.max_sessions,
                "max_log_entries": self.settings.max_log_entries,
                "max_todos_per_session": self.todo_settings.max_todos,
                "session_timeout": self.settings.session_timeout_seconds,
                "cleanup_interval": self.settings.cleanup_interval_seconds,
            },
        }

    def performance_metrics(self) -> dict[str, Any]:
        stats = self.memory_stats()
        return {
            "timestamp": self._clock(),
            "sessions": {
                "total": stats["session_count"],
                "active": stats["active_sessions"],
                "created": self._metrics["sessions_created"],
                "expired": self._metrics["sessions_expired"],
                "peak_count": self._metrics["peak_session_count"],
            },
            "memory": {
                "todos_count": stats["total_todos"],
                "log_entries_count": stats["total_log_entries"],
            },
            "performance": {
                "average_session_duration": round(self._metrics["average_session_duration"]),
                "memory_cleanups": self._metrics["memory_cleanups"],
                "last_cleanup_time": self._metrics["last_cleanup_time"],
                "updates_requested": self._metrics["updates_requested"],
                "updates_applied": self._metrics["updates_applied"],
            },
        }

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __repr__(self) -> str:
        return f"<SessionStore sessions={len(self._sessions)} pending={len(self._pending)}>"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
