"""
orchestrator.py — Task Loop Runner

Reference driver for the multi-turn cycle:

    create session
      → build context prompt
      → send_prompt (retry-wrapped)
      → parse response
      → apply by phase:
            planning      replace the todo list
            execution     update todos, run the tool call
            verification  approve / reject a todo
            complete      finish
      → repeat until phase `complete` or max_iterations

Nothing here talks to a real model or tool runtime: the host injects a
PromptSender, and optionally a ToolExecutor and a VerificationSystem.

Usage:
    runner = TaskLoopRunner(store, send_prompt, tool_executor=tools,
                            verifier=AutoApprovalVerifier())
    result = await runner.run("Build X", model_id="m1", request_id="r1")
    result.completed, result.todo_stats
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from taskloop.config.settings import RunnerSettings
from taskloop.errors.classifier import ErrorClassifier
from taskloop.errors.retry import RetryEngine, RetryPolicy
from taskloop.exceptions import ClassifiedError
from taskloop.interfaces import (
    PromptSender,
    ToolExecutor,
    ToolOutcome,
    VerificationOutcome,
    VerificationSystem,
)
from taskloop.observability.logger import get_logger, session_context
from taskloop.parsing.recovery import VALID_PHASES
from taskloop.parsing.response_parser import ParsedResponse, ResponseParser
from taskloop.session.models import Phase, Session
from taskloop.session.store import SessionStore
from taskloop.todos.ledger import Todo, TodoStatus

log = get_logger(__name__)


@dataclass
class CycleResult:
    """What one request/response cycle did."""
    iteration: int
    phase: str
    message: str
    parse_error: bool = False
    recovered: bool = False
    complete: bool = False
    tool_outcome: Optional[ToolOutcome] = None
    verification: Optional[VerificationOutcome] = None
    error: Optional[ClassifiedError] = None


@dataclass
class RunResult:
    session_id: str
    completed: bool
    iterations: int
    final_phase: str
    message: str
    todo_stats: dict[str, Any]
    cycles: list[CycleResult] = field(default_factory=list)
    error: Optional[ClassifiedError] = None
    duration_ms: float = 0.0


class TaskLoopRunner:
    """
    Drives one task to completion against an injected model.

    All dependencies are passed in; from_settings() wires the defaults.
    """

    def __init__(
        self,
        store: SessionStore,
        send_prompt: PromptSender,
        *,
        tool_executor: Optional[ToolExecutor] = None,
        verifier: Optional[VerificationSystem] = None,
        parser: Optional[ResponseParser] = None,
        retry: Optional[RetryEngine] = None,
        settings: Optional[RunnerSettings] = None,
        on_cycle: Optional[Callable[[CycleResult], None]] = None,
    ):
        self._store = store
        self._send_prompt = send_prompt
        self._tools = tool_executor
        self._verifier = verifier
        self._retry = retry or RetryEngine()
        self._classifier: ErrorClassifier = self._retry.classifier
        self._parser = parser or ResponseParser(classifier=self._classifier)
        self.settings = settings or RunnerSettings()
        self._on_cycle = on_cycle

    # ─────────────────────────────────────────────────────────────────────────
    # Public
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self, task: str, model_id: str, request_id: str) -> RunResult:
        """
        Create a session for `task` and cycle until complete.

        Caller-input errors from session creation propagate. A prompt that
        still fails after retries ends the run with RunResult.error set.
        """
        session = self._store.create(task, model_id, request_id)
        return await self.resume(session.id)

    async def resume(self, session_id: str) -> RunResult:
        """Continue cycling an existing session."""
        session = self._require_session(session_id)
        with session_context(session.id, session.request_id):
            return await self._run_loop(session)

    async def _run_loop(self, session: Session) -> RunResult:
        t0 = time.monotonic()
        cycles: list[CycleResult] = []
        error: Optional[ClassifiedError] = None
        log.info("runner.start", task=session.original_task[:120])

        try:
            for iteration in range(1, self.settings.max_iterations + 1):
                cycle = await self.run_cycle(session.id, iteration)
                cycles.append(cycle)
                if self._on_cycle:
                    self._on_cycle(cycle)
                if cycle.error is not None:
                    error = cycle.error
                    break
                if cycle.complete:
                    break
            else:
                log.warning("runner.max_iterations", max_iterations=self.settings.max_iterations)
        except asyncio.CancelledError:
            log.info("runner.cancelled")
            raise
        finally:
            self._store.flush_pending()

        completed = bool(cycles) and cycles[-1].complete
        result = RunResult(
            session_id=session.id,
            completed=completed,
            iterations=len(cycles),
            final_phase=session.phase.value,
            message=cycles[-1].message if cycles else "",
            todo_stats=session.todos.stats(),
            cycles=cycles,
            error=error,
            duration_ms=round((time.monotonic() - t0) * 1000, 1),
        )
        log.info("runner.done", completed=completed,
                 iterations=result.iterations, ms=result.duration_ms)
        return result

    async def run_cycle(self, session_id: str, iteration: int = 1) -> CycleResult:
        """One prompt → parse → apply round trip."""
        session = self._require_session(session_id)
        prompt = self._store.build_context_prompt(session.id) or ""

        try:
            raw = await self._retry.execute(
                lambda: self._send_prompt(session.model_id, prompt),
                operation_id=f"prompt_{session.id}_{iteration}",
                context={"session_id": session.id, "stage": "send_prompt"},
            )
        except ClassifiedError as err:
            self._store.log_event(session.id, "prompt_failed", {
                "code": err.code, "category": err.category.value, "error": err.message[:200],
            })
            return CycleResult(iteration=iteration, phase=session.phase.value,
                               message=err.user_message, error=err)

        response = self._parser.parse(raw)
        cycle = CycleResult(
            iteration=iteration,
            phase=response.phase,
            message=response.message,
            parse_error=response.parse_error,
            recovered=response.recovered,
        )

        if response.parse_error:
            self._store.log_event(session.id, "parse_error", {"diagnostics": response.diagnostics[:5]})
            return cycle

        if response.phase == Phase.PLANNING.value:
            self._apply_planning(session, response)
        elif response.phase == Phase.EXECUTION.value:
            self._apply_todo_updates(session, response)
            cycle.tool_outcome = await self._apply_tool_call(session, response)
        elif response.phase == Phase.VERIFICATION.value:
            cycle.verification = await self._apply_verification(session, response)
        elif response.phase == Phase.COMPLETE.value:
            self._store.log_event(session.id, "execution_completed", {"complete": response.complete})

        self._set_phase(session, response.phase)
        cycle.complete = response.phase == Phase.COMPLETE.value or response.complete is True
        self._store.flush_pending()
        return cycle

    # ─────────────────────────────────────────────────────────────────────────
    # Phase handlers
    # ─────────────────────────────────────────────────────────────────────────

    def _apply_planning(self, session: Session, response: ParsedResponse) -> None:
        """A non-empty plan replaces the current todo list."""
        if not response.todos:
            return
        session.todos.clear()
        created = 0
        for data in response.todos:
            if self._create_todo(session, data) is not None:
                created += 1
        self._store.log_event(session.id, "todos_created", {"count": created})
        log.info("runner.plan_applied", session_id=session.id, todos=created)

    def _apply_todo_updates(self, session: Session, response: ParsedResponse) -> None:
        for data in response.todos:
            todo_id = _str_id(data.get("id"))
            existing = session.todos.get(todo_id) if todo_id else None
            if existing is None:
                self._create_todo(session, data)
                continue
            status = data.get("status")
            try:
                if status == TodoStatus.DONE.value and data.get("result"):
                    session.todos.mark_complete(existing.id, str(data["result"]))
                elif status == TodoStatus.FAILED.value and data.get("result"):
                    session.todos.mark_failed(existing.id, str(data["result"]))
                elif status:
                    session.todos.update_status(existing.id, status)
            except ClassifiedError as err:
                self._classifier.handle(err, {"session_id": session.id, "todo_id": existing.id})

    def _create_todo(self, session: Session, data: dict[str, Any]) -> Optional[Todo]:
        description = data.get("description")
        expected = data.get("expectedResult", data.get("expected_result"))
        if not description or not expected:
            log.debug("runner.todo_skipped", session_id=session.id, todo_id=data.get("id"))
            return None
        try:
            todo = session.todos.create(description, expected, _str_id(data.get("id")))
            status = data.get("status")
            if todo is not None and status and status != TodoStatus.PENDING.value:
                session.todos.update_status(todo.id, status)
            return todo
        except ClassifiedError as err:
            self._classifier.handle(err, {"session_id": session.id, "todo_id": data.get("id")})
            return None

    async def _apply_tool_call(self, session: Session, response: ParsedResponse) -> Optional[ToolOutcome]:
        call = response.tool_call
        if not call or not call.get("tool"):
            return None
        tool = call["tool"]
        if not isinstance(tool, str):
            self._classifier.handle(ClassifiedError.validation(
                "Invalid tool call: tool name must be a string",
                code="INVALID_TOOL_CALL",
                context={"tool_call": call},
            ), {"session_id": session.id})
            return None
        if self._tools is None:
            self._store.log_event(session.id, "tool_skipped", {"tool": tool, "reason": "no executor"})
            return None

        params = call.get("params") if isinstance(call.get("params"), dict) else {}
        todo = self._current_todo(session, _str_id(call.get("todoId")))
        if todo is not None and todo.status is TodoStatus.PENDING:
            session.todos.update_status(todo.id, TodoStatus.IN_PROGRESS)

        try:
            outcome: ToolOutcome = await self._retry.execute(
                lambda: self._tools.execute(tool, params),
                operation_id=f"tool_{session.id}_{tool}",
                context={"session_id": session.id, "tool": tool},
            )
        except ClassifiedError as err:
            self._store.log_event(session.id, "tool_error", {
                "tool": tool, "code": err.code, "category": err.category.value,
                "error": err.message[:200],
            })
            return ToolOutcome.failed(tool, err.message)

        self._store.log_event(session.id, "tool_executed", {
            "tool": tool, "success": outcome.success, "result": outcome.summary[:200],
        })
        if todo is not None:
            session.todos.add_tool_call(todo.id, {
                "tool": tool, "params": params, "success": outcome.success,
                "output": outcome.summary[:1000],
            })
        return outcome

    async def _apply_verification(
        self, session: Session, response: ParsedResponse
    ) -> Optional[VerificationOutcome]:
        verification = response.verification
        if not verification or not verification.get("todoId"):
            return None
        todo_id = verification["todoId"]
        todo = session.todos.get(todo_id) if isinstance(todo_id, str) else None
        if todo is None:
            self._store.log_event(session.id, "verification_unknown_todo", {"todo_id": todo_id})
            return None

        approved = verification.get("approved")
        feedback = verification.get("feedback") or ""
        outcome: Optional[VerificationOutcome] = None

        if not isinstance(approved, bool):
            if self._verifier is None:
                return None
            candidate = todo.result or _last_tool_output(todo) or feedback or response.message
            try:
                outcome = await self._verifier.request_verification(todo.id, candidate)
            except ClassifiedError as err:
                self._classifier.handle(err, {"session_id": session.id, "todo_id": todo.id})
                return None
            approved, feedback = outcome.approved, outcome.feedback or feedback

        if approved:
            session.todos.mark_complete(todo.id, feedback or todo.result or "Verification approved")
            self._store.log_event(session.id, "todo_verified", {"todo_id": todo.id, "approved": True})
        elif verification.get("retry", True) is not False:
            session.todos.update_status(todo.id, TodoStatus.PENDING)
            self._store.log_event(session.id, "todo_verification_failed",
                                  {"todo_id": todo.id, "retry": True, "feedback": feedback})
        else:
            session.todos.mark_failed(todo.id, feedback or "Verification failed")
            self._store.log_event(session.id, "todo_verification_failed",
                                  {"todo_id": todo.id, "retry": False, "feedback": feedback})
        return outcome

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _set_phase(self, session: Session, phase: str) -> None:
        if phase not in VALID_PHASES:
            log.warning("runner.unknown_phase", session_id=session.id, phase=phase)
            return
        if phase != session.phase.value:
            self._store.request_update(session.id, {"phase": phase})

    @staticmethod
    def _current_todo(session: Session, todo_id: Optional[str]) -> Optional[Todo]:
        if todo_id:
            todo = session.todos.get(todo_id)
            if todo is not None:
                return todo
        in_progress = session.todos.by_status(TodoStatus.IN_PROGRESS)
        return in_progress[0] if in_progress else session.todos.next_pending()

    def _require_session(self, session_id: str) -> Session:
        session = self._store.get(session_id)
        if session is None:
            raise ClassifiedError.validation(
                f"Session '{session_id}' not found",
                code="SESSION_NOT_FOUND",
                context={"session_id": session_id},
            )
        return session

    # ─────────────────────────────────────────────────────────────────────────
    # Factory
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        store: SessionStore,
        send_prompt: PromptSender,
        tool_executor: Optional[ToolExecutor] = None,
        verifier: Optional[VerificationSystem] = None,
        on_cycle: Optional[Callable[[CycleResult], None]] = None,
    ) -> "TaskLoopRunner":
        """Create a runner from the taskloop Settings object."""
        classifier = ErrorClassifier()
        return cls(
            store=store,
            send_prompt=send_prompt,
            tool_executor=tool_executor,
            verifier=verifier,
            parser=ResponseParser(settings.parser, classifier=classifier),
            retry=RetryEngine(classifier=classifier, policy=RetryPolicy.from_settings(settings.retry)),
            settings=settings.runner,
            on_cycle=on_cycle,
        )


def _last_tool_output(todo: Todo) -> Optional[str]:
    if not todo.tool_calls:
        return None
    return todo.tool_calls[-1].get("output")


def _str_id(value: Any) -> Optional[str]:
    """Model-supplied ids are only trusted when they are strings."""
    return value if isinstance(value, str) else None
