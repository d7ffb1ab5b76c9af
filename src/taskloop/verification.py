"""
verification.py — Auto-Approval Verifier

Reference VerificationSystem. Decides whether a completed todo's result is
acceptable without bothering a human when the result is obviously fine.

Decision order:
    1. result matches an auto-approval rule ("File x created successfully",
       "Command executed successfully", ...)        → approved
    2. result contains a success keyword and no error keyword → approved
    3. otherwise a pending request is opened and awaited; a host resolves
       it with respond(). Unanswered requests approve on timeout.

Usage:
    verifier = AutoApprovalVerifier(settings.verification)
    outcome = await verifier.request_verification("todo_1", "File a.py created successfully")
    outcome.approved, outcome.auto_approved   # True, True

    # elsewhere, for a pending request:
    verifier.respond(verification_id, approved=False, feedback="wrong file")
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from taskloop.config.settings import VerificationSettings
from taskloop.exceptions import ClassifiedError, ErrorCategory
from taskloop.interfaces import VerificationOutcome, VerificationStatus
from taskloop.observability.logger import get_logger

log = get_logger(__name__)

HISTORY_LIMIT = 1000

AUTO_APPROVAL_RULES: dict[str, re.Pattern[str]] = {
    "file_created": re.compile(r"^(File|Directory) .+ (created|written) successfully", re.I),
    "file_read": re.compile(r"^(File|Content) .+ (read|retrieved) successfully", re.I),
    "file_deleted": re.compile(r"^(File|Directory) .+ (deleted|removed) successfully", re.I),
    "search_completed": re.compile(r"^Search (completed|found \d+ results)", re.I),
    "command_success": re.compile(r"^Command executed successfully", re.I),
    "todo_created": re.compile(r"^TODO .+ created successfully", re.I),
    "todo_updated": re.compile(r"^TODO .+ updated successfully", re.I),
}

SUCCESS_INDICATORS: tuple[str, ...] = (
    "success", "successful", "completed", "done", "created", "updated",
    "saved", "written", "deleted", "removed", "found", "retrieved",
)

ERROR_INDICATORS: tuple[str, ...] = (
    "error", "failed", "failure", "exception", "crash", "timeout",
    "not found", "permission denied", "access denied", "invalid",
)


@dataclass
class PendingVerification:
    id: str
    todo_id: str
    result: str
    created_at: float
    timeout_seconds: float
    future: "asyncio.Future[tuple[bool, str]]"


def should_auto_approve(result: str) -> bool:
    for pattern in AUTO_APPROVAL_RULES.values():
        if pattern.search(result):
            return True
    lowered = result.lower()
    has_success = any(word in lowered for word in SUCCESS_INDICATORS)
    has_error = any(word in lowered for word in ERROR_INDICATORS)
    return has_success and not has_error


class AutoApprovalVerifier:
    """Satisfies interfaces.VerificationSystem."""

    def __init__(
        self,
        settings: Optional[VerificationSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or VerificationSettings()
        self._clock = clock
        self._pending: dict[str, PendingVerification] = {}
        self._history: list[VerificationOutcome] = []

    # ── Request ───────────────────────────────────────────────────────────────

    async def request_verification(
        self,
        todo_id: str,
        result: str,
        *,
        timeout_seconds: Optional[float] = None,
        allow_auto_approval: bool = True,
    ) -> VerificationOutcome:
        if not isinstance(todo_id, str) or not todo_id:
            raise ClassifiedError.validation(
                "TODO ID is required and must be a string",
                code="INVALID_TODO_ID",
                context={"field": "todo_id"},
            )
        if not isinstance(result, str) or not result:
            raise ClassifiedError.validation(
                "Result is required and must be a string",
                code="INVALID_RESULT",
                context={"field": "result", "todo_id": todo_id},
            )
        if len(self._pending) >= self.settings.max_pending:
            raise ClassifiedError(
                "Maximum number of pending verifications reached",
                category=ErrorCategory.SYSTEM,
                code="VERIFICATION_LIMIT_EXCEEDED",
                context={"pending": len(self._pending), "max_pending": self.settings.max_pending},
            )

        verification_id = f"verify_{uuid.uuid4().hex[:12]}"
        now = self._clock()

        if allow_auto_approval and self.settings.auto_approval_enabled and should_auto_approve(result):
            outcome = VerificationOutcome(
                id=verification_id,
                todo_id=todo_id,
                result=result,
                status=VerificationStatus.APPROVED,
                approved=True,
                feedback="Auto-approved based on result pattern",
                auto_approved=True,
                created_at=now,
                completed_at=now,
            )
            self._record(outcome)
            return outcome

        timeout = timeout_seconds or self.settings.timeout_seconds
        future: asyncio.Future[tuple[bool, str]] = asyncio.get_running_loop().create_future()
        self._pending[verification_id] = PendingVerification(
            id=verification_id,
            todo_id=todo_id,
            result=result,
            created_at=now,
            timeout_seconds=timeout,
            future=future,
        )
        log.info("verification.pending", verification_id=verification_id,
                 todo_id=todo_id, timeout_s=timeout)

        try:
            approved, feedback = await asyncio.wait_for(future, timeout=timeout)
            status = VerificationStatus.APPROVED if approved else VerificationStatus.REJECTED
        except asyncio.TimeoutError:
            log.warning("verification.timeout", verification_id=verification_id, todo_id=todo_id)
            approved, feedback, status = True, "Auto-approved after timeout", VerificationStatus.TIMEOUT
        finally:
            self._pending.pop(verification_id, None)

        outcome = VerificationOutcome(
            id=verification_id,
            todo_id=todo_id,
            result=result,
            status=status,
            approved=approved,
            feedback=feedback,
            created_at=now,
            completed_at=self._clock(),
        )
        self._record(outcome)
        return outcome

    def _record(self, outcome: VerificationOutcome) -> None:
        self._history.append(outcome)
        if len(self._history) > HISTORY_LIMIT:
            del self._history[: len(self._history) - HISTORY_LIMIT]
        log.info("verification.completed", verification_id=outcome.id, todo_id=outcome.todo_id,
                 status=outcome.status.value, auto_approved=outcome.auto_approved)

    # ── Host side ─────────────────────────────────────────────────────────────

    def respond(self, verification_id: str, approved: bool, feedback: str = "") -> bool:
        """Resolve a pending request. Returns False if it is unknown or already resolved."""
        pending = self._pending.get(verification_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result((approved, feedback))
        return True

    def cancel(self, verification_id: str) -> bool:
        """Abort a pending request; the waiting caller gets a ClassifiedError."""
        pending = self._pending.pop(verification_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(ClassifiedError(
                "Verification was cancelled",
                category=ErrorCategory.USER_INPUT,
                code="VERIFICATION_CANCELLED",
                retryable=False,
                context={"verification_id": verification_id, "todo_id": pending.todo_id},
            ))
        log.info("verification.cancelled", verification_id=verification_id, todo_id=pending.todo_id)
        return True

    def cancel_all(self) -> int:
        ids = list(self._pending)
        for verification_id in ids:
            self.cancel(verification_id)
        return len(ids)

    # ── Introspection ─────────────────────────────────────────────────────────

    def pending(self) -> list[PendingVerification]:
        return list(self._pending.values())

    def get_pending(self, verification_id: str) -> Optional[PendingVerification]:
        return self._pending.get(verification_id)

    def history(
        self,
        todo_id: Optional[str] = None,
        status: Optional[VerificationStatus] = None,
        limit: Optional[int] = None,
    ) -> list[VerificationOutcome]:
        """Newest first."""
        items = [
            o for o in reversed(self._history)
            if (todo_id is None or o.todo_id == todo_id)
            and (status is None or o.status == status)
        ]
        return items[:limit] if limit else items

    def stats(self) -> dict[str, Any]:
        total = len(self._history)
        counts = {s.value: 0 for s in VerificationStatus}
        auto = 0
        response_times: list[float] = []
        for outcome in self._history:
            counts[outcome.status.value] += 1
            if outcome.auto_approved:
                auto += 1
            else:
                response_times.append(outcome.completed_at - outcome.created_at)
        return {
            "total": total,
            "pending": len(self._pending),
            **counts,
            "auto_approved": auto,
            "average_response_time": (sum(response_times) / len(response_times)) if response_times else 0.0,
            "approval_rate": (counts["approved"] / total * 100) if total else 0,
            "auto_approval_rate": (auto / total * 100) if total else 0,
        }
