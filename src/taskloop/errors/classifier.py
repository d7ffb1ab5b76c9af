"""
errors/classifier.py — Deterministic Failure Classification

Maps an arbitrary failure onto the taskloop taxonomy (category, severity,
retryable flag, user message, suggestions) by exception type first and
then by keyword matching on the lower-cased message. The first matching
rule wins; unmatched failures degrade to `system`.

classify() never raises: a failure while classifying is itself reported
as a system error.

ErrorClassifier adds the stateful side used by the retry engine and the
session store: a bounded global error log, severity-keyed logging, stats
and recovery plans.

Usage:
    from taskloop.errors.classifier import ErrorClassifier, classify

    err = classify(OSError("connect ECONNREFUSED 127.0.0.1:443"))
    err.category   # ErrorCategory.NETWORK
    err.retryable  # True

    classifier = ErrorClassifier()
    err = classifier.handle(exc, {"operation_id": "op_1a2b"})
"""

from __future__ import annotations

import json
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Optional

from taskloop.exceptions import ClassifiedError, ErrorCategory, ErrorSeverity
from taskloop.observability.logger import get_logger

log = get_logger(__name__)

ERROR_LOG_LIMIT = 1000


# ─────────────────────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class _Rule:
    category: ErrorCategory
    patterns: tuple[str, ...]


# Order matters: the first rule with a matching pattern wins.
_RULES: tuple[_Rule, ...] = (
    _Rule(ErrorCategory.NETWORK, (
        "network", "connection", "econnrefused", "enotfound",
        "etimedout", "econnreset", "socket hang up",
    )),
    _Rule(ErrorCategory.FILESYSTEM, (
        "enoent", "file not found", "directory not found", "no such file",
        "eexist", "enospc", "emfile", "is a directory",
    )),
    _Rule(ErrorCategory.PERMISSION, (
        "eacces", "eperm", "permission denied", "access denied", "forbidden",
    )),
    _Rule(ErrorCategory.VALIDATION, (
        "invalid", "validation", "required", "missing",
    )),
    _Rule(ErrorCategory.TIMEOUT, (
        "timeout", "timed out", "deadline exceeded",
    )),
    _Rule(ErrorCategory.PARSING, (
        "parse", "json", "syntax", "unexpected token",
    )),
    _Rule(ErrorCategory.TOOL_EXECUTION, (
        "tool",
    )),
    _Rule(ErrorCategory.HOST_API, (
        "workspace", "editor", "command", "host api",
    )),
    _Rule(ErrorCategory.USER_INPUT, (
        "user input",
    )),
)

# Checked before message keywords; subclasses listed before their bases.
_TYPE_RULES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (json.JSONDecodeError, ErrorCategory.PARSING),
    (TimeoutError, ErrorCategory.TIMEOUT),
    (ConnectionError, ErrorCategory.NETWORK),
    (PermissionError, ErrorCategory.PERMISSION),
    (FileNotFoundError, ErrorCategory.FILESYSTEM),
    (IsADirectoryError, ErrorCategory.FILESYSTEM),
    (FileExistsError, ErrorCategory.FILESYSTEM),
)

_SEVERITY: dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.NETWORK:        ErrorSeverity.MEDIUM,
    ErrorCategory.FILESYSTEM:     ErrorSeverity.MEDIUM,
    ErrorCategory.PERMISSION:     ErrorSeverity.HIGH,
    ErrorCategory.VALIDATION:     ErrorSeverity.LOW,
    ErrorCategory.TIMEOUT:        ErrorSeverity.MEDIUM,
    ErrorCategory.PARSING:        ErrorSeverity.LOW,
    ErrorCategory.TOOL_EXECUTION: ErrorSeverity.MEDIUM,
    ErrorCategory.HOST_API:       ErrorSeverity.MEDIUM,
    ErrorCategory.SYSTEM:         ErrorSeverity.MEDIUM,
    ErrorCategory.USER_INPUT:     ErrorSeverity.LOW,
}

NON_RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset({
    ErrorCategory.PERMISSION,
    ErrorCategory.VALIDATION,
})


def severity_for(category: ErrorCategory) -> ErrorSeverity:
    return _SEVERITY.get(category, ErrorSeverity.MEDIUM)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _categorize(exc: BaseException, message: str) -> tuple[ErrorCategory, Optional[str]]:
    for exc_type, category in _TYPE_RULES:
        if isinstance(exc, exc_type):
            return category, None

    haystack = message.lower()
    for rule in _RULES:
        pattern = _first_match(haystack, rule.patterns)
        if pattern is not None:
            return rule.category, pattern

    return ErrorCategory.SYSTEM, None


# ─────────────────────────────────────────────────────────────────────────────
# Stateless classification
# ─────────────────────────────────────────────────────────────────────────────

def classify(error: Any, context: Optional[dict[str, Any]] = None) -> ClassifiedError:
    """
    Classify any failure into a ClassifiedError.

    - ClassifiedError instances pass through (context is merged in).
    - Exceptions are classified by type, then by message keywords.
    - Anything else (a bare string, None, ...) becomes a system error.
    """
    ctx = dict(context or {})

    if isinstance(error, ClassifiedError):
        for key, value in ctx.items():
            error.context.setdefault(key, value)
        return error

    try:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            category, pattern = _categorize(error, message)
            if pattern is not None:
                ctx.setdefault("matched_pattern", pattern)
            severity = severity_for(category)
            if isinstance(error, MemoryError):
                severity = ErrorSeverity.CRITICAL
            return ClassifiedError(
                message,
                category=category,
                severity=severity,
                code=f"{category.value.upper()}_ERROR",
                context=ctx,
                retryable=category not in NON_RETRYABLE_CATEGORIES,
                original_error=error,
            )

        return ClassifiedError(
            str(error),
            category=ErrorCategory.SYSTEM,
            severity=severity_for(ErrorCategory.SYSTEM),
            code="NON_EXCEPTION_FAILURE",
            context=ctx,
        )
    except Exception as exc:  # classification must not fail the caller
        return ClassifiedError(
            "Error classification failed",
            category=ErrorCategory.SYSTEM,
            code="CLASSIFICATION_FAILED",
            context={**ctx, "classifier_error": repr(exc)},
            original_error=exc,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Stateful classifier
# ─────────────────────────────────────────────────────────────────────────────

_RECOVERY_ACTIONS: dict[ErrorCategory, tuple[str, str]] = {
    ErrorCategory.NETWORK:    ("Retry with exponential backoff", "Check network connectivity"),
    ErrorCategory.FILESYSTEM: ("Verify file path exists", "Check file permissions and disk space"),
    ErrorCategory.TIMEOUT:    ("Retry with increased timeout", "Check system performance"),
    ErrorCategory.PARSING:    ("Attempt graceful parsing recovery", "Review response format"),
}


class ErrorClassifier:
    """
    Classifies failures and keeps a bounded log of everything it has seen.

    The log is a ring buffer of the most recent `max_entries` errors.
    """

    def __init__(self, max_entries: int = ERROR_LOG_LIMIT, logger=None) -> None:
        self._log = logger or log
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)

    def classify(self, error: Any, context: Optional[dict[str, Any]] = None) -> ClassifiedError:
        """Classify without recording."""
        return classify(error, context)

    def handle(self, error: Any, context: Optional[dict[str, Any]] = None) -> ClassifiedError:
        """Classify, record in the error log and emit a severity-keyed log line."""
        classified = classify(error, context)
        self._record(classified)
        return classified

    def _record(self, err: ClassifiedError) -> None:
        self._entries.append({"timestamp": err.timestamp, "error": err.to_dict()})

        fields = {
            "code": err.code,
            "category": err.category.value,
            "severity": err.severity.value,
            "retryable": err.retryable,
            "recoverable": err.recoverable,
            "error": err.message[:300],
            "context": err.context,
        }
        if err.severity is ErrorSeverity.CRITICAL:
            self._log.critical("error.classified", **fields)
        elif err.severity is ErrorSeverity.HIGH:
            self._log.error("error.classified", **fields)
        elif err.severity is ErrorSeverity.MEDIUM:
            self._log.warning("error.classified", **fields)
        else:
            self._log.info("error.classified", **fields)

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def stats(self) -> dict[str, Any]:
        by_category: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        by_code: Counter[str] = Counter()
        for entry in self._entries:
            err = entry["error"]
            by_category[err["category"]] += 1
            by_severity[err["severity"]] += 1
            by_code[err["code"]] += 1
        return {
            "total": len(self._entries),
            "by_category": dict(by_category),
            "by_severity": dict(by_severity),
            "by_code": dict(by_code),
            "recent_errors": list(self._entries)[-10:],
        }

    def clear(self) -> None:
        self._entries.clear()

    @staticmethod
    def recovery_plan(err: ClassifiedError) -> dict[str, Any]:
        automatic: list[str] = []
        manual: list[str] = []
        actions = _RECOVERY_ACTIONS.get(err.category)
        if actions:
            automatic.append(actions[0])
            manual.append(actions[1])
        return {
            "error": err.to_dict(),
            "recoverable": err.recoverable,
            "suggestions": list(err.suggestions),
            "automatic_actions": automatic,
            "manual_actions": manual,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<ErrorClassifier entries={len(self._entries)}>"
