"""
exceptions.py — taskloop Unified Error Hierarchy

All taskloop-specific exceptions live here. Every layer raises typed
subclasses of TaskLoopError, never bare Exception.

Import from here, not from individual modules:
    from taskloop.exceptions import ClassifiedError, ErrorCategory

Hierarchy:
    TaskLoopError
    ├── ClassifiedError        (category / severity / retry metadata)
    └── ConfigError            (startup configuration problems)

Every failure the core surfaces to a caller (bad input, capacity,
exhausted retries) is a ClassifiedError carrying `user_message` and
`suggestions` for direct display.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Taxonomy
# ─────────────────────────────────────────────────────────────────────────────

class ErrorCategory(str, Enum):
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    PERMISSION = "permission"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    PARSING = "parsing"
    TOOL_EXECUTION = "tool_execution"
    HOST_API = "host_api"
    SYSTEM = "system"
    USER_INPUT = "user_input"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK:        "A network connection issue occurred",
    ErrorCategory.FILESYSTEM:     "A file system operation failed",
    ErrorCategory.PERMISSION:     "Permission denied for the requested operation",
    ErrorCategory.VALIDATION:     "Invalid input or data provided",
    ErrorCategory.TIMEOUT:        "The operation timed out",
    ErrorCategory.PARSING:        "Failed to parse the response",
    ErrorCategory.TOOL_EXECUTION: "Tool execution failed",
    ErrorCategory.HOST_API:       "A host integration call failed",
    ErrorCategory.SYSTEM:         "A system error occurred",
    ErrorCategory.USER_INPUT:     "Invalid user input provided",
}

_SUGGESTIONS: dict[ErrorCategory, tuple[str, ...]] = {
    ErrorCategory.NETWORK: (
        "Check your internet connection",
        "Verify the API endpoint is accessible",
        "Try again in a few moments",
    ),
    ErrorCategory.FILESYSTEM: (
        "Check if the file or directory exists",
        "Verify file permissions",
        "Ensure sufficient disk space",
    ),
    ErrorCategory.PERMISSION: (
        "Check file and directory permissions",
        "Run the host with appropriate privileges",
        "Verify workspace access rights",
    ),
    ErrorCategory.VALIDATION: (
        "Check the input format and values",
        "Verify required fields are provided",
        "Review the data structure",
    ),
    ErrorCategory.TIMEOUT: (
        "Try again with a longer timeout",
        "Check system performance",
        "Verify network connectivity",
    ),
    ErrorCategory.PARSING: (
        "Check the response format",
        "Verify the data structure",
        "Try regenerating the response",
    ),
    ErrorCategory.TOOL_EXECUTION: (
        "Check tool parameters",
        "Verify tool availability",
        "Review execution environment",
    ),
    ErrorCategory.HOST_API: (
        "Restart the host application",
        "Check integration permissions",
        "Verify a workspace is open",
    ),
    ErrorCategory.SYSTEM: (
        "Check system resources",
        "Restart the application",
        "Review system logs",
    ),
    ErrorCategory.USER_INPUT: (
        "Review the input format",
        "Check required parameters",
        "Verify input constraints",
    ),
}


def default_user_message(category: ErrorCategory) -> str:
    return _USER_MESSAGES.get(category, "An unexpected error occurred")


def default_suggestions(category: ErrorCategory) -> list[str]:
    return list(_SUGGESTIONS.get(category, (
        "Try the operation again",
        "Check the logs for more details",
    )))


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TaskLoopError(Exception):
    """Base class for all taskloop exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Classified errors
# ─────────────────────────────────────────────────────────────────────────────

class ClassifiedError(TaskLoopError):
    """
    A failure decorated with category, severity and retry metadata.

    `recoverable` and `retryable` default to True; permission and
    validation failures are built with retryable=False by the classifier.
    The wrapped original exception is exposed as `original_error` and is
    also chained as `__cause__` when raised with `raise ... from`.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        code: str = "UNKNOWN_ERROR",
        context: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
        retryable: bool = True,
        user_message: Optional[str] = None,
        suggestions: Optional[list[str]] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = ErrorCategory(category)
        self.severity = ErrorSeverity(severity)
        self.code = code
        self.context: dict[str, Any] = dict(context or {})
        self.recoverable = recoverable
        self.retryable = retryable
        self.user_message = user_message or default_user_message(self.category)
        self.suggestions = list(suggestions) if suggestions else default_suggestions(self.category)
        self.timestamp = time.time()
        self.original_error = original_error
        if original_error is not None:
            self.__cause__ = original_error

    # ── Convenience constructors ──────────────────────────────────────────────

    @classmethod
    def validation(
        cls,
        message: str,
        code: str,
        context: Optional[dict[str, Any]] = None,
        suggestions: Optional[list[str]] = None,
    ) -> "ClassifiedError":
        return cls(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            code=code,
            context=context,
            retryable=False,
            suggestions=suggestions,
        )

    # ── Serialisation ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        original = None
        if self.original_error is not None:
            original = {
                "type": type(self.original_error).__name__,
                "message": str(self.original_error),
            }
        return {
            "name": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "code": self.code,
            "context": self.context,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "user_message": self.user_message,
            "suggestions": list(self.suggestions),
            "timestamp": self.timestamp,
            "original_error": original,
        }

    def __repr__(self) -> str:
        return (f"<ClassifiedError code={self.code} category={self.category.value} "
                f"severity={self.severity.value} retryable={self.retryable}>")


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(TaskLoopError):
    """Raised by Settings.validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "TaskLoopError",
    "ClassifiedError",
    "ConfigError",
    "ErrorCategory",
    "ErrorSeverity",
    "default_user_message",
    "default_suggestions",
]
