"""
taskloop — orchestration core for autonomous multi-turn task execution.

    from taskloop import SessionStore, parse_response, RetryEngine
"""

from taskloop.errors import ErrorClassifier, RetryEngine, RetryPolicy, RetryStrategy, classify
from taskloop.exceptions import (
    ClassifiedError,
    ConfigError,
    ErrorCategory,
    ErrorSeverity,
    TaskLoopError,
)
from taskloop.orchestrator import CycleResult, RunResult, TaskLoopRunner
from taskloop.parsing import ParsedResponse, ResponseParser, has_parse_error, parse_response, validation_summary
from taskloop.session import Phase, PeriodicSweeper, Session, SessionStore
from taskloop.todos import Todo, TodoLedger, TodoStatus
from taskloop.verification import AutoApprovalVerifier

__version__ = "0.1.0"

__all__ = [
    "AutoApprovalVerifier",
    "ClassifiedError",
    "ConfigError",
    "CycleResult",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorSeverity",
    "ParsedResponse",
    "PeriodicSweeper",
    "Phase",
    "ResponseParser",
    "RetryEngine",
    "RetryPolicy",
    "RetryStrategy",
    "RunResult",
    "Session",
    "SessionStore",
    "TaskLoopError",
    "TaskLoopRunner",
    "Todo",
    "TodoLedger",
    "TodoStatus",
    "classify",
    "has_parse_error",
    "parse_response",
    "validation_summary",
]
