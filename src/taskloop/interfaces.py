"""
interfaces.py — Outbound Collaborator Contracts

The core never talks to a model provider, a tool runtime or an approval UI
directly. Hosts plug those in by satisfying these protocols.

    PromptSender        async (model_id, text) -> raw model text
    ToolExecutor        executes one toolCall from a parsed response
    VerificationSystem  approves or rejects a todo's result
    Logger              structured logger (structlog BoundLogger fits)
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Result models
# ─────────────────────────────────────────────────────────────────────────────

class ToolOutcome(BaseModel):
    """Result of executing one tool call."""
    tool: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    duration_ms: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, tool: str, output: str, duration_ms: float = 0.0, **metadata: Any) -> "ToolOutcome":
        return cls(tool=tool, success=True, output=output, duration_ms=duration_ms, metadata=metadata)

    @classmethod
    def failed(cls, tool: str, error: str, duration_ms: float = 0.0, **metadata: Any) -> "ToolOutcome":
        return cls(tool=tool, success=False, error=error, duration_ms=duration_ms, metadata=metadata)

    @property
    def summary(self) -> str:
        """Text handed to verification and written back as the todo result."""
        return self.output if self.success else f"Error: {self.error}"


class VerificationStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class VerificationOutcome(BaseModel):
    """Verdict on one todo result."""
    id: str
    todo_id: str
    result: str
    status: VerificationStatus
    approved: bool
    feedback: str = ""
    auto_approved: bool = False
    created_at: float = Field(default_factory=time.time)
    completed_at: float = Field(default_factory=time.time)


# ─────────────────────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class Logger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def critical(self, event: str, **kw: Any) -> Any: ...


@runtime_checkable
class PromptSender(Protocol):
    def __call__(self, model_id: str, text: str) -> Awaitable[str]: ...


@runtime_checkable
class ToolExecutor(Protocol):
    async def execute(self, tool: str, params: dict[str, Any]) -> ToolOutcome: ...


@runtime_checkable
class VerificationSystem(Protocol):
    async def request_verification(self, todo_id: str, result: str) -> VerificationOutcome: ...
