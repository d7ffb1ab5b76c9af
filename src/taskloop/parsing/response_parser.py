"""
parsing/response_parser.py — Model Response Parser

Turns raw model text into a ParsedResponse the orchestrator can always act
on. Malformed string input never raises.

Pipeline:
    1. None           → fallback (NULL_INPUT)
    2. strip fences   → json.loads; a non-object top level counts as failure
    3. on failure     → independent field recovery (parsing/recovery.py)
    4. schema merge   → typed defaults for every missing field
    5. validation     → structural mismatch (todos not a list of objects,
                        toolCall / verification not objects) → fallback
    6. anything left  → fallback response with parse_error=True

Exactly one of three outcomes:
    direct parse  recovered=False  parse_error=False
    recovery      recovered=True   parse_error=False
    fallback      recovered=False  parse_error=True

Usage:
    from taskloop.parsing import parse_response

    resp = parse_response('{"phase":"execution","message":"hi"}')
    resp.phase          # "execution"
    resp.todos          # []
    resp.to_dict()      # camelCase wire shape
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from taskloop.config.settings import ParserSettings
from taskloop.errors.classifier import ErrorClassifier
from taskloop.exceptions import ClassifiedError, ErrorCategory
from taskloop.observability.logger import get_logger
from taskloop.parsing.recovery import VALID_PHASES, recover_fields, strip_code_fences

log = get_logger(__name__)

DEFAULT_TYPE = "legacy_response"
DEFAULT_PHASE = "execution"
DEFAULT_MESSAGE = "Processing request..."

VALID_TODO_STATUSES: tuple[str, ...] = ("pending", "in_progress", "done", "failed")

# wire key → python attribute
_WIRE_KEYS: dict[str, str] = {
    "type": "type",
    "phase": "phase",
    "todos": "todos",
    "toolCall": "tool_call",
    "verification": "verification",
    "message": "message",
    "complete": "complete",
}


# ─────────────────────────────────────────────────────────────────────────────
# Data model
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ParsedResponse:
    """Structured view of one model response, always fully populated."""
    type: str = DEFAULT_TYPE
    phase: str = DEFAULT_PHASE
    todos: list[dict[str, Any]] = field(default_factory=list)
    tool_call: Optional[dict[str, Any]] = None
    verification: Optional[dict[str, Any]] = None
    message: str = DEFAULT_MESSAGE
    complete: bool = False

    recovered: bool = False
    parse_error: bool = False
    defaulted_fields: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    original_response: Optional[str] = None
    error: Optional[ClassifiedError] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """camelCase wire rendering. Unknown top-level keys are kept."""
        out: dict[str, Any] = dict(self.extra)
        out.update({
            "type": self.type,
            "phase": self.phase,
            "todos": self.todos,
            "toolCall": self.tool_call,
            "verification": self.verification,
            "message": self.message,
            "complete": self.complete,
            "recovered": self.recovered,
            "parseError": self.parse_error,
        })
        if self.defaulted_fields:
            out["defaultedFields"] = list(self.defaulted_fields)
        if self.diagnostics:
            out["diagnostics"] = list(self.diagnostics)
        if self.parse_error:
            out["originalResponse"] = self.original_response
        return out


def has_parse_error(response: Optional[ParsedResponse]) -> bool:
    return bool(response is not None and response.parse_error)


def validation_summary(response: ParsedResponse) -> dict[str, Any]:
    return {
        "is_valid": not has_parse_error(response),
        "recovered": response.recovered,
        "has_required_fields": bool(response.type and response.phase and response.message),
        "phase": response.phase,
        "todo_count": len(response.todos),
        "has_tool_call": response.tool_call is not None,
        "has_verification": response.verification is not None,
        "is_complete": response.complete is True,
        "defaulted_fields": list(response.defaulted_fields),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────────────────────────────────────

class ResponseParser:
    """
    Stateless apart from configuration. A classifier, when given, records
    every fallback in its error log.
    """

    def __init__(
        self,
        settings: Optional[ParserSettings] = None,
        classifier: Optional[ErrorClassifier] = None,
    ) -> None:
        self.settings = settings or ParserSettings()
        self.classifier = classifier

    def parse(self, raw: Optional[str]) -> ParsedResponse:
        if raw is not None and not isinstance(raw, str):
            raise TypeError(f"parse() expects str or None, got {type(raw).__name__}")

        try:
            return self._parse(raw)
        except ClassifiedError as err:
            return self._fallback(raw, err)

    # ── Stages ────────────────────────────────────────────────────────────────

    def _parse(self, raw: Optional[str]) -> ParsedResponse:
        if raw is None:
            raise ClassifiedError.validation("Input is null", code="NULL_INPUT")

        text = strip_code_fences(raw)
        diagnostics: list[str] = []
        recovered = False

        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        except (ValueError, RecursionError) as exc:
            log.warning("response_parser.direct_parse_failed", error=str(exc)[:200])
            result = recover_fields(text, self.settings.max_message_length)
            if not result.ok:
                raise ClassifiedError(
                    "JSON parsing and recovery both failed",
                    category=ErrorCategory.PARSING,
                    code="JSON_PARSE_FAILED",
                    context={
                        "parse_error": str(exc)[:200],
                        "recovery_diagnostics": result.diagnostics,
                    },
                    original_error=exc,
                ) from exc
            data = result.fields
            diagnostics.extend(result.diagnostics)
            recovered = True
            log.info("response_parser.recovered", fields=sorted(data))

        response = self._reconstruct(data, diagnostics)
        response.recovered = recovered
        return response

    def _reconstruct(self, data: dict[str, Any], diagnostics: list[str]) -> ParsedResponse:
        """Merge `data` onto the default shape, then validate the result."""
        response = ParsedResponse(
            diagnostics=diagnostics,
            extra={k: v for k, v in data.items() if k not in _WIRE_KEYS},
        )

        for wire_key, attr in _WIRE_KEYS.items():
            if wire_key in ("type", "phase", "message", "todos"):
                missing = not data.get(wire_key)
            else:
                missing = wire_key not in data
            if missing:
                response.defaulted_fields.append(wire_key)
            else:
                setattr(response, attr, data[wire_key])

        if response.defaulted_fields:
            log.debug("response_parser.defaulted", fields=response.defaulted_fields)

        self._validate(response)
        return response

    def _validate(self, response: ParsedResponse) -> None:
        notes = response.diagnostics

        if not isinstance(response.type, str):
            notes.append(f"type: expected string, got {type(response.type).__name__}")
            response.type = str(response.type)

        if not isinstance(response.phase, str):
            raise _structure_error(f"phase must be a string, got {type(response.phase).__name__}")
        if response.phase not in VALID_PHASES:
            notes.append(f"phase: unknown value {response.phase!r}")

        if not isinstance(response.message, str):
            notes.append(f"message: expected string, got {type(response.message).__name__}")
            response.message = str(response.message)

        if not isinstance(response.complete, bool):
            notes.append(f"complete: expected boolean, got {response.complete!r}")
            response.complete = False

        if not isinstance(response.todos, list):
            raise _structure_error(f"todos must be a list, got {type(response.todos).__name__}")
        for index, todo in enumerate(response.todos):
            if not isinstance(todo, dict):
                raise _structure_error(
                    f"todo at index {index} must be an object, got {type(todo).__name__}"
                )
            if not todo.get("id"):
                notes.append(f"todos[{index}]: missing id")
            if not todo.get("description"):
                notes.append(f"todos[{index}]: missing description")
            status = todo.get("status")
            if status and status not in VALID_TODO_STATUSES:
                notes.append(f"todos[{index}]: invalid status {status!r}")

        if response.tool_call is not None:
            if not isinstance(response.tool_call, dict):
                raise _structure_error("toolCall must be an object or null")
            if not response.tool_call.get("tool"):
                notes.append("toolCall: missing tool")
            if not response.tool_call.get("params"):
                notes.append("toolCall: missing params")

        if response.verification is not None:
            if not isinstance(response.verification, dict):
                raise _structure_error("verification must be an object or null")
            if not response.verification.get("todoId"):
                notes.append("verification: missing todoId")
            if not isinstance(response.verification.get("approved"), bool):
                notes.append("verification: missing or invalid approved")

        if notes:
            log.debug("response_parser.diagnostics", diagnostics=notes)

    def _fallback(self, raw: Optional[str], err: ClassifiedError) -> ParsedResponse:
        if self.classifier is not None:
            self.classifier.handle(err, {"stage": "response_parsing"})

        limit = self.settings.original_response_limit
        preview = raw[: self.settings.preview_length] if raw is not None else "null"
        log.error("response_parser.fallback", code=err.code, error=err.message,
                  preview=preview)

        return ParsedResponse(
            message=f"Error parsing response: {err.message}. Raw response: {preview}...",
            parse_error=True,
            recovered=False,
            original_response=raw[:limit] if raw is not None else None,
            error=err,
            diagnostics=[f"{err.code}: {err.message}"],
        )


def _structure_error(message: str) -> ClassifiedError:
    return ClassifiedError(
        f"Invalid response structure: {message}",
        category=ErrorCategory.PARSING,
        code="INVALID_STRUCTURE",
        retryable=False,
    )


_default_parser = ResponseParser()


def parse_response(raw: Optional[str]) -> ParsedResponse:
    """Parse with default parser settings."""
    return _default_parser.parse(raw)
