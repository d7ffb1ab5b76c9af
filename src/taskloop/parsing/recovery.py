"""
parsing/recovery.py — Independent Field Recovery

Pulls whatever top-level fields can be salvaged out of model output that
is not valid JSON.

Each field is extracted on its own, so a broken `toolCall` does not stop
`todos` or `phase` from being recovered:

  - scalars (type, phase, message, complete) by key-anchored regex, which
    is indifferent to a missing comma between fields
  - todos (array) and toolCall / verification (objects) by bracket-scoped
    extraction that skips brackets inside string literals

Keys are only matched at the top level of the payload: nested structures
are masked out first, so a `"type"` inside toolCall.params cannot shadow
the response type.

A fragment that json.loads rejects gets a second try through json-repair
(trailing commas, single quotes, truncation). The repaired value is kept
only if it has the expected type.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from json_repair import repair_json

from taskloop.observability.logger import get_logger

log = get_logger(__name__)

VALID_PHASES: tuple[str, ...] = ("planning", "execution", "verification", "complete")

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)

_STRING_VALUE = r'"((?:[^"\\]|\\.)*)"'
_SCALAR_PATTERNS: dict[str, re.Pattern[str]] = {
    "type": re.compile(r'"type"\s*:\s*' + _STRING_VALUE, re.DOTALL),
    "phase": re.compile(r'"phase"\s*:\s*' + _STRING_VALUE, re.DOTALL),
    "message": re.compile(r'"message"\s*:\s*' + _STRING_VALUE, re.DOTALL),
}
_COMPLETE_RE = re.compile(r'"complete"\s*:\s*(true|false)\b')

# wire key → (opening bracket, expected python type)
_STRUCTURED_FIELDS: dict[str, tuple[str, type]] = {
    "todos": ("[", list),
    "toolCall": ("{", dict),
    "verification": ("{", dict),
}


@dataclass
class RecoveryResult:
    fields: dict[str, Any] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.fields)


# ─────────────────────────────────────────────────────────────────────────────
# Text helpers
# ─────────────────────────────────────────────────────────────────────────────

def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the whole text is fenced."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def mask_nested(text: str) -> str:
    """
    Return `text` with everything below the top level of the payload
    blanked to spaces. Offsets are preserved, so a position found in the
    masked text indexes the same character in the original.

    The payload starts at the first `{`; anything before it is prose and
    is blanked too. With no `{` at all the whole text is treated as a bare
    sequence of top-level fields.
    """
    start = text.find("{")
    if start == -1:
        base, start = 0, 0
    else:
        base = 1

    out = [" "] * len(text)
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        top = depth <= base

        if in_string:
            if top:
                out[i] = ch
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            if top:
                out[i] = ch
        elif ch in "{[":
            if top:
                out[i] = ch
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth <= base:
                out[i] = ch
        elif top:
            out[i] = ch

    return "".join(out)


def extract_bracketed(text: str, start: int) -> tuple[str, bool]:
    """
    Slice a bracketed value starting at text[start] ('[' or '{').

    Returns (fragment, closed). When the brackets never balance the rest
    of the text is returned with closed=False.
    """
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1], True

    return text[start:], False


def _unescape(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return raw


def loads_fragment(fragment: str, expected: type) -> tuple[Optional[Any], bool]:
    """
    Decode a JSON fragment, falling back to json-repair.

    Returns (value, repaired). value is None when neither pass produced
    something of the expected type.
    """
    try:
        value = json.loads(fragment)
        if isinstance(value, expected):
            return value, False
    except (json.JSONDecodeError, RecursionError):
        pass

    try:
        value = json.loads(repair_json(fragment, return_objects=False))
    except (ValueError, TypeError, RecursionError):
        return None, False
    if isinstance(value, expected):
        return value, True
    return None, False


# ─────────────────────────────────────────────────────────────────────────────
# Recovery
# ─────────────────────────────────────────────────────────────────────────────

def recover_fields(text: str, max_message_length: int = 1000) -> RecoveryResult:
    """Salvage top-level response fields from malformed output."""
    result = RecoveryResult()
    masked = mask_nested(text)

    for name, pattern in _SCALAR_PATTERNS.items():
        match = pattern.search(masked)
        if not match:
            continue
        value = _unescape(match.group(1))
        if name == "phase" and value not in VALID_PHASES:
            result.diagnostics.append(f"phase: recovered invalid value {value!r}, using 'execution'")
            value = "execution"
        elif name == "message" and len(value) > max_message_length:
            value = value[:max_message_length]
            result.diagnostics.append(f"message: truncated to {max_message_length} characters")
        result.fields[name] = value

    match = _COMPLETE_RE.search(masked)
    if match:
        result.fields["complete"] = match.group(1) == "true"

    for key, (opener, expected) in _STRUCTURED_FIELDS.items():
        key_match = re.search(rf'"{key}"\s*:\s*', masked)
        if not key_match:
            continue
        pos = key_match.end()
        if pos >= len(text):
            continue
        if text.startswith("null", pos):
            result.fields[key] = None
            continue
        if text[pos] != opener:
            result.diagnostics.append(f"{key}: expected '{opener}' after key")
            continue

        fragment, closed = extract_bracketed(text, pos)
        value, repaired = loads_fragment(fragment, expected)
        if value is None:
            result.diagnostics.append(f"{key}: fragment could not be decoded")
            continue
        if repaired or not closed:
            result.diagnostics.append(f"{key}: repaired malformed fragment")
        result.fields[key] = value

    if result.ok:
        log.debug("response_parser.fields_recovered",
                  fields=sorted(result.fields), diagnostics=result.diagnostics)
    return result
