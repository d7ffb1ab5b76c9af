from taskloop.parsing.recovery import VALID_PHASES, RecoveryResult, recover_fields, strip_code_fences
from taskloop.parsing.response_parser import (
    DEFAULT_MESSAGE,
    VALID_TODO_STATUSES,
    ParsedResponse,
    ResponseParser,
    has_parse_error,
    parse_response,
    validation_summary,
)

__all__ = [
    "DEFAULT_MESSAGE",
    "VALID_PHASES",
    "VALID_TODO_STATUSES",
    "ParsedResponse",
    "RecoveryResult",
    "ResponseParser",
    "has_parse_error",
    "parse_response",
    "recover_fields",
    "strip_code_fences",
    "validation_summary",
]
