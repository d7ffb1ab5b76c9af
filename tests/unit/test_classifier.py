"""
tests/unit/test_classifier.py — Error Classification Tests

Covers:
  - keyword classification per category, first-match order
  - exception-type classification (TimeoutError, ConnectionError, ...)
  - severity / retryable / code / user message / suggestions
  - pass-through of already classified errors, non-exception inputs
  - ErrorClassifier: bounded log, severity-keyed logging, stats, recovery plans
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from taskloop.errors.classifier import ErrorClassifier, classify, severity_for
from taskloop.exceptions import ClassifiedError, ErrorCategory, ErrorSeverity


# ─────────────────────────────────────────────────────────────────────────────
# Keyword classification
# ─────────────────────────────────────────────────────────────────────────────

class TestKeywordClassification:

    @pytest.mark.parametrize("message, category", [
        ("connect ECONNREFUSED 127.0.0.1:443", ErrorCategory.NETWORK),
        ("Network unreachable", ErrorCategory.NETWORK),
        ("socket hang up", ErrorCategory.NETWORK),
        ("ENOENT: no such file or directory, open 'a.txt'", ErrorCategory.FILESYSTEM),
        ("ENOSPC: no space left on device", ErrorCategory.FILESYSTEM),
        ("EACCES: permission denied", ErrorCategory.PERMISSION),
        ("Missing required field 'name'", ErrorCategory.VALIDATION),
        ("Request timed out after 30s", ErrorCategory.TIMEOUT),
        ("operation timeout", ErrorCategory.TIMEOUT),
        ("Unexpected token < in JSON at position 0", ErrorCategory.PARSING),
        ("tool readFile crashed", ErrorCategory.TOOL_EXECUTION),
        ("workspace folder is not open", ErrorCategory.HOST_API),
        ("host api call rejected", ErrorCategory.HOST_API),
        ("unknown host db01", ErrorCategory.SYSTEM),
        ("bad user input", ErrorCategory.USER_INPUT),
        ("something odd happened", ErrorCategory.SYSTEM),
    ])
    def test_category(self, message, category):
        assert classify(Exception(message)).category is category

    def test_econnrefused_is_retryable_network(self):
        err = classify(OSError("connect ECONNREFUSED 127.0.0.1:443"))
        assert err.category is ErrorCategory.NETWORK
        assert err.retryable is True
        assert err.code == "NETWORK_ERROR"
        assert err.context["matched_pattern"] == "econnrefused"

    def test_first_match_wins(self):
        # "connection" (network) precedes "timeout" (timeout) in rule order
        err = classify(Exception("connection timeout"))
        assert err.category is ErrorCategory.NETWORK

    def test_matching_is_case_insensitive(self):
        assert classify(Exception("PERMISSION DENIED")).category is ErrorCategory.PERMISSION


# ─────────────────────────────────────────────────────────────────────────────
# Type classification
# ─────────────────────────────────────────────────────────────────────────────

class TestTypeClassification:

    def test_timeout_error(self):
        assert classify(TimeoutError()).category is ErrorCategory.TIMEOUT

    def test_connection_error_subclass(self):
        assert classify(ConnectionResetError("reset")).category is ErrorCategory.NETWORK

    def test_permission_error(self):
        err = classify(PermissionError("nope"))
        assert err.category is ErrorCategory.PERMISSION
        assert err.retryable is False
        assert err.severity is ErrorSeverity.HIGH

    def test_file_not_found(self):
        assert classify(FileNotFoundError("a.txt")).category is ErrorCategory.FILESYSTEM

    def test_json_decode_error(self):
        exc = json.JSONDecodeError("Expecting value", "x", 0)
        assert classify(exc).category is ErrorCategory.PARSING

    def test_memory_error_is_critical(self):
        err = classify(MemoryError())
        assert err.severity is ErrorSeverity.CRITICAL
        assert err.message == "MemoryError"


# ─────────────────────────────────────────────────────────────────────────────
# Classified error shape
# ─────────────────────────────────────────────────────────────────────────────

class TestClassifiedShape:

    def test_validation_is_low_and_not_retryable(self):
        err = classify(ValueError("invalid value"))
        assert err.severity is ErrorSeverity.LOW
        assert err.retryable is False
        assert err.recoverable is True

    def test_validation_constructor_matches_classifier_severity(self):
        err = ClassifiedError.validation("bad id", code="INVALID_CUSTOM_ID")
        assert err.severity is severity_for(ErrorCategory.VALIDATION) is ErrorSeverity.LOW

    def test_system_default(self):
        err = classify(RuntimeError("boom"))
        assert err.category is ErrorCategory.SYSTEM
        assert err.severity is ErrorSeverity.MEDIUM
        assert err.retryable is True
        assert err.code == "SYSTEM_ERROR"

    def test_user_message_and_three_suggestions(self):
        err = classify(Exception("ECONNRESET"))
        assert err.user_message == "A network connection issue occurred"
        assert len(err.suggestions) == 3

    def test_original_error_is_chained(self):
        original = ConnectionError("down")
        err = classify(original)
        assert err.original_error is original
        assert err.__cause__ is original

    def test_context_is_kept(self):
        err = classify(Exception("boom"), {"operation_id": "op_1"})
        assert err.context["operation_id"] == "op_1"

    def test_already_classified_passes_through(self):
        original = ClassifiedError.validation("bad", code="BAD_INPUT")
        err = classify(original, {"stage": "x"})
        assert err is original
        assert err.context["stage"] == "x"

    def test_non_exception_input(self):
        err = classify("plain failure")
        assert err.category is ErrorCategory.SYSTEM
        assert err.code == "NON_EXCEPTION_FAILURE"
        assert err.message == "plain failure"

    def test_to_dict(self):
        d = classify(PermissionError("denied")).to_dict()
        assert d["category"] == "permission"
        assert d["severity"] == "high"
        assert d["retryable"] is False
        assert "suggestions" in d


# ─────────────────────────────────────────────────────────────────────────────
# ErrorClassifier
# ─────────────────────────────────────────────────────────────────────────────

class TestErrorClassifier:

    def test_handle_records(self):
        c = ErrorClassifier()
        c.handle(Exception("ECONNREFUSED"))
        assert len(c) == 1
        assert c.entries[0]["error"]["category"] == "network"

    def test_classify_does_not_record(self):
        c = ErrorClassifier()
        c.classify(Exception("boom"))
        assert len(c) == 0

    def test_log_is_bounded(self):
        c = ErrorClassifier(max_entries=3)
        for i in range(5):
            c.handle(Exception(f"boom {i}"))
        assert len(c) == 3
        assert c.entries[0]["error"]["message"] == "boom 2"

    @pytest.mark.parametrize("exc, method", [
        (MemoryError(), "critical"),
        (PermissionError("x"), "error"),
        (Exception("ECONNREFUSED"), "warning"),
        (ValueError("invalid"), "info"),
    ])
    def test_log_level_follows_severity(self, exc, method):
        logger = MagicMock()
        ErrorClassifier(logger=logger).handle(exc)
        getattr(logger, method).assert_called_once()
        assert getattr(logger, method).call_args.args[0] == "error.classified"

    def test_stats(self):
        c = ErrorClassifier()
        c.handle(Exception("ECONNREFUSED"))
        c.handle(Exception("ECONNRESET"))
        c.handle(PermissionError("x"))
        stats = c.stats()
        assert stats["total"] == 3
        assert stats["by_category"] == {"network": 2, "permission": 1}
        assert stats["by_severity"]["medium"] == 2
        assert stats["by_code"]["NETWORK_ERROR"] == 2
        assert len(stats["recent_errors"]) == 3

    def test_clear(self):
        c = ErrorClassifier()
        c.handle(Exception("boom"))
        c.clear()
        assert c.stats()["total"] == 0

    def test_recovery_plan(self):
        plan = ErrorClassifier.recovery_plan(classify(Exception("ECONNREFUSED")))
        assert plan["automatic_actions"] == ["Retry with exponential backoff"]
        assert plan["manual_actions"] == ["Check network connectivity"]
        assert plan["recoverable"] is True

    def test_recovery_plan_without_actions(self):
        plan = ErrorClassifier.recovery_plan(classify(PermissionError("x")))
        assert plan["automatic_actions"] == []
