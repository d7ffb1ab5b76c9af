"""
tests/unit/test_session_store.py — Session Store Tests

Covers:
  - create(): validation codes, capacity with expiry retry, id conflicts
  - get() activity tracking, delete(), clear()
  - batched updates: merge, single session_updated entry, eager validation,
    unknown keys → context, id ignored, todos replacement
  - call_later flush under a running loop, flush on shutdown
  - host-driven batching: tick() applies closed batches, stale batches
    apply before new updates merge, queued sessions still expire
  - build_context() / build_context_prompt(), bounded execution log
  - expire_sweep / memory_compact, host-driven tick(), start/shutdown
  - memory_stats() / performance_metrics()
"""

from __future__ import annotations

import asyncio

import pytest

from taskloop.config.settings import SessionSettings, TodoSettings
from taskloop.errors.classifier import ErrorClassifier
from taskloop.exceptions import ClassifiedError, ErrorCategory
from taskloop.session import Phase, PeriodicSweeper, SessionStore


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_store(clock, **session_overrides) -> SessionStore:
    return SessionStore(SessionSettings(**session_overrides), TodoSettings(), clock=clock)


def _make_session(store, task="Build X"):
    return store.create(task, "m1", "r1")


def _log_types(session) -> list[str]:
    return [e.type for e in session.execution_log]


# ─────────────────────────────────────────────────────────────────────────────
# Creation
# ─────────────────────────────────────────────────────────────────────────────

class TestCreate:

    def test_new_session(self, clock):
        store = _make_store(clock)
        session = store.create("  Build X ", "m1", "r1")
        assert session.id.startswith("sess_")
        assert session.phase is Phase.PLANNING
        assert session.original_task == "Build X"
        assert session.start_time == session.last_activity == clock.now
        assert _log_types(session) == ["session_created"]
        assert session.id in store
        assert store.count == 1

    def test_todo_stats_scenario(self, clock):
        store = _make_store(clock)
        session = store.create("Build X", "m1", "r1")
        first = session.todos.create("first", "x")
        session.todos.create("second", "y")
        session.todos.mark_complete(first.id, "ok")
        stats = session.todos.stats()
        assert (stats["total"], stats["done"], stats["pending"], stats["completion_rate"]) == (2, 1, 1, 50)

    @pytest.mark.parametrize("args, code, field", [
        ((5, "m1", "r1"), "INVALID_TASK", "task"),
        (("   ", "m1", "r1"), "EMPTY_TASK", "task"),
        (("task", None, "r1"), "INVALID_MODEL_ID", "model_id"),
        (("task", "m1", ""), "INVALID_REQUEST_ID", "request_id"),
    ])
    def test_validation(self, clock, args, code, field):
        store = _make_store(clock)
        with pytest.raises(ClassifiedError) as exc_info:
            store.create(*args)
        assert exc_info.value.code == code
        assert exc_info.value.category is ErrorCategory.VALIDATION
        assert exc_info.value.context["field"] == field
        assert store.count == 0

    def test_capacity_after_expiry_sweep(self, clock):
        store = _make_store(clock, max_sessions=2)
        _make_session(store)
        _make_session(store)
        with pytest.raises(ClassifiedError) as exc_info:
            _make_session(store)
        assert exc_info.value.code == "SESSION_LIMIT_EXCEEDED"
        assert exc_info.value.context["cleaned_sessions"] == 0

        clock.advance(1801)
        assert _make_session(store) is not None
        assert store.count == 1

    def test_id_conflict(self, clock):
        store = SessionStore(SessionSettings(id_generation_attempts=3), clock=clock,
                             id_factory=lambda: "sess_fixed")
        store.create("a", "m1", "r1")
        with pytest.raises(ClassifiedError) as exc_info:
            store.create("b", "m1", "r1")
        assert exc_info.value.code == "SESSION_ID_CONFLICT"
        assert exc_info.value.context["attempts"] == 3

    def test_todo_limits_follow_settings(self, clock):
        store = SessionStore(todo_settings=TodoSettings(max_todos=1), clock=clock)
        session = _make_session(store)
        session.todos.create("one", "x")
        assert session.todos.create("two", "x") is None


# ─────────────────────────────────────────────────────────────────────────────
# Read / delete
# ─────────────────────────────────────────────────────────────────────────────

class TestReadDelete:

    def test_get_touches(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        clock.advance(60)
        assert store.get(session.id) is session
        assert session.last_activity == clock.now

    def test_get_unknown(self, clock):
        assert _make_store(clock).get("sess_missing") is None

    def test_delete_drops_pending(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})
        assert store.delete(session.id) is True
        assert store.has_pending(session.id) is False
        assert store.delete(session.id) is False
        assert store.flush_pending() == 0

    def test_clear(self, clock):
        store = _make_store(clock)
        _make_session(store)
        _make_session(store)
        assert store.clear() == 2
        assert store.list_sessions() == []


# ─────────────────────────────────────────────────────────────────────────────
# Batched updates
# ─────────────────────────────────────────────────────────────────────────────

class TestBatchedUpdates:

    def test_updates_merge_into_one_log_entry(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})
        store.request_update(session.id, {"context": {"a": 1}})
        store.request_update(session.id, {"phase": "verification", "context": {"b": 2}})

        assert session.phase is Phase.PLANNING
        assert store.flush_pending() == 1

        assert session.phase is Phase.VERIFICATION
        assert session.context == {"a": 1, "b": 2}
        assert _log_types(session) == ["session_created", "session_updated"]
        assert session.execution_log[-1].payload == {"fields": ["context", "phase"]}

    def test_unknown_session(self, clock):
        assert _make_store(clock).request_update("sess_missing", {"phase": "execution"}) is False

    @pytest.mark.parametrize("fields, code", [
        ({"phase": "bogus"}, "INVALID_PHASE"),
        ({"context": 5}, "INVALID_CONTEXT"),
        ({"model_id": "  "}, "INVALID_MODEL_ID"),
        ({"original_task": 7}, "INVALID_TASK"),
        ({"todos": [{"id": "t1"}]}, "MISSING_DESCRIPTION"),
        ({"todos": "nope"}, "INVALID_IMPORT"),
    ])
    def test_validated_eagerly(self, clock, fields, code):
        store = _make_store(clock)
        session = _make_session(store)
        with pytest.raises(ClassifiedError) as exc_info:
            store.request_update(session.id, fields)
        assert exc_info.value.code == code
        assert store.has_pending(session.id) is False

    def test_non_mapping_update(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        with pytest.raises(ClassifiedError) as exc_info:
            store.request_update(session.id, ["phase"])
        assert exc_info.value.code == "INVALID_UPDATE"

    def test_unknown_keys_go_to_context_and_id_is_ignored(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        original_id = session.id
        store.request_update(session.id, {"id": "sess_other", "current_file": "a.py"})
        store.flush_pending()
        assert session.id == original_id
        assert session.context == {"current_file": "a.py"}

    def test_identity_fields(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"original_task": " Build Y ", "model_id": "m2"})
        store.flush_pending()
        assert session.original_task == "Build Y"
        assert session.model_id == "m2"

    def test_todos_replace_ledger(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        session.todos.create("old", "x", todo_id="t0")
        store.request_update(session.id, {"todos": [
            {"id": "t1", "description": "Write", "expectedResult": "file", "status": "done"},
        ]})
        store.flush_pending()
        assert [t.id for t in session.todos] == ["t1"]
        assert session.todos.get("t1").completed_at is not None

    def test_flush_touches_activity(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})
        clock.advance(30)
        store.flush_pending()
        assert session.last_activity == clock.now

    @pytest.mark.asyncio
    async def test_flush_scheduled_on_running_loop(self, clock):
        store = _make_store(clock, batch_window_seconds=0.01)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})
        store.request_update(session.id, {"context": {"k": "v"}})
        assert store.has_pending(session.id)

        await asyncio.sleep(0.05)

        assert store.has_pending(session.id) is False
        assert session.phase is Phase.EXECUTION
        assert _log_types(session).count("session_updated") == 1

    @pytest.mark.asyncio
    async def test_shutdown_flushes(self, clock):
        store = _make_store(clock, batch_window_seconds=10)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "complete"})
        await store.shutdown()
        assert session.phase is Phase.COMPLETE


class TestHostDrivenBatching:

    def test_tick_applies_closed_batches_only(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})

        clock.advance(0.05)
        store.tick()
        assert store.has_pending(session.id)
        assert session.phase is Phase.PLANNING

        clock.advance(0.2)
        store.tick()
        assert store.has_pending(session.id) is False
        assert session.phase is Phase.EXECUTION

    def test_queued_session_still_expires(self, clock):
        store = _make_store(clock)
        store.tick()
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})

        clock.advance(31 * 60)
        results = store.tick()
        assert session.phase is Phase.EXECUTION
        assert results["expire_sweep"] == 0
        assert session.id in store

        clock.advance(31 * 60)
        assert store.tick()["expire_sweep"] == 1
        assert session.id not in store

    def test_updates_outside_window_do_not_merge(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        store.request_update(session.id, {"phase": "execution"})
        clock.advance(3600)
        store.request_update(session.id, {"context": {"step": 2}})

        assert session.phase is Phase.EXECUTION
        assert session.context == {}
        store.flush_pending()
        assert session.context == {"step": 2}
        assert _log_types(session) == ["session_created", "session_updated", "session_updated"]

    def test_flush_due(self, clock):
        store = _make_store(clock)
        early = _make_session(store)
        late = _make_session(store)
        store.request_update(early.id, {"phase": "execution"})
        clock.advance(0.2)
        store.request_update(late.id, {"phase": "execution"})

        assert store.flush_due() == 1
        assert early.phase is Phase.EXECUTION
        assert store.has_pending(late.id)


# ─────────────────────────────────────────────────────────────────────────────
# Context
# ─────────────────────────────────────────────────────────────────────────────

class TestContext:

    def test_build_context(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        session.todos.create("Write parser", "parser.py", todo_id="t1")
        ctx = store.build_context(session.id)
        assert ctx["session_id"] == session.id
        assert ctx["phase"] == "planning"
        assert ctx["todos"][0]["id"] == "t1"
        assert ctx["todo_stats"]["total"] == 1
        assert ctx["execution_log"][0]["type"] == "session_created"

    def test_unknown_session(self, clock):
        store = _make_store(clock)
        assert store.build_context("nope") is None
        assert store.build_context_prompt("nope") is None
        assert store.log_event("nope", "x") is False

    def test_log_is_bounded_and_context_shows_last_ten(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        for i in range(60):
            store.log_event(session.id, f"e{i}")

        assert len(session.execution_log) == 50
        assert session.execution_log[0].type == "e10"
        ctx = store.build_context(session.id)
        assert [e["type"] for e in ctx["execution_log"]] == [f"e{i}" for i in range(50, 60)]

    def test_prompt_rendering(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        session.todos.create("Write parser", "parser.py exists", todo_id="t1")
        session.todos.mark_complete("t1", "written")
        store.log_event(session.id, "tool_executed", {"tool": "writeFile"})

        prompt = store.build_context_prompt(session.id)
        assert prompt.startswith("# Task Context\n")
        assert f"**Session ID:** {session.id}" in prompt
        assert "**Original Task:** Build X" in prompt
        assert "**Current Phase:** planning" in prompt
        assert "1. **Write parser** (done) [id: t1]" in prompt
        assert "   Expected: parser.py exists" in prompt
        assert "   Result: written" in prompt
        assert "## Recent Execution Log" in prompt
        assert "tool=writeFile" in prompt
        assert "## Instructions" in prompt


# ─────────────────────────────────────────────────────────────────────────────
# Sweeps
# ─────────────────────────────────────────────────────────────────────────────

class TestSweeps:

    def test_expire_sweep(self, clock):
        store = _make_store(clock)
        old = _make_session(store)
        clock.advance(1000)
        new = _make_session(store)
        clock.advance(1000)

        assert store.expire_sweep() == 1
        assert old.id not in store
        assert new.id in store
        assert store.performance_metrics()["sessions"]["expired"] == 1

    def test_pending_update_protects_session(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        clock.advance(1801)
        store.request_update(session.id, {"phase": "execution"})
        assert store.expire_sweep() == 0
        store.flush_pending()
        assert store.expire_sweep() == 0
        assert session.id in store

    def test_memory_compact(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        done = session.todos.create("done", "x")
        session.todos.mark_complete(done.id, "ok")
        running = session.todos.create("running", "x")
        clock.advance(3601)

        assert store.memory_compact() == 1
        assert done.id not in session.todos
        assert running.id in session.todos

    def test_tick_runs_due_sweeps(self, clock):
        store = _make_store(clock)
        assert store.tick() == {}
        _make_session(store)
        clock.advance(301)
        assert store.tick() == {"expire_sweep": 0}
        clock.advance(600)
        assert store.tick() == {"expire_sweep": 0, "memory_compact": 0}

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, clock):
        sweeper = PeriodicSweeper(clock=clock, tick_interval=60)
        store = SessionStore(clock=clock, sweeper=sweeper)
        await store.start()
        assert sweeper.is_running
        assert {j.name for j in sweeper.list_jobs()} == {"expire_sweep", "memory_compact"}
        await store.shutdown()
        assert sweeper.is_running is False


# ─────────────────────────────────────────────────────────────────────────────
# Stats
# ─────────────────────────────────────────────────────────────────────────────

class TestStats:

    def test_memory_stats(self, clock):
        store = _make_store(clock)
        session = _make_session(store)
        session.todos.create("a", "x")
        store.request_update(session.id, {"phase": "execution"})
        clock.advance(10)

        stats = store.memory_stats()
        assert stats["session_count"] == 1
        assert stats["active_sessions"] == 1
        assert stats["total_todos"] == 1
        assert stats["total_log_entries"] == 1
        assert stats["pending_updates"] == 1
        assert stats["oldest_session_age"] == 10
        assert stats["limits"]["max_sessions"] == 100

    def test_performance_metrics(self, clock):
        store = _make_store(clock)
        _make_session(store)
        _make_session(store)
        metrics = store.performance_metrics()
        assert metrics["sessions"]["created"] == 2
        assert metrics["sessions"]["peak_count"] == 2
        assert metrics["memory"]["log_entries_count"] == 2

    def test_batch_import_failure_recorded(self, clock):
        classifier = ErrorClassifier()
        store = SessionStore(clock=clock, classifier=classifier)
        session = _make_session(store)
        store.request_update(session.id, {"todos": [{"id": "t1", "description": "a"}]})
        store._pending[session.id]["todos"] = "corrupted"
        store.flush_pending()
        assert classifier.stats()["by_code"] == {"INVALID_IMPORT": 1}
