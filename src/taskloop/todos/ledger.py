"""
todos/ledger.py — Todo Ledger

Ordered, bounded store of the todos planned for one session.

Status lifecycle:
    pending → in_progress → done | failed

`completed_at` is set exactly when a todo is in a terminal state: moving
into done/failed stamps it, moving back to pending/in_progress clears it.

Capacity: at `max_todos` the oldest terminal todo (by insertion order) is
evicted to make room. If nothing is terminal the insertion is refused and
add() returns False. This is backpressure, not an error; in-flight work is
never dropped.

Usage:
    ledger = TodoLedger(max_todos=200)
    todo = ledger.create("Write parser", "parser.py exists")
    ledger.update_status(todo.id, "in_progress")
    ledger.mark_complete(todo.id, "parser.py written")
    ledger.stats()   # {"total": 1, "done": 1, ..., "completion_rate": 100.0}
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from taskloop.exceptions import ClassifiedError
from taskloop.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_MAX_TODOS = 200
DEFAULT_MAX_DESCRIPTION_LENGTH = 1000


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TodoStatus.DONE, TodoStatus.FAILED)


def parse_status(value: Any) -> TodoStatus:
    """Coerce a status string, raising a validation ClassifiedError if unknown."""
    if isinstance(value, TodoStatus):
        return value
    try:
        return TodoStatus(value)
    except ValueError:
        raise ClassifiedError.validation(
            f"Invalid status: {value!r}. Must be one of: "
            f"{', '.join(s.value for s in TodoStatus)}",
            code="INVALID_STATUS",
            context={"status": value},
        ) from None


def new_todo_id() -> str:
    return f"todo_{uuid.uuid4().hex[:12]}"


# ─────────────────────────────────────────────────────────────────────────────
# Data model
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Todo:
    """Smallest unit of planned work."""
    description: str
    expected_result: str
    id: str = field(default_factory=new_todo_id)
    status: TodoStatus = TodoStatus.PENDING
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    result: Optional[str] = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def update_status(self, status: Any, now: Optional[float] = None) -> None:
        new_status = parse_status(status)
        self.status = new_status
        if new_status.is_terminal:
            self.completed_at = time.time() if now is None else now
        else:
            self.completed_at = None

    def complete(self, result: str, now: Optional[float] = None) -> None:
        self.result = result
        self.update_status(TodoStatus.DONE, now)

    def fail(self, error_info: str, now: Optional[float] = None) -> None:
        self.result = error_info
        self.update_status(TodoStatus.FAILED, now)

    def add_tool_call(self, call: dict[str, Any], now: Optional[float] = None) -> None:
        entry = copy.deepcopy(call)
        entry.setdefault("timestamp", time.time() if now is None else now)
        self.tool_calls.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "expected_result": self.expected_result,
            "status": self.status.value,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "tool_calls": copy.deepcopy(self.tool_calls),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Todo":
        """
        Rebuild a Todo from an exported dict.

        Accepts the camelCase keys the model emits (expectedResult,
        toolCalls, createdAt, completedAt) as well as the export keys.
        """
        if not isinstance(data, dict):
            raise ClassifiedError.validation(
                f"Todo entry must be an object, got {type(data).__name__}",
                code="INVALID_TODO_ENTRY",
            )
        description = data.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ClassifiedError.validation(
                "Todo entry is missing a description",
                code="MISSING_DESCRIPTION",
                context={"entry_id": data.get("id")},
            )
        expected = data.get("expected_result", data.get("expectedResult")) or ""
        status = parse_status(data.get("status") or TodoStatus.PENDING)
        created_at = data.get("created_at", data.get("createdAt"))
        completed_at = data.get("completed_at", data.get("completedAt"))
        created = float(created_at) if isinstance(created_at, (int, float)) else time.time()

        if status.is_terminal:
            completed = float(completed_at) if isinstance(completed_at, (int, float)) else created
        else:
            completed = None

        tool_calls = data.get("tool_calls", data.get("toolCalls")) or []
        return cls(
            id=str(data.get("id") or new_todo_id()),
            description=description.strip(),
            expected_result=str(expected).strip(),
            status=status,
            created_at=created,
            completed_at=completed,
            result=data.get("result"),
            tool_calls=[copy.deepcopy(c) for c in tool_calls if isinstance(c, dict)],
        )


# ─────────────────────────────────────────────────────────────────────────────
# Ledger
# ─────────────────────────────────────────────────────────────────────────────

class TodoLedger:
    """
    Insertion-ordered todo collection with a hard capacity.

    All mutation goes through the ledger so the capacity and the
    completed_at invariant hold. Todos returned by queries are live objects;
    mutate them through the ledger methods.
    """

    def __init__(
        self,
        max_todos: int = DEFAULT_MAX_TODOS,
        max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH,
        clock: Callable[[], float] = time.time,
        owner_id: Optional[str] = None,
    ) -> None:
        self.max_todos = max_todos
        self.max_description_length = max_description_length
        self._clock = clock
        self._owner_id = owner_id
        self._todos: dict[str, Todo] = {}

    # ── Create / insert ───────────────────────────────────────────────────────

    def create(
        self,
        description: Any,
        expected_result: Any,
        todo_id: Optional[str] = None,
    ) -> Optional[Todo]:
        """
        Validate and insert a new pending todo.

        Raises a validation ClassifiedError for bad arguments. Returns None
        when the ledger is full of in-flight work (see add()).
        """
        self._validate_text("description", description, max_length=self.max_description_length)
        self._validate_text("expected_result", expected_result)

        if todo_id is not None:
            if not isinstance(todo_id, str) or not todo_id.strip():
                raise ClassifiedError.validation(
                    "Custom ID must be a non-empty string",
                    code="INVALID_CUSTOM_ID",
                    context={"todo_id": todo_id},
                )
            todo_id = todo_id.strip()
        else:
            todo_id = new_todo_id()
            while todo_id in self._todos:
                todo_id = new_todo_id()

        todo = Todo(
            id=todo_id,
            description=description.strip(),
            expected_result=expected_result.strip(),
            created_at=self._clock(),
        )
        return todo if self.add(todo) else None

    def add(self, todo: Todo) -> bool:
        """
        Insert an existing Todo.

        At capacity, evicts the oldest terminal todo first; returns False
        (and inserts nothing) when every stored todo is still in flight.
        """
        if todo.id in self._todos:
            raise ClassifiedError.validation(
                f"Todo with ID '{todo.id}' already exists",
                code="DUPLICATE_TODO_ID",
                context={"todo_id": todo.id},
                suggestions=[
                    "Use a different custom ID",
                    "Let the ledger generate a unique ID",
                    "Check existing todos to avoid conflicts",
                ],
            )

        if len(self._todos) >= self.max_todos:
            evicted = self._evict_oldest_terminal()
            if evicted is None:
                log.warning("todo_ledger.rejected", owner=self._owner_id,
                            todo_id=todo.id, max_todos=self.max_todos)
                return False
            log.debug("todo_ledger.evicted", owner=self._owner_id,
                      evicted_id=evicted.id, status=evicted.status.value)

        self._todos[todo.id] = todo
        return True

    def _evict_oldest_terminal(self) -> Optional[Todo]:
        for todo_id, todo in self._todos.items():
            if todo.is_terminal:
                return self._todos.pop(todo_id)
        return None

    @staticmethod
    def _validate_text(name: str, value: Any, max_length: Optional[int] = None) -> None:
        label = name.upper()
        if value is None or value == "":
            raise ClassifiedError.validation(
                f"Todo {name} is required",
                code=f"MISSING_{label}",
                context={name: value},
            )
        if not isinstance(value, str):
            raise ClassifiedError.validation(
                f"Todo {name} must be a string",
                code=f"INVALID_{label}_TYPE",
                context={name: type(value).__name__},
            )
        if not value.strip():
            raise ClassifiedError.validation(
                f"Todo {name} cannot be empty",
                code=f"EMPTY_{label}",
                context={name: value},
            )
        if max_length is not None and len(value) > max_length:
            raise ClassifiedError.validation(
                f"Todo {name} is too long (max {max_length} characters)",
                code=f"{label}_TOO_LONG",
                context={"length": len(value), "max_length": max_length},
                suggestions=[
                    f"Shorten the {name} to under {max_length} characters",
                    "Break complex tasks into smaller todos",
                ],
            )

    # ── Status transitions ────────────────────────────────────────────────────

    def update_status(self, todo_id: str, status: Any) -> bool:
        """Returns False if the todo is unknown; raises on an unknown status."""
        todo = self._todos.get(todo_id)
        if todo is None:
            parse_status(status)
            return False
        todo.update_status(status, self._clock())
        return True

    def mark_complete(self, todo_id: str, result: str) -> bool:
        todo = self._todos.get(todo_id)
        if todo is None:
            return False
        todo.complete(result, self._clock())
        return True

    def mark_failed(self, todo_id: str, error_info: str) -> bool:
        todo = self._todos.get(todo_id)
        if todo is None:
            return False
        todo.fail(error_info, self._clock())
        return True

    def add_tool_call(self, todo_id: str, call: dict[str, Any]) -> bool:
        todo = self._todos.get(todo_id)
        if todo is None:
            return False
        todo.add_tool_call(call, self._clock())
        return True

    # ── Read ──────────────────────────────────────────────────────────────────

    def get(self, todo_id: str) -> Optional[Todo]:
        return self._todos.get(todo_id)

    def all(self) -> list[Todo]:
        return list(self._todos.values())

    def by_status(self, status: Any) -> list[Todo]:
        wanted = parse_status(status)
        return [t for t in self._todos.values() if t.status is wanted]

    def next_pending(self) -> Optional[Todo]:
        for todo in self._todos.values():
            if todo.status is TodoStatus.PENDING:
                return todo
        return None

    def stats(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in TodoStatus}
        for todo in self._todos.values():
            counts[todo.status.value] += 1
        total = len(self._todos)
        return {
            "total": total,
            **counts,
            "completion_rate": (counts["done"] / total * 100) if total else 0,
        }

    # ── Delete / housekeeping ─────────────────────────────────────────────────

    def delete(self, todo_id: str) -> bool:
        return self._todos.pop(todo_id, None) is not None

    def clear(self) -> None:
        self._todos.clear()

    def prune_terminal(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """
        Remove todos that have been terminal for longer than max_age_seconds.

        In-flight todos are never pruned regardless of age.
        """
        cutoff = (self._clock() if now is None else now) - max_age_seconds
        stale = [
            todo_id
            for todo_id, todo in self._todos.items()
            if todo.is_terminal and (todo.completed_at or todo.created_at) < cutoff
        ]
        for todo_id in stale:
            del self._todos[todo_id]
        return len(stale)

    # ── Export / import ───────────────────────────────────────────────────────

    def export(self) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self._todos.values()]

    def import_(self, data: Any) -> None:
        """
        Replace the whole ledger with `data` (a list of todo dicts).

        Every entry is validated before anything is replaced, so a bad
        entry leaves the current contents untouched.
        """
        if not isinstance(data, list):
            raise ClassifiedError.validation(
                "Todos data must be a list",
                code="INVALID_IMPORT",
                context={"type": type(data).__name__},
            )
        if len(data) > self.max_todos:
            raise ClassifiedError.validation(
                f"Cannot import {len(data)} todos (max {self.max_todos})",
                code="IMPORT_TOO_LARGE",
                context={"count": len(data), "max_todos": self.max_todos},
            )

        rebuilt: dict[str, Todo] = {}
        for entry in data:
            todo = Todo.from_dict(entry)
            if todo.id in rebuilt:
                raise ClassifiedError.validation(
                    f"Duplicate todo ID '{todo.id}' in import",
                    code="DUPLICATE_TODO_ID",
                    context={"todo_id": todo.id},
                )
            rebuilt[todo.id] = todo

        self._todos = rebuilt
        log.debug("todo_ledger.imported", owner=self._owner_id, count=len(rebuilt))

    # ── Dunder ────────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._todos)

    def __iter__(self) -> Iterator[Todo]:
        return iter(list(self._todos.values()))

    def __contains__(self, todo_id: object) -> bool:
        return todo_id in self._todos

    def __repr__(self) -> str:
        return f"<TodoLedger total={len(self._todos)} max={self.max_todos}>"


__all__ = [
    "Todo",
    "TodoLedger",
    "TodoStatus",
    "new_todo_id",
    "parse_status",
]
