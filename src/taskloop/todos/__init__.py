from taskloop.todos.ledger import Todo, TodoLedger, TodoStatus, new_todo_id, parse_status

__all__ = ["Todo", "TodoLedger", "TodoStatus", "new_todo_id", "parse_status"]
