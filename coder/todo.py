"""Todo list collaborator: an in-memory task list scoped to one session."""

from dataclasses import dataclass, field
from datetime import datetime

from . import fmt

MAX_ITEMS = 50
MAX_TITLE_TEXT = 500
VALID_STATUSES = ("pending", "in_progress", "completed", "cancelled")
VALID_PRIORITIES = ("high", "medium", "low")

_STATUS_ORDER = ("in_progress", "pending", "completed", "cancelled")


class TodoError(ValueError):
    """Invalid todo operation (unknown id, bad status, full list...)."""


@dataclass
class TodoItem:
    id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


class TodoState:
    """Per-session todo list. Cleared by reset() at session start."""

    def __init__(self, verbose: bool = False):
        self.items: list[TodoItem] = []
        self.verbose = verbose
        self._next_id = 1

    def add(self, title: str, description: str = "", priority: str = "") -> str:
        title = title.strip()
        if not title:
            raise TodoError("todo title must not be empty")
        if len(title) > MAX_TITLE_TEXT:
            raise TodoError(
                f"todo title exceeds {MAX_TITLE_TEXT} character limit, please shorten it"
            )
        priority = (priority or "medium").lower()
        if priority not in VALID_PRIORITIES:
            raise TodoError(
                f"invalid priority {priority!r}, expected one of: {', '.join(VALID_PRIORITIES)}"
            )
        if len(self.items) >= MAX_ITEMS:
            raise TodoError(f"todo list full ({MAX_ITEMS} items max)")

        item = TodoItem(
            id=f"todo_{self._next_id}",
            title=title,
            description=description.strip(),
            priority=priority,
        )
        self._next_id += 1
        self.items.append(item)
        if self.verbose:
            fmt.todo_update("add", f"{title[:80]} ({self.remaining()} remaining)")
        return f"Added todo: {title} (ID: {item.id})"

    def update_status(self, todo_id: str, status: str) -> str:
        status = status.strip().lower()
        if status not in VALID_STATUSES:
            raise TodoError(
                f"invalid status {status!r}, expected one of: {', '.join(VALID_STATUSES)}"
            )
        item = self._find(todo_id)
        item.status = status
        item.updated_at = datetime.now()
        if self.verbose:
            fmt.todo_update(status, f"{item.title[:80]} ({self.remaining()} remaining)")
        return f"Updated todo {item.id} to {status}: {item.title}"

    def list_todos(self) -> str:
        """Markdown listing grouped by status, in-progress first."""
        if not self.items:
            return "No todos yet"

        lines = ["Current todos:", ""]
        for status in _STATUS_ORDER:
            group = [i for i in self.items if i.status == status]
            if not group:
                continue
            lines.append(f"### {status.replace('_', ' ').title()}")
            for item in group:
                line = f"- {item.id} [{item.priority.upper()}] {item.title}"
                if item.description:
                    line += f" - {item.description}"
                lines.append(line)
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def _find(self, todo_id: str) -> TodoItem:
        key = todo_id.strip()
        # Models often pass the bare number instead of the "todo_N" id.
        if key.isdigit():
            key = f"todo_{key}"
        for item in self.items:
            if item.id == key:
                return item
        raise TodoError(f"todo not found: {todo_id}")

    def remaining(self) -> int:
        return sum(1 for i in self.items if i.status in ("pending", "in_progress"))

    def completed_titles(self) -> list[str]:
        return [i.title for i in self.items if i.status == "completed"]

    def reset(self) -> None:
        """Drop every item. Called when a new session starts."""
        count = len(self.items)
        self.items.clear()
        self._next_id = 1
        if self.verbose and count:
            fmt.todo_update("cleared", f"{count} items removed")

    def summary_line(self) -> str | None:
        """One-line progress summary, or None if no todo was ever added."""
        if not self.items:
            return None
        done = len(self.completed_titles())
        return f"todo: {done}/{len(self.items)} completed, {self.remaining()} remaining"
