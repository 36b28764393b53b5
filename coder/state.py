"""Session continuity: the persisted SessionState and its compact summary.

Only the compact summary is ever loaded back into a new process. The full
message history is written for inspection but never replayed, so a long
previous session cannot bloat the next one's context.
"""

import json
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from . import fmt

MAX_SUMMARY_CHARS = 5000
TRUNCATION_MARKER = "\n[summary truncated]"
STATE_VERSION = 1

MAX_COMPLETED_TASKS = 10
MAX_RECENT_CHANGES = 10
MAX_TOUCHED_FILES = 20
MAX_LINE_CHARS = 200

_FILE_CHANGE_TYPES = ("file_created", "file_modified")


@dataclass
class TaskAction:
    type: str
    description: str
    details: str = ""


@dataclass
class SessionState:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    messages: list[dict] = field(default_factory=list)
    previous_summary: str = ""
    compact_summary: str = ""
    task_actions: list[TaskAction] = field(default_factory=list)
    completed_tasks: list[str] = field(default_factory=list)
    last_query: str = ""
    total_tokens: int = 0
    total_cost: float = 0.0
    iterations: int = 0
    saved_at: str = ""


def _clip_line(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > MAX_LINE_CHARS:
        return text[: MAX_LINE_CHARS - 3] + "..."
    return text


def clip_summary(text: str) -> str:
    """Enforce the summary bound, appending a marker when text was cut."""
    if len(text) <= MAX_SUMMARY_CHARS:
        return text
    return text[: MAX_SUMMARY_CHARS - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def build_compact_summary(
    task_actions: list[TaskAction],
    *,
    completed_tasks: list[str] = (),
    iterations: int = 0,
    total_tokens: int = 0,
    total_cost: float = 0.0,
    query: str | None = None,
) -> str:
    """Derive the continuity summary for the next session (<= 5000 chars)."""
    lines = ["## Previous session summary"]
    if query:
        lines.append(f"Last request: {_clip_line(query)}")

    completed = list(completed_tasks)[-MAX_COMPLETED_TASKS:]
    if completed:
        lines.append("")
        lines.append("### Completed tasks")
        lines.extend(f"- {_clip_line(t)}" for t in completed)

    changes = [a for a in task_actions if a.type in _FILE_CHANGE_TYPES]
    if changes:
        lines.append("")
        lines.append("### Recent file changes")
        for action in changes[-MAX_RECENT_CHANGES:]:
            lines.append(f"- {action.type}: {_clip_line(action.description)}")

    touched: list[str] = []
    for action in reversed(task_actions):
        if action.type == "command_executed" or not action.details:
            continue
        if action.details not in touched:
            touched.append(action.details)
        if len(touched) >= MAX_TOUCHED_FILES:
            break
    if touched:
        lines.append("")
        lines.append("### Files touched")
        lines.extend(f"- {_clip_line(p)}" for p in reversed(touched))

    commands = sum(1 for a in task_actions if a.type == "command_executed")
    tool_calls = len(task_actions)
    lines.append("")
    lines.append("### Metrics")
    lines.append(
        f"- iterations: {iterations}, tool actions: {tool_calls}, "
        f"shell commands: {commands}"
    )
    lines.append(f"- total tokens: {total_tokens}, total cost: ${total_cost:.6f}")
    if iterations:
        lines.append(f"- cost per iteration: ${total_cost / iterations:.6f}")

    return clip_summary("\n".join(lines))


def summarize_state(state: SessionState) -> str:
    return build_compact_summary(
        state.task_actions,
        completed_tasks=state.completed_tasks,
        iterations=state.iterations,
        total_tokens=state.total_tokens,
        total_cost=state.total_cost,
        query=state.last_query,
    )


def export_state(state: SessionState) -> bytes:
    """Serialize the full SessionState as UTF-8 JSON.

    The compact summary is always rebuilt from the state's actions and
    metrics, so whatever ``state.compact_summary`` held is not trusted.
    """
    payload = asdict(state)
    payload["compact_summary"] = summarize_state(state)
    payload["version"] = STATE_VERSION
    if not payload["saved_at"]:
        payload["saved_at"] = datetime.now(timezone.utc).isoformat()
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def _decode(data: bytes) -> dict:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"invalid session state: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("invalid session state: expected a JSON object")
    return payload


def import_state(data: bytes) -> SessionState:
    """Deserialize a full SessionState (history included)."""
    payload = _decode(data)
    actions = [
        TaskAction(
            type=a.get("type", ""),
            description=a.get("description", ""),
            details=a.get("details", ""),
        )
        for a in payload.get("task_actions") or []
        if isinstance(a, dict)
    ]
    return SessionState(
        session_id=payload.get("session_id") or uuid.uuid4().hex[:12],
        messages=list(payload.get("messages") or []),
        previous_summary=payload.get("previous_summary") or "",
        compact_summary=clip_summary(
            payload.get("compact_summary") or payload.get("summary") or ""
        ),
        task_actions=actions,
        completed_tasks=[
            t for t in payload.get("completed_tasks") or [] if isinstance(t, str)
        ],
        last_query=payload.get("last_query") or "",
        total_tokens=int(payload.get("total_tokens") or 0),
        total_cost=float(payload.get("total_cost") or 0.0),
        iterations=int(payload.get("iterations") or 0),
        saved_at=payload.get("saved_at") or "",
    )


def load_summary_only(data: bytes) -> str:
    """Return only the compact summary of a persisted state.

    Older state files carry an unbounded ``summary`` field instead; it is
    used as a fallback and clipped to the same bound.
    """
    payload = _decode(data)
    summary = payload.get("compact_summary") or payload.get("summary") or ""
    if not isinstance(summary, str):
        return ""
    return clip_summary(summary)


def save_state(path: str | Path, state: SessionState) -> None:
    """Write the state file atomically (temp file in the same dir + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = export_state(state)
    fd, tmp = tempfile.mkstemp(prefix=".session-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load_previous_summary(path: str | Path) -> str:
    """Compact summary of the last session, or "" if none can be read."""
    path = Path(path)
    if not path.is_file():
        return ""
    try:
        return load_summary_only(path.read_bytes())
    except (OSError, ValueError) as e:
        fmt.warning(f"ignoring unreadable session state {path}: {e}")
        return ""
