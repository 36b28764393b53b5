"""Tool definitions, typed tool requests, local collaborators and the dispatcher."""

import json
import os
import shlex
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from . import fmt
from .edit import replace
from .report import (
    ToolArgumentError,
    ToolError,
    ToolExecutionError,
    ToolValidationError,
)
from .state import TaskAction
from .todo import TodoState

TOOL_RESULT_PREFIX = "Tool call result for "

SHELL_COMMAND = "shell_command"
READ_FILE = "read_file"
WRITE_FILE = "write_file"
EDIT_FILE = "edit_file"
ADD_TODO = "add_todo"
UPDATE_TODO_STATUS = "update_todo_status"
LIST_TODOS = "list_todos"

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": SHELL_COMMAND,
            "description": (
                "Execute a shell command to explore directory structure, search files, "
                "or run programs. Runs via /bin/sh -c in the project directory with a "
                "30 second timeout."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "Shell command to execute.",
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": READ_FILE,
            "description": "Read the full contents of a specific file.",
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to read.",
                    },
                },
                "required": ["file_path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": WRITE_FILE,
            "description": (
                "Create or overwrite a file with the given content, creating parent "
                "directories as needed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["file_path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": EDIT_FILE,
            "description": (
                "Edit an existing file by replacing old_string with new_string. "
                "old_string must match exactly one location in the file."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to edit.",
                    },
                    "old_string": {
                        "type": "string",
                        "description": "The exact text to find (must be unique).",
                    },
                    "new_string": {
                        "type": "string",
                        "description": "The replacement text.",
                    },
                },
                "required": ["file_path", "old_string", "new_string"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ADD_TODO,
            "description": "Add a todo item to plan multi-step work.",
            "parameters": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Short task title."},
                    "description": {
                        "type": "string",
                        "description": "Optional details.",
                    },
                    "priority": {
                        "type": "string",
                        "enum": ["high", "medium", "low"],
                        "description": "Optional priority (default medium).",
                    },
                },
                "required": ["title"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": UPDATE_TODO_STATUS,
            "description": "Update the status of a todo item.",
            "parameters": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Todo id, e.g. todo_1."},
                    "status": {
                        "type": "string",
                        "enum": ["pending", "in_progress", "completed", "cancelled"],
                    },
                },
                "required": ["id", "status"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": LIST_TODOS,
            "description": "List current todo items grouped by status.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]

TOOL_NAMES = tuple(t["function"]["name"] for t in TOOLS)

# Names models commonly hallucinate, mapped to the closest real tool.
TOOL_CORRECTIONS = {
    "bash": SHELL_COMMAND,
    "sh": SHELL_COMMAND,
    "shell": SHELL_COMMAND,
    "exec": SHELL_COMMAND,
    "execute": SHELL_COMMAND,
    "execute_command": SHELL_COMMAND,
    "run": SHELL_COMMAND,
    "run_command": SHELL_COMMAND,
    "terminal": SHELL_COMMAND,
    "cat": READ_FILE,
    "open": READ_FILE,
    "open_file": READ_FILE,
    "view": READ_FILE,
    "view_file": READ_FILE,
    "read": READ_FILE,
    "save": WRITE_FILE,
    "save_file": WRITE_FILE,
    "write": WRITE_FILE,
    "create": WRITE_FILE,
    "create_file": WRITE_FILE,
    "replace": EDIT_FILE,
    "str_replace": EDIT_FILE,
    "str_replace_editor": EDIT_FILE,
    "patch": EDIT_FILE,
    "modify": EDIT_FILE,
    "modify_file": EDIT_FILE,
    "edit": EDIT_FILE,
    "todo": ADD_TODO,
    "create_todo": ADD_TODO,
    "update_todo": UPDATE_TODO_STATUS,
    "complete_todo": UPDATE_TODO_STATUS,
    "todos": LIST_TODOS,
    "get_todos": LIST_TODOS,
}

SHELL_TIMEOUT = 30
MAX_SHELL_OUTPUT = 50 * 1024  # 50 KB
MAX_READ_BYTES = 10 * 1024 * 1024  # 10 MB
BINARY_CHECK_BYTES = 8 * 1024
_KILL_WAIT_TIMEOUT = 5


def format_tool_result(name: str, text: str) -> str:
    """Content of the user message carrying a tool result back to the model."""
    return f"{TOOL_RESULT_PREFIX}{name}: {text}"


def _one_line(text: str) -> str:
    return " ".join(text.split("\n")).strip()


# ---------------------------------------------------------------------------
# Tool calls and typed requests
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"


def _pick(args: dict, tool: str, *keys: str, required: bool = True) -> str | None:
    """Return the first present key among `keys` (primary name, then aliases)."""
    for key in keys:
        if key in args and args[key] is not None:
            value = args[key]
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            if not isinstance(value, str):
                raise ToolArgumentError(
                    tool, f"parameter {keys[0]!r} must be a string"
                )
            return value
    if required:
        names = " or ".join(repr(k) for k in keys)
        raise ToolArgumentError(tool, f"missing required parameter {names}")
    return None


@dataclass
class ShellCommandRequest:
    command: str

    @classmethod
    def from_args(cls, args: dict) -> "ShellCommandRequest":
        raw = args.get("command", args.get("cmd"))
        # A command passed as an argv array is joined back into a shell string.
        if isinstance(raw, list) and raw and all(isinstance(x, str) for x in raw):
            return cls(command=shlex.join(raw))
        command = _pick(args, SHELL_COMMAND, "command", "cmd")
        if not command.strip():
            raise ToolArgumentError(SHELL_COMMAND, "command must not be empty")
        return cls(command=command)


@dataclass
class ReadFileRequest:
    file_path: str

    @classmethod
    def from_args(cls, args: dict) -> "ReadFileRequest":
        path = _pick(args, READ_FILE, "file_path", "path", "filename", "file")
        if not path.strip():
            raise ToolArgumentError(READ_FILE, "file_path must not be empty")
        return cls(file_path=path.strip())


@dataclass
class WriteFileRequest:
    file_path: str
    content: str

    @classmethod
    def from_args(cls, args: dict) -> "WriteFileRequest":
        path = _pick(args, WRITE_FILE, "file_path", "path", "filename", "file")
        if not path.strip():
            raise ToolArgumentError(WRITE_FILE, "file_path must not be empty")
        content = _pick(args, WRITE_FILE, "content", "contents", "text", "data")
        return cls(file_path=path.strip(), content=content)


@dataclass
class EditFileRequest:
    file_path: str
    old_string: str
    new_string: str

    @classmethod
    def from_args(cls, args: dict) -> "EditFileRequest":
        path = _pick(args, EDIT_FILE, "file_path", "path", "filename", "file")
        old = _pick(args, EDIT_FILE, "old_string", "old_text", "oldString", "old_str")
        new = _pick(args, EDIT_FILE, "new_string", "new_text", "newString", "new_str")
        if not old:
            raise ToolArgumentError(EDIT_FILE, "old_string must not be empty")
        return cls(file_path=path.strip(), old_string=old, new_string=new)


@dataclass
class AddTodoRequest:
    title: str
    description: str = ""
    priority: str = ""

    @classmethod
    def from_args(cls, args: dict) -> "AddTodoRequest":
        return cls(
            title=_pick(args, ADD_TODO, "title", "task", "content"),
            description=_pick(args, ADD_TODO, "description", "details", required=False)
            or "",
            priority=_pick(args, ADD_TODO, "priority", required=False) or "",
        )


@dataclass
class UpdateTodoStatusRequest:
    id: str
    status: str

    @classmethod
    def from_args(cls, args: dict) -> "UpdateTodoStatusRequest":
        return cls(
            id=_pick(args, UPDATE_TODO_STATUS, "id", "todo_id", "task_id"),
            status=_pick(args, UPDATE_TODO_STATUS, "status", "state"),
        )


@dataclass
class ListTodosRequest:
    @classmethod
    def from_args(cls, args: dict) -> "ListTodosRequest":
        return cls()


ToolRequest = (
    ShellCommandRequest
    | ReadFileRequest
    | WriteFileRequest
    | EditFileRequest
    | AddTodoRequest
    | UpdateTodoStatusRequest
    | ListTodosRequest
)

REQUEST_TYPES = {
    SHELL_COMMAND: ShellCommandRequest,
    READ_FILE: ReadFileRequest,
    WRITE_FILE: WriteFileRequest,
    EDIT_FILE: EditFileRequest,
    ADD_TODO: AddTodoRequest,
    UPDATE_TODO_STATUS: UpdateTodoStatusRequest,
    LIST_TODOS: ListTodosRequest,
}


def suggest_tool(name: str) -> str | None:
    """Best guess for an unknown tool name, or None."""
    key = name.strip().lower()
    for prefix in ("functions.", "function.", "tools.", "tool."):
        if key.startswith(prefix):
            key = key[len(prefix) :]
    key = key.replace("-", "_").replace(" ", "_")
    if key in TOOL_NAMES:
        return key
    return TOOL_CORRECTIONS.get(key)


def validate_tool_name(name: str) -> None:
    """Raise ToolValidationError unless `name` is a whitelisted tool."""
    if name in TOOL_NAMES:
        return
    guess = suggest_tool(name)
    available = ", ".join(TOOL_NAMES)
    if guess:
        raise ToolValidationError(
            name,
            f"unknown tool {name!r}. Did you mean {guess!r}? Available tools: {available}",
            suggestion=guess,
        )
    raise ToolValidationError(
        name, f"unknown tool {name!r}. Available tools: {available}"
    )


def parse_request(name: str, arguments: str | dict | None) -> ToolRequest:
    """Validate the tool name and parse its JSON arguments into a request."""
    validate_tool_name(name)
    if isinstance(arguments, dict):
        args = arguments
    elif arguments is None or not str(arguments).strip():
        args = {}
    else:
        try:
            args = json.loads(arguments)
        except (json.JSONDecodeError, TypeError) as e:
            raise ToolArgumentError(name, f"invalid JSON in tool arguments: {e}")
    if not isinstance(args, dict):
        raise ToolArgumentError(name, "tool arguments must be a JSON object")
    return REQUEST_TYPES[name].from_args(args)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class ShellCommandError(RuntimeError):
    """A shell command failed, timed out, or could not start."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class ToolExecutor(Protocol):
    def run(self, command: str) -> str: ...

    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> str: ...

    def replace(self, path: str, old_text: str, new_text: str) -> str: ...

    def exists(self, path: str) -> bool: ...


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable, give up


def _truncate_output(output: str) -> str:
    data = output.encode("utf-8")
    if len(data) <= MAX_SHELL_OUTPUT:
        return output
    kept = data[:MAX_SHELL_OUTPUT].decode("utf-8", errors="ignore")
    return kept + f"\n[output truncated at {MAX_SHELL_OUTPUT // 1024}KB]"


class LocalTools:
    """Default collaborators operating on the local filesystem."""

    def __init__(self, base_dir: str = ".", timeout: int = SHELL_TIMEOUT):
        self.base_dir = base_dir
        self.timeout = timeout

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = Path(self.base_dir) / p
        return p

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def run(self, command: str) -> str:
        if not command.strip():
            raise ShellCommandError("empty command provided")
        if sys.platform == "win32":
            shell_cmd = ["cmd.exe", "/c", command]
        else:
            shell_cmd = ["/bin/sh", "-c", command]

        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=self.base_dir,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(shell_cmd, **popen_kwargs)
        except OSError as e:
            raise ShellCommandError(f"failed to start shell command: {e}")

        try:
            raw, _ = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc)
            raise ShellCommandError(f"command timed out after {self.timeout}s")

        output = _truncate_output(raw.decode("utf-8", errors="replace"))
        if proc.returncode != 0:
            raise ShellCommandError(
                f"command failed with exit code {proc.returncode}: {output}",
                output=output,
            )
        return output or "(no output)"

    def read(self, path: str) -> str:
        resolved = self._resolve(path)
        if not resolved.exists():
            raise FileNotFoundError(f"file does not exist: {path}")
        if resolved.is_dir():
            raise IsADirectoryError(f"path is a directory, not a file: {path}")
        if resolved.stat().st_size > MAX_READ_BYTES:
            raise ValueError(f"file too large (>10MB): {path}")
        with open(resolved, "rb") as f:
            data = f.read()
        if b"\x00" in data[:BINARY_CHECK_BYTES]:
            raise ValueError(f"binary file detected: {path}")
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValueError(f"failed to decode {path} as UTF-8: {e}")

    def write(self, path: str, content: str) -> str:
        resolved = self._resolve(path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        resolved.write_bytes(data)
        return f"Wrote {len(data)} bytes to {path}"

    def replace(self, path: str, old_text: str, new_text: str) -> str:
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise FileNotFoundError(f"file does not exist: {path}")
        content = resolved.read_text(encoding="utf-8")
        resolved.write_text(replace(content, old_text, new_text), encoding="utf-8")
        return f"Edited {path}"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def _progress_target(request: ToolRequest) -> str:
    match request:
        case ShellCommandRequest(command=command):
            return _one_line(command)
        case ReadFileRequest(file_path=p) | WriteFileRequest(file_path=p):
            return p
        case EditFileRequest(file_path=p):
            return p
        case AddTodoRequest(title=title):
            return title
        case UpdateTodoStatusRequest(id=todo_id, status=status):
            return f"{todo_id} -> {status}"
    return ""


class ToolDispatcher:
    """Validates tool calls and routes them to the session's collaborators.

    Failures never escape execute(): they come back as the error half of
    the (result_text, error) pair, and result_text is what the model sees.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        todo: TodoState,
        *,
        task_actions: list[TaskAction],
        shell_history: list[str],
        budget=None,
        verbose: bool = False,
    ):
        self.executor = executor
        self.todo = todo
        self.task_actions = task_actions
        self.shell_history = shell_history
        self.budget = budget
        self.verbose = verbose
        self.iteration = 0

    def execute(self, tool_call: ToolCall) -> tuple[str, ToolError | None]:
        try:
            request = parse_request(tool_call.name, tool_call.arguments)
        except ToolError as e:
            if self.verbose:
                fmt.tool_error(tool_call.name, str(e))
            return f"error: {e}", e

        if self.verbose:
            label = self.budget.usage_label() if self.budget is not None else "?"
            fmt.tool_progress(
                self.iteration, label, tool_call.name, _progress_target(request)
            )

        try:
            return self._run(tool_call.name, request), None
        except ToolExecutionError as e:
            if self.verbose:
                fmt.tool_error(tool_call.name, str(e).split("\n", 1)[0])
            return f"error: {e}", e

    def _run(self, name: str, request: ToolRequest) -> str:
        try:
            match request:
                case ShellCommandRequest(command=command):
                    self.shell_history.append(command)
                    output = self.executor.run(command)
                    self._record("command_executed", f"Executed: {command}", command)
                    return f"{_one_line(command)}\n{output}"
                case ReadFileRequest(file_path=path):
                    content = self.executor.read(path)
                    self._record("file_read", f"Read {path}", path)
                    return f"{path}\n{content}"
                case WriteFileRequest(file_path=path, content=content):
                    existed = self.executor.exists(path)
                    status = self.executor.write(path, content)
                    if existed:
                        self._record("file_modified", f"Overwrote {path}", path)
                    else:
                        self._record("file_created", f"Created {path}", path)
                    return status
                case EditFileRequest(file_path=path, old_string=old, new_string=new):
                    status = self.executor.replace(path, old, new)
                    self._record("file_modified", f"Edited {path}", path)
                    return status
                case AddTodoRequest(title=title, description=desc, priority=prio):
                    return self.todo.add(title, desc, prio)
                case UpdateTodoStatusRequest(id=todo_id, status=status):
                    return self.todo.update_status(todo_id, status)
                case ListTodosRequest():
                    return self.todo.list_todos()
        except Exception as e:
            raise ToolExecutionError(name, str(e) or type(e).__name__) from e
        raise ToolExecutionError(name, f"unhandled tool {name!r}")

    def _record(self, action_type: str, description: str, details: str) -> None:
        self.task_actions.append(
            TaskAction(type=action_type, description=description, details=details)
        )
