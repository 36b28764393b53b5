"""Conversation optimizer: drops redundant tool output before each model call.

Tool results travel as user messages of the form
``Tool call result for <tool>: <header>\\n<body>`` where the header is the
file path (read_file) or the command (shell_command). A later result whose
header and body hash match an earlier, still intact result is replaced by a
short ``[OPTIMIZED]`` stub. Under budget pressure, aggressive_optimize()
collapses older large results into ``[COMPACTED]`` stubs regardless of
redundancy.
"""

import hashlib
from dataclasses import dataclass
from pathlib import PurePosixPath

from .tools import READ_FILE, SHELL_COMMAND, TOOL_RESULT_PREFIX

OPTIMIZED_MARKER = "[OPTIMIZED]"
COMPACTED_MARKER = "[COMPACTED]"

AGGRESSIVE_KEEP_RECENT = 4
AGGRESSIVE_MIN_CHARS = 1000

# The system prompt and the original user query.
PROTECTED_PREFIX = 2

_FILE_KINDS = {
    ".go": "Go file",
    ".py": "Python file",
    ".md": "Markdown file",
    ".json": "JSON file",
}


@dataclass
class FileReadRecord:
    """Latest non-redundant result for a path (or a command)."""

    path: str
    content_hash: str
    last_seen_index: int


@dataclass
class ToolResult:
    tool: str
    header: str
    body: str


def parse_tool_result(message: dict) -> ToolResult | None:
    """Split a tool-result message into tool name, header line and body."""
    if message.get("role") != "user":
        return None
    content = message.get("content") or ""
    if not content.startswith(TOOL_RESULT_PREFIX):
        return None
    tool, sep, payload = content[len(TOOL_RESULT_PREFIX) :].partition(": ")
    if not sep or not tool:
        return None
    header, _, body = payload.partition("\n")
    return ToolResult(tool=tool, header=header, body=body)


def is_stub(body: str) -> bool:
    return body.startswith(OPTIMIZED_MARKER) or body.startswith(COMPACTED_MARKER)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _line_count(text: str) -> int:
    return len(text.strip().split("\n"))


def file_kind(path: str) -> str:
    return _FILE_KINDS.get(PurePosixPath(path).suffix.lower(), "file")


def read_stub(path: str, content: str) -> str:
    return (
        f"{TOOL_RESULT_PREFIX}{READ_FILE}: {path}\n"
        f"{OPTIMIZED_MARKER} Previously read {file_kind(path)} "
        f"({_line_count(content)} lines, {len(content)} chars) "
        "- content unchanged since last read"
    )


def shell_stub(command: str, output: str) -> str:
    return (
        f"{TOOL_RESULT_PREFIX}{SHELL_COMMAND}: {command}\n"
        f"{OPTIMIZED_MARKER} Previously ran this command "
        f"({_line_count(output)} lines, {len(output)} chars) "
        "- output unchanged since last run"
    )


def compacted_stub(result: ToolResult) -> str:
    return (
        f"{TOOL_RESULT_PREFIX}{result.tool}: {result.header}\n"
        f"{COMPACTED_MARKER} Older {result.tool} output removed to save context "
        f"({_line_count(result.body)} lines, {len(result.body)} chars). "
        "Run the tool again if you still need it."
    )


class ConversationOptimizer:
    """Stateful redundancy remover for one conversation.

    Records point at message indices, so clear_records() must be called
    whenever a new conversation is seeded.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.file_reads: dict[str, FileReadRecord] = {}
        self.shell_results: dict[str, FileReadRecord] = {}
        self.optimized_messages = 0
        self.compacted_messages = 0
        self.chars_saved = 0

    def clear_records(self) -> None:
        """Forget recorded results. Counters are kept."""
        self.file_reads.clear()
        self.shell_results.clear()

    def reset(self) -> None:
        self.clear_records()
        self.optimized_messages = 0
        self.compacted_messages = 0
        self.chars_saved = 0

    def _table(self, tool: str) -> dict[str, FileReadRecord] | None:
        if tool == READ_FILE:
            return self.file_reads
        if tool == SHELL_COMMAND:
            return self.shell_results
        return None

    def optimize(self, messages: list[dict]) -> list[dict]:
        """Return a copy of messages with redundant tool results stubbed.

        The input list and its dicts are never modified.
        """
        if not self.enabled:
            return list(messages)

        out: list[dict] = []
        for i, msg in enumerate(messages):
            result = parse_tool_result(msg)
            table = self._table(result.tool) if result else None
            if (
                table is None
                or is_stub(result.body)
                or result.header.startswith("error:")
            ):
                out.append(msg)
                continue

            digest = content_hash(result.body)
            record = table.get(result.header)
            if (
                record is not None
                and record.content_hash == digest
                and record.last_seen_index < i
                and self._intact(out, record, result.tool)
            ):
                if result.tool == READ_FILE:
                    stub = read_stub(result.header, result.body)
                else:
                    stub = shell_stub(result.header, result.body)
                self.optimized_messages += 1
                self.chars_saved += max(0, len(msg["content"]) - len(stub))
                out.append({**msg, "content": stub})
                continue

            if record is None or i >= record.last_seen_index:
                table[result.header] = FileReadRecord(
                    path=result.header, content_hash=digest, last_seen_index=i
                )
            out.append(msg)
        return out

    @staticmethod
    def _intact(out: list[dict], record: FileReadRecord, tool: str) -> bool:
        """The message a record points at still carries the full output."""
        if record.last_seen_index >= len(out):
            return False
        earlier = parse_tool_result(out[record.last_seen_index])
        return (
            earlier is not None
            and earlier.tool == tool
            and earlier.header == record.path
            and not is_stub(earlier.body)
            and content_hash(earlier.body) == record.content_hash
        )

    def aggressive_optimize(self, messages: list[dict]) -> list[dict]:
        """Collapse large tool results outside the most recent few.

        Never touches the system message or the original user query, and
        leaves its own output unchanged when applied again.
        """
        indexed = [
            (i, result)
            for i, msg in enumerate(messages)
            if i >= PROTECTED_PREFIX and (result := parse_tool_result(msg)) is not None
        ]
        recent = {i for i, _ in indexed[-AGGRESSIVE_KEEP_RECENT:]}

        out = list(messages)
        for i, result in indexed:
            if i in recent or is_stub(result.body):
                continue
            if len(result.body) <= AGGRESSIVE_MIN_CHARS:
                continue
            stub = compacted_stub(result)
            self.compacted_messages += 1
            self.chars_saved += max(0, len(messages[i]["content"]) - len(stub))
            out[i] = {**messages[i], "content": stub}
        return out

    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "tracked_files": len(self.file_reads),
            "tracked_commands": len(self.shell_results),
            "optimized_messages": self.optimized_messages,
            "compacted_messages": self.compacted_messages,
            "chars_saved": self.chars_saved,
        }
