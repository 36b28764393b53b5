"""Recovery heuristics for misbehaving model responses.

These are best-effort string heuristics, not guaranteed classifiers. Each
check returns an enum outcome; the agent loop decides what to inject.
"""

import enum
import json
import shlex

from .tools import ToolCall

# -- Salvaging tool calls from plain text ------------------------------------

_SHELLS = ("bash", "sh", "zsh", "/bin/bash", "/bin/sh", "/bin/zsh")
_SHELL_FLAGS = ("-c", "-lc", "-ic")

_decoder = json.JSONDecoder()


def _json_objects(text: str):
    """Yield every top-level JSON object embedded in text."""
    pos = 0
    while True:
        start = text.find("{", pos)
        if start < 0:
            return
        try:
            obj, end = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            pos = start + 1
            continue
        if isinstance(obj, dict):
            yield obj
        pos = end


def _arguments_text(arguments) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def _from_tool_calls_entry(entry) -> tuple[str, str] | None:
    if not isinstance(entry, dict):
        return None
    fn = entry.get("function")
    if isinstance(fn, dict):
        name = fn.get("name")
        arguments = fn.get("arguments", fn.get("parameters"))
    else:
        name = entry.get("name")
        arguments = entry.get("arguments", entry.get("parameters"))
    if not isinstance(name, str) or not name:
        return None
    return name, _arguments_text(arguments)


def _command_from_argv(argv: list[str]) -> str:
    if len(argv) >= 3 and argv[0] in _SHELLS and argv[1] in _SHELL_FLAGS:
        return argv[-1]
    return shlex.join(argv)


def extract_text_tool_calls(*texts: str | None) -> list[ToolCall]:
    """Salvage tool calls written as plain text instead of structured calls.

    Two shapes are recognized: a ``{"tool_calls": [...]}`` fragment and a
    legacy ``{"cmd": ["bash", "-lc", "..."]}`` array, which becomes a
    shell_command call. Synthesized ids are ``fallback_N``.
    """
    found: list[tuple[str, str]] = []
    for text in texts:
        if not text:
            continue
        for obj in _json_objects(text):
            calls = obj.get("tool_calls")
            if isinstance(calls, list):
                for entry in calls:
                    parsed = _from_tool_calls_entry(entry)
                    if parsed:
                        found.append(parsed)
                continue
            argv = obj.get("cmd")
            if (
                isinstance(argv, list)
                and argv
                and all(isinstance(a, str) for a in argv)
            ):
                command = _command_from_argv(argv)
                found.append(("shell_command", json.dumps({"command": command})))
        if found:
            # Content wins over reasoning when both carry calls.
            break
    return [
        ToolCall(id=f"fallback_{i}", name=name, arguments=arguments)
        for i, (name, arguments) in enumerate(found, start=1)
    ]


# -- Tool-call syntax leaking into the final answer --------------------------


class TextToolCallCheck(enum.Enum):
    CLEAN = "clean"
    MALFORMED = "malformed"


_LEAK_MARKERS = (
    '"tool_calls"',
    "<tool_call>",
    "</tool_call>",
    "<|call|>",
    "to=functions.",
    '"function": {',
    '"function":{',
    '{"cmd":',
    '{"cmd" :',
)


def check_tool_call_format(text: str | None) -> TextToolCallCheck:
    """MALFORMED when the text carries tool-call syntax that failed to parse."""
    if not text:
        return TextToolCallCheck.CLEAN
    compact = text.replace("\n", " ")
    for marker in _LEAK_MARKERS:
        if marker in compact:
            return TextToolCallCheck.MALFORMED
    return TextToolCallCheck.CLEAN


# -- Premature stops ---------------------------------------------------------


class CompletionCheck(enum.Enum):
    COMPLETE = "complete"
    EMPTY = "empty"
    REFUSAL = "refusal"
    TOO_SHORT = "too_short"

    @property
    def incomplete(self) -> bool:
        return self is not CompletionCheck.COMPLETE


REFUSAL_MAX_CHARS = 200
SHORT_MAX_CHARS = 300

REFUSAL_PHRASES = (
    "i cannot",
    "i can't",
    "i can not",
    "i am unable",
    "i'm unable",
    "unable to",
    "not possible to",
    "i am not able to",
    "i'm not able to",
    "i don't have access",
    "i do not have access",
)

EVIDENCE_KEYWORDS = (
    "file",
    "read",
    "found",
    "created",
    "updated",
    "modified",
    "wrote",
    "written",
    "changed",
    "fixed",
    "implemented",
    "added",
    "removed",
    "directory",
    "function",
    "command",
    "output",
    "test",
    "error",
    "line",
    "code",
)


def check_completion(text: str | None) -> CompletionCheck:
    """Flag answers that look like the model gave up or stopped too early."""
    stripped = (text or "").strip()
    if not stripped:
        return CompletionCheck.EMPTY
    lowered = stripped.lower()
    if len(stripped) < REFUSAL_MAX_CHARS and any(p in lowered for p in REFUSAL_PHRASES):
        return CompletionCheck.REFUSAL
    if len(stripped) < SHORT_MAX_CHARS and not any(
        k in lowered for k in EVIDENCE_KEYWORDS
    ):
        return CompletionCheck.TOO_SHORT
    return CompletionCheck.COMPLETE


# -- Injected messages -------------------------------------------------------

TOOL_FORMAT_REMINDER = (
    "Your last response contained tool-call syntax as plain text, which was not "
    "executed. Use the structured tool calling interface to call tools "
    "(shell_command, read_file, write_file, edit_file, add_todo, "
    "update_todo_status, list_todos). If you are done, reply with your final "
    "answer only, without any tool-call syntax."
)

ENCOURAGEMENTS = {
    CompletionCheck.EMPTY: (
        "Your last response was empty. Continue working on the task: use the "
        "available tools to explore the project and make progress, then give a "
        "complete final answer."
    ),
    CompletionCheck.REFUSAL: (
        "Don't give up yet. You have tools to run shell commands and to read, "
        "write and edit files. Use them to investigate and complete the task, "
        "then report what you did."
    ),
    CompletionCheck.TOO_SHORT: (
        "Your answer looks incomplete. Use the tools to verify your work, then "
        "give a complete final answer describing what you found or changed."
    ),
}

CONTINUATION = (
    "Your response was cut off. Continue exactly where you left off; do not "
    "repeat what you already wrote."
)


def encouragement(check: CompletionCheck) -> str:
    return ENCOURAGEMENTS[check]
