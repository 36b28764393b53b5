"""Tests for the agent loop in agent.py."""

import copy
import json

import pytest

from coder import agent
from coder.agent import Conversation, run_agent_loop
from coder.budget import ContextBudget
from coder.llm import Choice, ModelResponse, Usage, UsageTotals
from coder.optimizer import COMPACTED_MARKER, ConversationOptimizer
from coder.recovery import CONTINUATION, ENCOURAGEMENTS, TOOL_FORMAT_REMINDER, CompletionCheck
from coder.report import APIRequestError, IterationLimitExceeded, ReportCollector
from coder.todo import TodoState
from coder.tools import ShellCommandError, ToolCall, ToolDispatcher

FINAL_ANSWER = (
    "The project has a single entry point in main.py which parses the command "
    "line, loads the configuration file and starts the HTTP server. The handlers "
    "live in server/handlers.py and each one validates its input before calling "
    "into the storage layer. I found no failing tests and no obvious errors in "
    "the code paths you asked about."
)


class FakeClient:
    """Scripted ModelClient. Each entry is a ModelResponse or an exception."""

    def __init__(self, script, limit=128000):
        self.script = list(script)
        self.snapshots = []
        self.limit = limit

    def send(self, messages, tools, reasoning):
        self.snapshots.append(copy.deepcopy(messages))
        item = self.script.pop(0) if self.script else _text(FINAL_ANSWER)
        if isinstance(item, Exception):
            raise item
        return item

    def context_limit(self):
        return self.limit


class FakeExecutor:
    def __init__(self, files=None, outputs=None):
        self.files = dict(files or {})
        self.outputs = dict(outputs or {})

    def run(self, command):
        if command not in self.outputs:
            raise ShellCommandError(f"command failed with exit code 127: {command}")
        return self.outputs[command]

    def read(self, path):
        if path not in self.files:
            raise FileNotFoundError(f"file does not exist: {path}")
        return self.files[path]

    def write(self, path, content):
        self.files[path] = content
        return f"Wrote {len(content)} bytes to {path}"

    def replace(self, path, old_text, new_text):
        self.files[path] = self.files[path].replace(old_text, new_text, 1)
        return f"Edited {path}"

    def exists(self, path):
        return path in self.files


def _text(content, finish_reason="stop"):
    return ModelResponse(
        choices=[Choice(content=content, finish_reason=finish_reason)],
        usage=Usage(prompt_tokens=100, completion_tokens=20, estimated_cost=0.001),
    )


def _tools(*calls, content=""):
    tool_calls = [
        ToolCall(id=f"call_{i}", name=name, arguments=json.dumps(args))
        for i, (name, args) in enumerate(calls, start=1)
    ]
    return ModelResponse(
        choices=[Choice(content=content, tool_calls=tool_calls, finish_reason="tool_calls")]
    )


def _run(client, *, executor=None, max_iterations=10, optimizer=None, budget=None, **kwargs):
    dispatcher = ToolDispatcher(
        executor or FakeExecutor(outputs={"ls": "main.py\nserver\n"}),
        TodoState(),
        task_actions=[],
        shell_history=[],
    )
    conv = Conversation()
    answer = run_agent_loop(
        "What does this project do?",
        system_prompt="You are a coding agent.",
        client=client,
        dispatcher=dispatcher,
        optimizer=optimizer or ConversationOptimizer(),
        budget=budget or ContextBudget(client),
        max_iterations=max_iterations,
        conversation=conv,
        **kwargs,
    )
    return answer, conv


def _user_contents(messages):
    return [m["content"] for m in messages if m["role"] == "user"]


# ---------------------------------------------------------------------------
# Basic flows
# ---------------------------------------------------------------------------


def test_direct_answer_single_iteration():
    client = FakeClient([_text(FINAL_ANSWER)])
    answer, conv = _run(client)

    assert answer == FINAL_ANSWER
    assert conv.iteration == 1
    assert len(client.snapshots) == 1
    assert client.snapshots[0] == [
        {"role": "system", "content": "You are a coding agent."},
        {"role": "user", "content": "What does this project do?"},
    ]
    assert conv.messages[-1] == {"role": "assistant", "content": FINAL_ANSWER}


def test_tool_call_then_answer():
    client = FakeClient([_tools(("shell_command", {"command": "ls"})), _text(FINAL_ANSWER)])
    answer, conv = _run(client)

    assert answer == FINAL_ANSWER
    assert conv.iteration == 2
    second = client.snapshots[1]
    assert second[2] == {"role": "assistant", "content": "(tool calls: shell_command)"}
    assert second[3] == {
        "role": "user",
        "content": "Tool call result for shell_command: ls\nmain.py\nserver\n",
    }


def test_every_tool_call_gets_a_result_in_order():
    executor = FakeExecutor(files={"a.py": "A", "b.py": "B"})
    client = FakeClient(
        [
            _tools(("read_file", {"file_path": "a.py"}), ("read_file", {"file_path": "b.py"})),
            _text(FINAL_ANSWER),
        ]
    )
    _, conv = _run(client, executor=executor)
    results = [c for c in _user_contents(conv.messages) if c.startswith("Tool call result")]
    assert results == [
        "Tool call result for read_file: a.py\nA",
        "Tool call result for read_file: b.py\nB",
    ]


def test_reasoning_kept_on_assistant_message():
    response = _text(FINAL_ANSWER)
    response.choices[0].reasoning_content = "let me think"
    _, conv = _run(FakeClient([response]))
    assert conv.messages[-1]["reasoning_content"] == "let me think"


def test_usage_accumulated():
    usage = UsageTotals()
    _run(FakeClient([_tools(("shell_command", {"command": "ls"})), _text(FINAL_ANSWER)]), usage=usage)
    assert usage.calls == 2
    assert usage.prompt_tokens == 100


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------


def test_iteration_limit():
    client = FakeClient([_tools(("shell_command", {"command": "ls"}))] * 10)
    with pytest.raises(IterationLimitExceeded) as exc_info:
        _run(client, max_iterations=3)
    assert exc_info.value.max_iterations == 3
    assert len(client.snapshots) == 3


def test_api_error_propagates():
    client = FakeClient([APIRequestError("LLM call failed: boom")])
    with pytest.raises(APIRequestError, match="boom"):
        _run(client)


def test_unexpected_client_error_wrapped():
    client = FakeClient([RuntimeError("socket closed")])
    with pytest.raises(APIRequestError, match="socket closed"):
        _run(client)


def test_api_error_after_tools_keeps_history():
    client = FakeClient(
        [_tools(("shell_command", {"command": "ls"})), APIRequestError("down")]
    )
    conv = Conversation()
    dispatcher = ToolDispatcher(
        FakeExecutor(outputs={"ls": "x"}), TodoState(), task_actions=[], shell_history=[]
    )
    with pytest.raises(APIRequestError):
        run_agent_loop(
            "q",
            system_prompt="s",
            client=client,
            dispatcher=dispatcher,
            optimizer=ConversationOptimizer(),
            budget=ContextBudget(client),
            max_iterations=5,
            conversation=conv,
        )
    assert conv.iteration == 2
    assert len(conv.messages) == 4


def test_tool_failure_is_fed_back():
    client = FakeClient([_tools(("read_file", {"file_path": "gone.py"})), _text(FINAL_ANSWER)])
    answer, conv = _run(client)
    assert answer == FINAL_ANSWER
    assert "Tool call result for read_file: error: file does not exist: gone.py" in (
        _user_contents(conv.messages)
    )


def test_unknown_tool_is_fed_back():
    client = FakeClient([_tools(("bash", {"command": "ls"})), _text(FINAL_ANSWER)])
    _, conv = _run(client)
    result = conv.messages[3]["content"]
    assert result.startswith("Tool call result for bash: error: unknown tool 'bash'")
    assert "shell_command" in result


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def test_malformed_tool_text_gets_reminder():
    client = FakeClient(
        [_text('<tool_call>{"name": "read_file"}</tool_call>'), _text(FINAL_ANSWER)]
    )
    answer, conv = _run(client)
    assert answer == FINAL_ANSWER
    assert conv.iteration == 2
    assert TOOL_FORMAT_REMINDER in _user_contents(conv.messages)


def test_reminders_are_capped():
    leaked = '<tool_call>{"name": "read_file"}</tool_call>'
    client = FakeClient([_text(leaked)] * 6)
    answer, conv = _run(client)
    assert answer == leaked
    assert conv.iteration == agent.MAX_NUDGES + 1
    assert _user_contents(conv.messages).count(TOOL_FORMAT_REMINDER) == agent.MAX_NUDGES


def test_short_answer_gets_encouragement():
    client = FakeClient([_text("Okay."), _text(FINAL_ANSWER)])
    answer, conv = _run(client)
    assert answer == FINAL_ANSWER
    assert ENCOURAGEMENTS[CompletionCheck.TOO_SHORT] in _user_contents(conv.messages)


def test_refusal_gets_encouragement():
    client = FakeClient([_text("I cannot access the repository."), _text(FINAL_ANSWER)])
    _, conv = _run(client)
    assert ENCOURAGEMENTS[CompletionCheck.REFUSAL] in _user_contents(conv.messages)


def test_empty_answer_gets_encouragement():
    client = FakeClient([_text(""), _text(FINAL_ANSWER)])
    answer, conv = _run(client)
    assert answer == FINAL_ANSWER
    assert ENCOURAGEMENTS[CompletionCheck.EMPTY] in _user_contents(conv.messages)


def test_salvaged_text_tool_call_is_executed():
    client = FakeClient([_text('{"cmd": ["bash", "-lc", "ls"]}'), _text(FINAL_ANSWER)])
    report = ReportCollector()
    _, conv = _run(client, report=report)
    assert "Tool call result for shell_command: ls\nmain.py\nserver\n" in (
        _user_contents(conv.messages)
    )
    assert report.recoveries == {"salvage": 1}


def test_truncated_answer_gets_continuation():
    client = FakeClient([_text("The project", finish_reason="length"), _text(FINAL_ANSWER)])
    answer, conv = _run(client)
    assert answer == FINAL_ANSWER
    assert conv.messages[2] == {"role": "assistant", "content": "The project"}
    assert conv.messages[3] == {"role": "user", "content": CONTINUATION}


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------


def _guardrail_messages(messages):
    return [
        c
        for c in _user_contents(messages)
        if c.startswith("IMPORTANT:") or c.startswith("STOP:")
    ]


def test_guardrail_escalates_on_repeated_errors():
    bad = _tools(("read_file", {"file_path": "missing.txt"}))
    client = FakeClient([bad, bad, bad, _text(FINAL_ANSWER)])
    report = ReportCollector()
    _, conv = _run(client, report=report)

    interventions = _guardrail_messages(conv.messages)
    assert len(interventions) == 2
    assert interventions[0].startswith("IMPORTANT: You have called `read_file` 2 times")
    assert interventions[1].startswith("STOP: You have failed to use `read_file`")
    assert report.guardrail_interventions == 2


def test_guardrail_resets_after_success():
    executor = FakeExecutor(files={"ok.txt": "fine"})
    client = FakeClient(
        [
            _tools(("read_file", {"file_path": "missing.txt"})),
            _tools(("read_file", {"file_path": "ok.txt"})),
            _tools(("read_file", {"file_path": "missing.txt"})),
            _text(FINAL_ANSWER),
        ]
    )
    _, conv = _run(client, executor=executor)
    assert _guardrail_messages(conv.messages) == []


def test_different_errors_do_not_trigger_guardrail():
    client = FakeClient(
        [
            _tools(("read_file", {"file_path": "a.txt"})),
            _tools(("read_file", {"file_path": "b.txt"})),
            _text(FINAL_ANSWER),
        ]
    )
    _, conv = _run(client)
    assert _guardrail_messages(conv.messages) == []


# ---------------------------------------------------------------------------
# Optimization and budget
# ---------------------------------------------------------------------------


def test_redundant_read_is_stubbed_before_next_call():
    body = "print('hello')\n" * 50
    executor = FakeExecutor(files={"app.py": body})
    read = _tools(("read_file", {"file_path": "app.py"}))
    client = FakeClient([read, read, _text(FINAL_ANSWER)])
    _, conv = _run(client, executor=executor)

    third = client.snapshots[2]
    results = [m["content"] for m in third if m["content"].startswith("Tool call result")]
    assert results[0] == f"Tool call result for read_file: app.py\n{body}"
    assert "[OPTIMIZED] Previously read Python file" in results[1]


def test_no_optimize_keeps_duplicates():
    body = "print('hello')\n" * 50
    executor = FakeExecutor(files={"app.py": body})
    read = _tools(("read_file", {"file_path": "app.py"}))
    client = FakeClient([read, read, _text(FINAL_ANSWER)])
    _run(client, executor=executor, optimizer=ConversationOptimizer(enabled=False))
    assert "[OPTIMIZED]" not in json.dumps(client.snapshots[2])


class CountingOptimizer(ConversationOptimizer):
    def __init__(self):
        super().__init__()
        self.aggressive_calls = 0

    def aggressive_optimize(self, messages):
        self.aggressive_calls += 1
        return super().aggressive_optimize(messages)


def test_aggressive_compaction_runs_once_per_crossing():
    files = {f"f{i}.py": str(i) * 3000 for i in range(6)}
    executor = FakeExecutor(files=files)
    script = [_tools(("read_file", {"file_path": p})) for p in files]
    client = FakeClient(script + [_text(FINAL_ANSWER)])
    optimizer = CountingOptimizer()
    report = ReportCollector()

    _run(
        client,
        executor=executor,
        optimizer=optimizer,
        budget=ContextBudget(client, limit=2000),
        report=report,
    )

    assert optimizer.aggressive_calls == 1
    assert report.aggressive_optimizations == 1


def test_aggressive_compaction_shrinks_old_results():
    files = {f"f{i}.py": str(i) * 3000 for i in range(6)}
    executor = FakeExecutor(files=files)
    script = [_tools(("read_file", {"file_path": p})) for p in files]
    client = FakeClient(script + [_text(FINAL_ANSWER)])

    _run(client, executor=executor, budget=ContextBudget(client, limit=5000))

    compacted = [
        s for s in client.snapshots if any(COMPACTED_MARKER in m["content"] for m in s)
    ]
    assert compacted
    assert compacted[0][0]["content"] == "You are a coding agent."
    assert compacted[0][1]["content"] == "What does this project do?"


def test_records_cleared_between_queries():
    optimizer = ConversationOptimizer()
    optimizer.file_reads["stale.py"] = object()
    _run(FakeClient([_text(FINAL_ANSWER)]), optimizer=optimizer)
    assert "stale.py" not in optimizer.file_reads
