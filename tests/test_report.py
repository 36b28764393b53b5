"""Tests for the JSON report feature (--report)."""

import json
import sys

import pytest

from coder import agent
from coder.llm import Choice, ModelResponse
from coder.report import ReportCollector


def _build(rc, **overrides):
    kwargs = dict(
        task="hello",
        model="m",
        provider="ollama",
        settings={},
        outcome="success",
        answer="done",
        exit_code=0,
        iterations=0,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


# ---------------------------------------------------------------------------
# ReportCollector unit tests
# ---------------------------------------------------------------------------


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["iterations"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert "usage" not in r["stats"]
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "tool_calls", cost=0.01)
        rc.record_llm_call(2, 1.3, 1500, "stop", cost=0.02)
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.total_cost == pytest.approx(0.03)
        assert rc.events[0]["finish_reason"] == "tool_calls"
        assert rc.events[1]["prompt_tokens_est"] == 1500

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", True, 0.01, 500)
        rc.record_tool_call(1, "read_file", False, 0.02, 30, error="file does not exist: b")
        rc.record_tool_call(2, "edit_file", True, 0.05, 200)

        assert rc.tool_stats["read_file"] == {"succeeded": 1, "failed": 1}
        assert rc.tool_stats["edit_file"] == {"succeeded": 1, "failed": 0}
        assert rc.total_tool_time == pytest.approx(0.08)
        assert rc.events[1]["error"] == "file does not exist: b"
        assert "error" not in rc.events[0]

        r = _build(rc, iterations=2)
        assert r["stats"]["tool_calls_total"] == 3
        assert r["stats"]["tool_calls_succeeded"] == 2
        assert r["stats"]["tool_calls_failed"] == 1

    def test_optimization_tracking(self):
        rc = ReportCollector()
        rc.record_optimization(3, "standard", 9000, 7000)
        rc.record_optimization(5, "aggressive", 30000, 12000)
        assert rc.optimizations == 1
        assert rc.aggressive_optimizations == 1
        assert rc.events[1]["strategy"] == "aggressive"
        assert rc.events[1]["tokens_after"] == 12000

    def test_guardrail_tracking(self):
        rc = ReportCollector()
        rc.record_guardrail(3, "edit_file", "nudge")
        rc.record_guardrail(4, "edit_file", "stop")
        assert rc.guardrail_interventions == 2
        assert rc.events[0]["level"] == "nudge"
        assert rc.events[1]["level"] == "stop"

    def test_recovery_tracking(self):
        rc = ReportCollector()
        rc.record_recovery(1, "reminder")
        rc.record_recovery(2, "reminder")
        rc.record_recovery(3, "continuation")
        r = _build(rc)
        assert r["stats"]["recoveries"] == {"reminder": 2, "continuation": 1}

    def test_error_message_and_usage(self):
        r = _build(
            ReportCollector(),
            outcome="error",
            answer=None,
            exit_code=1,
            error_message="LLM call failed: down",
            usage={"total_tokens": 10},
        )
        assert r["result"]["error_message"] == "LLM call failed: down"
        assert r["stats"]["usage"] == {"total_tokens": 10}

    def test_json_serializable(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.5, 100, "stop")
        json.dumps(_build(rc))


# ---------------------------------------------------------------------------
# CLI integration
# ---------------------------------------------------------------------------


LONG_ANSWER = (
    "The code in main.py reads the configuration file, builds the command "
    "registry and dispatches to the matching handler. Errors are reported "
    "through a single function that prints the message and exits with status "
    "one. Tests cover every command except the hidden debug one, which has no "
    "test file at all and could use one."
)


class FakeClient:
    model = "fake-model"
    model_string = "ollama_chat/fake-model"

    def __init__(self, responses):
        self.responses = list(responses)

    def send(self, messages, tools, reasoning):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def context_limit(self):
        return 32000


def _run_main(monkeypatch, tmp_path, client, *extra):
    from coder import session as session_mod

    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setattr(session_mod, "LiteLLMClient", lambda *a, **kw: client)
    monkeypatch.setattr(
        sys,
        "argv",
        ["coder", "--base-dir", str(tmp_path), "--provider", "ollama", "-q", *extra],
    )
    with pytest.raises(SystemExit) as exc_info:
        agent.main()
    return exc_info.value.code


class TestReportCLI:
    def test_report_written_on_success(self, tmp_path, monkeypatch, capsys):
        report_path = tmp_path / "report.json"
        client = FakeClient([ModelResponse(choices=[Choice(content=LONG_ANSWER)])])
        code = _run_main(
            monkeypatch, tmp_path, client, "--report", str(report_path), "explain"
        )

        assert code == 0
        assert capsys.readouterr().out.strip() == LONG_ANSWER
        report = json.loads(report_path.read_text())
        assert report["task"] == "explain"
        assert report["result"]["outcome"] == "success"
        assert report["stats"]["llm_calls"] == 1

    def test_report_written_on_api_error(self, tmp_path, monkeypatch):
        from coder.report import APIRequestError

        report_path = tmp_path / "report.json"
        client = FakeClient([APIRequestError("LLM call failed: down")])
        code = _run_main(
            monkeypatch, tmp_path, client, "--report", str(report_path), "explain"
        )

        assert code == 1
        report = json.loads(report_path.read_text())
        assert report["result"]["outcome"] == "error"
        assert report["result"]["error_message"] == "LLM call failed: down"

    def test_exhausted_exit_code(self, tmp_path, monkeypatch):
        from coder.tools import ToolCall

        tool_response = ModelResponse(
            choices=[
                Choice(
                    tool_calls=[
                        ToolCall(id="c1", name="list_todos", arguments="{}")
                    ],
                    finish_reason="tool_calls",
                )
            ]
        )
        client = FakeClient([tool_response] * 2)
        code = _run_main(
            monkeypatch, tmp_path, client, "--max-iterations", "2", "--no-state", "loop"
        )
        assert code == agent.EXIT_EXHAUSTED
