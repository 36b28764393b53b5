"""Error taxonomy and JSON run reports."""

from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class APIRequestError(AgentError):
    """The model client failed (transport error or non-success response).

    Fatal: the loop aborts the current query immediately.
    """


class IterationLimitExceeded(AgentError):
    """The loop used up max_iterations without producing a final answer."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"maximum iterations ({max_iterations}) reached without completion"
        )


class ToolError(AgentError):
    """Base class for tool failures. Never fatal to the loop: the message
    text is handed back to the model as the tool result."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)


class ToolValidationError(ToolError):
    """Unknown tool name."""

    def __init__(self, tool_name: str, message: str, suggestion: str | None = None):
        self.suggestion = suggestion
        super().__init__(tool_name, message)


class ToolArgumentError(ToolError):
    """Missing or invalid tool parameter."""


class ToolExecutionError(ToolError):
    """The collaborator behind a tool failed."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.optimizations = 0
        self.aggressive_optimizations = 0
        self.guardrail_interventions = 0
        self.recoveries: dict[str, int] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.total_cost = 0.0

    def record_llm_call(
        self,
        iteration: int,
        duration: float,
        token_est: int,
        finish_reason: str,
        *,
        cost: float = 0.0,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self.total_cost += cost
        self.events.append(
            {
                "iteration": iteration,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "prompt_tokens_est": token_est,
                "finish_reason": finish_reason,
                "cost": round(cost, 6),
            }
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_optimization(
        self, iteration: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        if strategy == "aggressive":
            self.aggressive_optimizations += 1
        else:
            self.optimizations += 1
        self.events.append(
            {
                "iteration": iteration,
                "type": "optimization",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_recovery(self, iteration: int, kind: str):
        self.recoveries[kind] = self.recoveries.get(kind, 0) + 1
        self.events.append({"iteration": iteration, "type": "recovery", "kind": kind})

    def record_guardrail(self, iteration: int, tool: str, level: str):
        self.guardrail_interventions += 1
        self.events.append(
            {"iteration": iteration, "type": "guardrail", "tool": tool, "level": level}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
        usage: dict | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": iterations,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "optimizations": self.optimizations,
                "aggressive_optimizations": self.aggressive_optimizations,
                "guardrail_interventions": self.guardrail_interventions,
                "recoveries": dict(self.recoveries),
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "total_cost": round(self.total_cost, 6),
                **({"usage": usage} if usage else {}),
            },
            "timeline": self.events,
        }

