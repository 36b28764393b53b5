"""Public library API for coder: Session class and Result dataclass."""

import copy
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .agent import Conversation, run_agent_loop
from .budget import ContextBudget, format_tokens
from .llm import LiteLLMClient, ModelClient, UsageTotals, default_provider
from .optimizer import ConversationOptimizer
from .report import ConfigError, IterationLimitExceeded, ReportCollector
from .state import (
    SessionState,
    TaskAction,
    load_previous_summary,
    save_state,
    summarize_state,
)
from .todo import TodoState
from .tools import LocalTools, ToolDispatcher, ToolExecutor

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
STATE_DIR = ".coder"
STATE_FILE = "session.json"
REASONING_LEVELS = ("low", "medium", "high")


@dataclass
class Result:
    """Result of a Session.run() call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    report: dict | None
    iterations: int = 0
    error: str | None = None


class Session:
    """Programmatic interface to the coder agent loop.

    Owns everything that lives for one session: the todo list, shell
    history, task-action log, optimizer records and usage totals. All of
    it is reset when the session starts and by reset().
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_iterations: int = 40,
        context_limit: int | None = None,
        reasoning: str = "high",
        timeout: float | None = None,
        state_file: str | None = None,
        no_state: bool = False,
        no_optimize: bool = False,
        verbose: bool = False,
        system_prompt: str | None = None,
        client: ModelClient | None = None,
        executor: ToolExecutor | None = None,
    ):
        if max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if reasoning not in REASONING_LEVELS:
            raise ConfigError(
                f"invalid reasoning level {reasoning!r}, expected one of: "
                f"{', '.join(REASONING_LEVELS)}"
            )
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_iterations = max_iterations
        self.context_limit = context_limit
        self.reasoning = reasoning
        self.timeout = timeout
        self.state_file = state_file
        self.no_state = no_state
        self.verbose = verbose
        self.system_prompt = system_prompt

        self.todo = TodoState(verbose=verbose)
        self.shell_history: list[str] = []
        self.task_actions: list[TaskAction] = []
        self.optimizer = ConversationOptimizer(enabled=not no_optimize)
        self.usage = UsageTotals()
        self.conversation = Conversation()
        self.total_iterations = 0
        self.last_query: str | None = None

        self.previous_summary = ""
        self.carried_summary = ""
        self.session_state = SessionState()

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._client = client
        self._executor = executor
        self._budget: ContextBudget | None = None
        self._dispatcher: ToolDispatcher | None = None
        self._base_prompt = ""
        self._collector: ReportCollector | None = None

    @property
    def state_path(self) -> Path:
        if self.state_file:
            return Path(self.state_file)
        return Path(self.base_dir) / STATE_DIR / STATE_FILE

    def _setup(self) -> None:
        """One-time setup: model client, collaborators, base system prompt and
        the previous session's summary."""
        if self._setup_done:
            return

        if self._client is None:
            provider = self.provider or default_provider()
            self._client = LiteLLMClient(
                provider,
                self.model,
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                context_limit=self.context_limit,
                verbose=self.verbose,
            )
            self.provider = provider
            self.model = self._client.model
            if self.verbose:
                fmt.model_info(f"Using {self._client.model_string}")

        if self._executor is None:
            self._executor = LocalTools(self.base_dir)

        self._budget = ContextBudget(self._client, limit=self.context_limit)
        self._dispatcher = ToolDispatcher(
            self._executor,
            self.todo,
            task_actions=self.task_actions,
            shell_history=self.shell_history,
            budget=self._budget,
            verbose=self.verbose,
        )

        if self.system_prompt is not None:
            self._base_prompt = self.system_prompt
        else:
            self._base_prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")

        if not self.no_state:
            self.previous_summary = load_previous_summary(self.state_path)
            self.carried_summary = self.previous_summary
            if self.previous_summary and self.verbose:
                fmt.info(f"Loaded previous session summary from {self.state_path}")

        self._setup_done = True

    def build_system_prompt(self) -> str:
        """Base prompt plus the summary carried over from earlier work."""
        if not self.carried_summary:
            return self._base_prompt
        return f"{self._base_prompt.rstrip()}\n\n{self.carried_summary}"

    def run(self, question: str, *, report: bool = False) -> Result:
        """Run one query. Iteration exhaustion is reported in the Result;
        model-call failures raise APIRequestError."""
        self._setup()
        self.last_query = question
        self._collector = ReportCollector() if report else None

        answer = None
        error = None
        try:
            answer = run_agent_loop(
                question,
                system_prompt=self.build_system_prompt(),
                client=self._client,
                dispatcher=self._dispatcher,
                optimizer=self.optimizer,
                budget=self._budget,
                max_iterations=self.max_iterations,
                reasoning=self.reasoning,
                usage=self.usage,
                conversation=self.conversation,
                verbose=self.verbose,
                report=self._collector,
            )
        except IterationLimitExceeded as e:
            error = str(e)
        finally:
            self.total_iterations += self.conversation.iteration

        exhausted = error is not None
        self._finish_query(question)

        report_dict = None
        if report:
            report_dict = self.finalize_report(
                question,
                "exhausted" if exhausted else "success",
                answer,
                2 if exhausted else 0,
                error_message=error,
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(self.conversation.messages),
            report=report_dict,
            iterations=self.conversation.iteration,
            error=error,
        )

    def _finish_query(self, question: str) -> None:
        """Refresh the carried summary and persist state after a completed query."""
        state = self.session_state
        state.previous_summary = self.previous_summary
        state.task_actions = list(self.task_actions)
        state.completed_tasks = self.todo.completed_titles()
        state.last_query = question
        state.total_tokens = self.usage.total_tokens
        state.total_cost = self.usage.total_cost
        state.iterations = self.total_iterations
        self.carried_summary = state.compact_summary = summarize_state(state)
        if self.no_state:
            return

        state.messages = copy.deepcopy(self.conversation.messages)
        state.saved_at = ""
        try:
            save_state(self.state_path, state)
        except OSError as e:
            fmt.warning(f"failed to save session state to {self.state_path}: {e}")

    def finalize_report(
        self,
        question: str,
        outcome: str,
        answer: str | None,
        exit_code: int,
        *,
        error_message: str | None = None,
    ) -> dict | None:
        """Build the JSON report for the last run(), if one was requested."""
        if self._collector is None:
            return None
        return self._collector.build_report(
            task=question,
            model=self.model or "unknown",
            provider=self.provider or "unknown",
            settings={
                "max_iterations": self.max_iterations,
                "context_limit": self._budget.ceiling() if self._budget else None,
                "reasoning": self.reasoning,
                "optimize": self.optimizer.enabled,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=self.conversation.iteration,
            error_message=error_message,
            usage={
                **self.usage.as_dict(),
                "optimizer": self.optimizer.stats(),
            },
        )

    def summary_lines(self) -> list[str]:
        """Human-readable session summary for the terminal."""
        lines = [
            f"iterations: {self.total_iterations}",
            f"tool actions: {len(self.task_actions)} "
            f"({len(self.shell_history)} shell commands)",
            f"tokens: {format_tokens(self.usage.prompt_tokens)} prompt + "
            f"{format_tokens(self.usage.completion_tokens)} completion "
            f"({format_tokens(self.usage.cached_tokens)} cached)",
            f"total cost: ${self.usage.total_cost:.6f}",
        ]
        todo_line = self.todo.summary_line()
        if todo_line:
            lines.append(todo_line)
        stats = self.optimizer.stats()
        if stats["optimized_messages"] or stats["compacted_messages"]:
            lines.append(
                f"optimizer: {stats['optimized_messages']} stubbed, "
                f"{stats['compacted_messages']} compacted, "
                f"{stats['chars_saved']} chars saved"
            )
        return lines

    def reset(self) -> None:
        """Start over: clear per-session state and the carried summary."""
        self.todo.reset()
        self.shell_history.clear()
        self.task_actions.clear()
        self.optimizer.reset()
        self.usage = UsageTotals()
        self.conversation = Conversation()
        self.total_iterations = 0
        self.previous_summary = ""
        self.carried_summary = ""
        self.session_state = SessionState()
