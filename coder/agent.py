import argparse
import contextlib
import json
import signal
import sys
import time
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path

from . import fmt
from .budget import ContextBudget
from .config import _UNSET, apply_config_to_args, config_to_session_kwargs, load_config
from .llm import PROVIDERS, ModelClient, Choice, UsageTotals
from .optimizer import ConversationOptimizer
from .recovery import (
    CONTINUATION,
    TOOL_FORMAT_REMINDER,
    TextToolCallCheck,
    check_completion,
    check_tool_call_format,
    encouragement,
    extract_text_tool_calls,
)
from .report import (
    AgentError,
    APIRequestError,
    IterationLimitExceeded,
    ReportCollector,
)
from .tools import TOOLS, ToolCall, ToolDispatcher, format_tool_result

# Recovery nudges of one kind per query before the text is accepted as final.
MAX_NUDGES = 3

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_INTERRUPTED = 130


@dataclass
class Conversation:
    """Message log and counters for the query currently being processed."""

    messages: list[dict] = field(default_factory=list)
    iteration: int = 0
    nudges: dict[str, int] = field(default_factory=dict)


def seed_messages(system_prompt: str, query: str) -> list[dict]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": query},
    ]


def _canonical_error(error: str) -> str:
    """Extract a stable error fingerprint for repeat detection."""
    return error.split("\n", 1)[0]


def _assistant_message(choice: Choice, tool_calls: list[ToolCall]) -> dict:
    content = choice.content
    if not content and tool_calls:
        # Some providers reject empty assistant content.
        content = "(tool calls: " + ", ".join(tc.name for tc in tool_calls) + ")"
    msg = {"role": "assistant", "content": content or ""}
    if choice.reasoning_content:
        msg["reasoning_content"] = choice.reasoning_content
    return msg


def _take_nudge(conversation: Conversation, kind: str) -> bool:
    used = conversation.nudges.get(kind, 0)
    if used >= MAX_NUDGES:
        return False
    conversation.nudges[kind] = used + 1
    return True


def _guardrail_message(tool_name: str, count: int, error: str) -> tuple[str, str]:
    if count >= 3:
        return "stop", (
            f"STOP: You have failed to use `{tool_name}` correctly {count} times in a row "
            f"with the same error. Do NOT call `{tool_name}` again with the same "
            "arguments. Either fix the arguments or use a completely different "
            "approach to accomplish your task."
        )
    return "nudge", (
        f"IMPORTANT: You have called `{tool_name}` {count} times with the same error. "
        f"The error is: {error}\n"
        "Please carefully re-read the error message and fix your tool call. "
        "If you cannot use this tool correctly, use a different approach."
    )


def _prepare(
    messages: list[dict],
    *,
    optimizer: ConversationOptimizer,
    budget: ContextBudget,
    iteration: int,
    verbose: bool,
    report: ReportCollector | None,
) -> int:
    """Optimize the conversation in place and return its token estimate."""
    before = budget.estimate(messages)
    optimized = optimizer.optimize(messages)
    tokens = budget.estimate(optimized)
    if tokens < before:
        if report:
            report.record_optimization(iteration, "standard", before, tokens)
        if verbose:
            fmt.optimization("Removed redundant tool output", before, tokens)

    if budget.should_compact(tokens):
        if verbose:
            fmt.warning(
                f"context at ~{tokens} tokens, above 80% of the "
                f"{budget.ceiling()} token limit; compacting older tool output"
            )
        compacted = optimizer.aggressive_optimize(optimized)
        after = budget.estimate(compacted)
        if report:
            report.record_optimization(iteration, "aggressive", tokens, after)
        if verbose:
            fmt.optimization("Aggressive compaction", tokens, after)
        optimized, tokens = compacted, after

    messages[:] = optimized
    return tokens


def _dispatch_all(
    tool_calls: list[ToolCall],
    messages: list[dict],
    *,
    dispatcher: ToolDispatcher,
    consecutive_errors: dict[str, tuple[str, int]],
    iteration: int,
    verbose: bool,
    report: ReportCollector | None,
) -> None:
    """Run tool calls in order, appending one result message per call."""
    interventions: list[str] = []
    for tool_call in tool_calls:
        t0 = time.monotonic()
        result, error = dispatcher.execute(tool_call)
        elapsed = time.monotonic() - t0
        messages.append(
            {"role": "user", "content": format_tool_result(tool_call.name, result)}
        )

        if report:
            report.record_tool_call(
                iteration,
                tool_call.name,
                error is None,
                elapsed,
                len(result),
                error=str(error) if error is not None else None,
            )

        if error is None:
            consecutive_errors.pop(tool_call.name, None)
            continue

        canonical = _canonical_error(result)
        prev_error, prev_count = consecutive_errors.get(tool_call.name, ("", 0))
        count = prev_count + 1 if canonical == prev_error else 1
        consecutive_errors[tool_call.name] = (canonical, count)
        if count >= 2:
            level, text = _guardrail_message(tool_call.name, count, canonical)
            interventions.append(text)
            if report:
                report.record_guardrail(iteration, tool_call.name, level)
            if verbose:
                fmt.guardrail(tool_call.name, count, canonical)

    if interventions:
        messages.append({"role": "user", "content": "\n\n".join(interventions)})


def run_agent_loop(
    query: str,
    *,
    system_prompt: str,
    client: ModelClient,
    dispatcher: ToolDispatcher,
    optimizer: ConversationOptimizer,
    budget: ContextBudget,
    max_iterations: int,
    reasoning: str = "high",
    usage: UsageTotals | None = None,
    conversation: Conversation | None = None,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> str:
    """Drive the model until it produces a final answer.

    Seeds ``conversation`` with [system, user(query)] and keeps its message
    log current, so callers can inspect it even after a failure. Returns the
    final text. Raises APIRequestError when the model call fails and
    IterationLimitExceeded when max_iterations is used up. Everything else
    (tool failures, malformed or premature answers) is fed back to the model.
    """
    conv = conversation if conversation is not None else Conversation()
    conv.messages[:] = seed_messages(system_prompt, query)
    conv.iteration = 0
    conv.nudges.clear()
    messages = conv.messages

    optimizer.clear_records()
    budget.reset()
    usage = usage if usage is not None else UsageTotals()
    consecutive_errors: dict[str, tuple[str, int]] = {}

    while conv.iteration < max_iterations:
        conv.iteration += 1
        iteration = conv.iteration
        dispatcher.iteration = iteration

        tokens = _prepare(
            messages,
            optimizer=optimizer,
            budget=budget,
            iteration=iteration,
            verbose=verbose,
            report=report,
        )
        if verbose:
            fmt.iteration_header(iteration, max_iterations, budget.usage_label())

        spinner = fmt.llm_spinner() if verbose else contextlib.nullcontext()
        t0 = time.monotonic()
        try:
            with spinner:
                response = client.send(messages, TOOLS, reasoning)
        except APIRequestError:
            if report:
                report.record_llm_call(iteration, time.monotonic() - t0, tokens, "error")
            raise
        except Exception as e:
            if report:
                report.record_llm_call(iteration, time.monotonic() - t0, tokens, "error")
            raise APIRequestError(f"LLM call failed: {e}") from e
        elapsed = time.monotonic() - t0

        if not response.choices:
            raise APIRequestError("no response choices returned")
        choice = response.choices[0]

        usage.add(response.usage)
        if verbose:
            fmt.llm_timing(elapsed, choice.finish_reason)
            fmt.usage_line(
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
                response.usage.cached_tokens,
                response.usage.estimated_cost,
                usage.total_cost,
            )
        if report:
            report.record_llm_call(
                iteration,
                elapsed,
                tokens,
                choice.finish_reason,
                cost=response.usage.estimated_cost,
            )

        tool_calls = choice.tool_calls
        if not tool_calls:
            tool_calls = extract_text_tool_calls(
                choice.content, choice.reasoning_content
            )
            if tool_calls:
                if report:
                    report.record_recovery(iteration, "salvage")
                if verbose:
                    names = ", ".join(tc.name for tc in tool_calls)
                    fmt.recovery("salvage", f"recovered tool calls from text: {names}")

        messages.append(_assistant_message(choice, tool_calls))

        if tool_calls:
            if verbose and choice.content:
                fmt.assistant_text(choice.content)
            _dispatch_all(
                tool_calls,
                messages,
                dispatcher=dispatcher,
                consecutive_errors=consecutive_errors,
                iteration=iteration,
                verbose=verbose,
                report=report,
            )
            continue

        text = choice.content
        if choice.finish_reason != "stop":
            if report:
                report.record_recovery(iteration, "continuation")
            if verbose:
                if text:
                    fmt.assistant_text(text)
                fmt.recovery(
                    "continuation",
                    f"finish_reason={choice.finish_reason}, asking the model to continue",
                )
            messages.append({"role": "user", "content": CONTINUATION})
            continue

        if check_tool_call_format(text) is TextToolCallCheck.MALFORMED:
            if _take_nudge(conv, "reminder"):
                if report:
                    report.record_recovery(iteration, "reminder")
                if verbose:
                    fmt.recovery("reminder", "tool-call syntax found in plain text")
                messages.append({"role": "user", "content": TOOL_FORMAT_REMINDER})
                continue
        else:
            check = check_completion(text)
            if check.incomplete and _take_nudge(conv, "encouragement"):
                if report:
                    report.record_recovery(iteration, "encouragement")
                if verbose:
                    fmt.recovery("encouragement", f"answer looks incomplete ({check.value})")
                messages.append({"role": "user", "content": encouragement(check)})
                continue

        if verbose:
            fmt.completion(iteration, "ok")
        return text

    if verbose:
        fmt.completion(conv.iteration, "max_iterations")
    raise IterationLimitExceeded(max_iterations)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to a sentinel so
    apply_config_to_args() can tell whether the CLI set them.
    """
    parser = argparse.ArgumentParser(
        prog="coder",
        usage="%(prog)s [options] [question]",
        description=(
            "An autonomous coding agent: answers a question or runs a task in the "
            "current project using shell, file and todo tools."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="The question or task. Read from stdin when piped; interactive mode otherwise.",
    )
    parser.add_argument(
        "--provider",
        choices=sorted(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: deepinfra if DEEPINFRA_API_KEY is set, else ollama).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default depends on the provider).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Provider base URL (default: http://localhost:11434 for ollama).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations per query (default: 40).",
    )
    parser.add_argument(
        "--context-limit",
        type=int,
        default=_UNSET,
        help="Override the model's context window size in tokens.",
    )
    parser.add_argument(
        "--reasoning",
        choices=["low", "medium", "high"],
        default=_UNSET,
        help="Reasoning effort requested from the model (default: high).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Model HTTP request timeout in seconds.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Project directory for tools and state (default: current directory).",
    )
    parser.add_argument(
        "--state-file",
        type=str,
        default=_UNSET,
        help="Session state file (default: <base-dir>/.coder/session.json).",
    )
    parser.add_argument(
        "--no-state",
        action="store_true",
        default=_UNSET,
        help="Neither load nor save session state.",
    )
    parser.add_argument(
        "--no-optimize",
        action="store_true",
        default=_UNSET,
        help="Disable removal of redundant tool output from the conversation.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE (single question mode only).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _version() -> str:
    try:
        return metadata.version("coder-agent")
    except metadata.PackageNotFoundError:
        return "unknown"


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def _session_kwargs(args) -> dict:
    config = {
        "provider": args.provider,
        "model": args.model,
        "api_key": args.api_key,
        "base_url": args.base_url,
        "max_iterations": args.max_iterations,
        "context_limit": args.context_limit,
        "reasoning": args.reasoning,
        "timeout": args.timeout,
        "state_file": args.state_file,
        "no_state": args.no_state,
        "no_optimize": args.no_optimize,
        "quiet": args.quiet,
    }
    kwargs = config_to_session_kwargs({k: v for k, v in config.items() if v is not None})
    kwargs["base_dir"] = args.base_dir
    return kwargs


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(EXIT_OK)

    if args.init_config:
        from .config import generate_config

        print(generate_config())
        sys.exit(EXIT_OK)

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    question = args.question
    if question is None and not sys.stdin.isatty():
        question = sys.stdin.read().strip() or None
    if args.report and question is None:
        parser.error("--report requires a question (interactive mode has no report)")

    signal.signal(signal.SIGTERM, _raise_interrupt)

    from .session import Session

    session = None
    try:
        session = Session(**_session_kwargs(args))
        if question is None:
            repl_loop(session)
            exit_code = EXIT_OK
        else:
            exit_code = _run_once(session, question, args)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        fmt.warning("interrupted, session state not saved")
        if session is not None:
            fmt.session_summary(session.summary_lines())
        sys.exit(EXIT_INTERRUPTED)
    except AgentError as e:
        fmt.error(str(e))
        if session is not None and args.report:
            _write_report(
                args,
                session.finalize_report(
                    question or "", "error", None, EXIT_ERROR, error_message=str(e)
                ),
            )
        sys.exit(EXIT_ERROR)
    sys.exit(exit_code)


def _write_report(args, report: dict | None) -> None:
    if not report:
        return
    try:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def _run_once(session, question: str, args) -> int:
    result = session.run(question, report=bool(args.report))
    _write_report(args, result.report)
    if result.exhausted:
        fmt.error(result.error or "maximum iterations reached without completion")
        if args.verbose:
            fmt.session_summary(session.summary_lines())
        return EXIT_EXHAUSTED
    if result.answer:
        print(result.answer)
    if args.verbose:
        fmt.session_summary(session.summary_lines())
    return EXIT_OK


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start over: drop todos, history and carried summary\n"
        "  /todos             Show the current todo list\n"
        "  /summary           Show the summary carried into the next query\n"
        "  /exit, /quit       Exit the REPL"
    )


def repl_loop(session) -> None:
    """Interactive read-eval-print loop over one Session."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(session.base_dir) / ".coder" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "coder> ")])

    if session.verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except EOFError:
            print(file=sys.stderr)
            break
        except KeyboardInterrupt:
            # ^C at the prompt only clears the line.
            continue

        line = line.strip()
        if not line:
            continue

        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            session.reset()
            fmt.info("session cleared")
            continue
        if cmd == "/todos":
            fmt.info(session.todo.list_todos())
            continue
        if cmd == "/summary":
            fmt.info(session.carried_summary or "(no summary yet)")
            continue

        try:
            result = session.run(line)
        except AgentError as e:
            fmt.error(str(e))
            continue
        if result.answer:
            print(result.answer)
        if result.exhausted:
            fmt.warning(result.error or "maximum iterations reached for this question")

    if session.verbose:
        fmt.session_summary(session.summary_lines())


if __name__ == "__main__":
    main()
