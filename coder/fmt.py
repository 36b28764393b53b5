"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iteration structure -----------------------------------------------------


def iteration_header(n: int, max_n: int, budget_label: str) -> None:
    title = f"Iteration {n}/{max_n} ({budget_label} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def usage_line(
    prompt: int, completion: int, cached: int, cost: float, total_cost: float
) -> None:
    line = f"  Tokens: {prompt} prompt + {completion} completion"
    if cached:
        line += f" ({cached} cached)"
    line += f" | Cost: ${cost:.6f} (Total: ${total_cost:.6f})"
    _console.print(Text(line, style="dim"), soft_wrap=True)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, exit={exit_code}",
                style="bold red",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_progress(iteration: int, budget_label: str, action: str, target: str) -> None:
    """Single-line progress log: ``[iteration:(used/limit)] action target``."""
    line = Text()
    line.append(f"  [{iteration}:({budget_label})] ", style="bold magenta")
    line.append(action, style="magenta")
    if target:
        line.append(f" {target}", style="dim")
    _console.print(line, overflow="ellipsis", no_wrap=True)


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def guardrail(tool_name: str, count: int, error: str) -> None:
    line = Text()
    line.append("  ⚠ Guardrail: ", style="bold yellow")
    line.append(
        f"{tool_name} repeated the same error {count} times. Last error: {error}",
        style="yellow",
    )
    _console.print(line)


# -- Conversation management -------------------------------------------------


def optimization(label: str, tokens_before: int, tokens_after: int) -> None:
    _console.print(
        Text(
            f"  {label}: ~{tokens_before} -> ~{tokens_after} tokens",
            style="dim",
        )
    )


def recovery(kind: str, detail: str) -> None:
    line = Text()
    line.append(f"  [{kind}] ", style="yellow")
    line.append(detail, style="dim italic")
    _console.print(line)


# -- Todo updates ------------------------------------------------------------


def todo_update(action: str, detail: str) -> None:
    prefix_map = {
        "add": "+1",
        "completed": "✓",
        "cancelled": "✗",
        "in_progress": "→",
        "pending": "…",
        "cleared": "cleared",
    }
    tag = prefix_map.get(action, action)
    line = Text()
    line.append(f"  [todo {tag}]", style="yellow")
    line.append(f" {detail}", style="dim italic")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def session_summary(lines: list[str]) -> None:
    _console.print(Rule("Session summary", style="cyan"))
    for line in lines:
        _console.print(Text(f"  {line}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
