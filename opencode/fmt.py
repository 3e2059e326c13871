"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; answers and streamed assistant text go to stdout
so they can be piped.
"""

from rich.console import Console
from rich.prompt import Confirm
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)
_out = Console()


def init(*, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    _console = Console(stderr=True, no_color=no_color)
    _out = Console(no_color=no_color)


# -- Loop structure ----------------------------------------------------------


def iteration_header(n: int, max_n: int, token_count: int) -> None:
    title = f"Iteration {n}/{max_n} ({token_count} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={finish_reason}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for API response..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, state: str) -> None:
    if state == "completed":
        _console.print(
            Text(
                f"  \u2713 Task completed after {iterations} iterations",
                style="bold green",
            )
        )
    elif state == "stalled":
        _console.print(
            Text(f"  Task stalled after {iterations} iterations", style="bold yellow")
        )
    else:
        _console.print(
            Text(f"  Task failed after {iterations} iterations", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_table(definitions) -> None:
    table = Table(title="Registered tools", show_lines=False)
    table.add_column("Name", style="bold magenta")
    table.add_column("Description")
    for d in definitions:
        table.add_row(d.name, d.description)
    _out.print(table)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def result(text: str) -> None:
    _out.print(Text(text))


def stream_start() -> None:
    _console.print(Text("Assistant: ", style="bold blue"), end="")


def stream_text(fragment: str) -> None:
    _out.print(Text(fragment), end="")
    _out.file.flush()


def stream_end() -> None:
    _out.print()


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int, max_tokens: int) -> None:
    _console.print(Text(f"  {label}: {tokens}/{max_tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question on the terminal. Defaults to no."""
    return Confirm.ask(Text(prompt, style="yellow"), console=_console, default=False)


# -- REPL --------------------------------------------------------------------


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )


def repl_help() -> None:
    for line in (
        "Available commands:",
        "  /help        Show this help message.",
        "  /clear       Clear the conversation history.",
        "  /add <file>  Add a file's contents as a context snippet.",
        "  /exit        Quit the interactive session.",
    ):
        _console.print(Text(line, style="dim"))
