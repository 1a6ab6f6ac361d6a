"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.table import Table
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


def console() -> Console:
    return _console


# -- Model activity --------------------------------------------------------------


def thinking_spinner(label: str = "Thinking"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def retrying(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="yellow"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirm_header(name: str, level: str, detail: str) -> None:
    line = Text()
    line.append("  ? ", style="bold yellow")
    line.append(f"{name}", style="bold yellow")
    line.append(f" [{level}]", style="yellow")
    _console.print(line)
    for row in detail.splitlines():
        _console.print(Text(f"    {row}", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def system(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="cyan"))


def context_stats(prompt_tokens: int, total_tokens: int, window: int) -> None:
    pct = (100 * prompt_tokens / window) if window else 0.0
    _console.print(
        Text(
            f"  context: ~{prompt_tokens}/{window} tokens ({pct:.0f}%), "
            f"session total {total_tokens}",
            style="dim",
        )
    )


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


def session_table(infos) -> None:
    if not infos:
        info("no stored sessions")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("id")
    table.add_column("updated")
    table.add_column("messages", justify="right")
    table.add_column("tokens", justify="right")
    for s in infos:
        table.add_row(
            escape(s.id),
            s.updated_at.strftime("%Y-%m-%d %H:%M"),
            str(s.message_count),
            str(s.tokens),
        )
    _console.print(table)


def repl_banner(session_id: str) -> None:
    _console.print(
        Text(
            f"Interactive mode (session {session_id}). Type /help for commands, "
            "/exit or Ctrl-D to quit.",
            style="dim",
        )
    )
