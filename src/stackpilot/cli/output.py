"""Console output helpers shared by the CLI and the orchestration core.

Messages are plain text: anything in square brackets is printed as-is.
``step_start`` is the exception and accepts rich markup, so callers must
escape the values they interpolate into it.
"""

from contextlib import contextmanager
from typing import Iterator

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm

console = Console()
err_console = Console(stderr=True)

_verbose = False


def set_verbose(verbose: bool) -> None:
    global _verbose
    _verbose = verbose


def banner() -> None:
    console.print("[bold cyan]stackpilot[/bold cyan] [dim]stack deployment orchestrator[/dim]\n")


def debug(message: str) -> None:
    """Print a diagnostic line, only in verbose mode."""
    if _verbose:
        console.print(message, markup=False, highlight=False, style="dim")


def info(message: str) -> None:
    console.print(f"  {escape(message)}")


def warn(message: str) -> None:
    err_console.print(f"[yellow]![/yellow] {escape(message)}")


def error(message: str) -> None:
    err_console.print(f"[bold red]✗[/bold red] {escape(message)}")


def step_start(message: str) -> None:
    console.print(f"[bold]→[/bold] {message}")


def step_done(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def stack_event(stack_name: str, status: str, resource: str, reason: str | None = None) -> None:
    """Print one stack activity line, colored by status."""
    if status.endswith("FAILED"):
        color = "red"
    elif status.endswith("COMPLETE"):
        color = "green"
    else:
        color = "yellow"
    line = f"{escape(stack_name)} | [{color}]{escape(status)}[/{color}] | {escape(resource)}"
    if reason:
        line += f" [dim]{escape(reason)}[/dim]"
    console.print(line)


def success_box(title: str, message: str) -> None:
    console.print(Panel(escape(message), title=f"[bold green]{escape(title)}[/bold green]", expand=False))


def confirm(question: str, default: bool = False) -> bool:
    return Confirm.ask(escape(question), default=default, console=console)


@contextmanager
def spinner(message: str) -> Iterator[None]:
    with console.status(escape(message)):
        yield
