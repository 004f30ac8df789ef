"""Rich display utilities for the scripter CLI."""

from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from scripter.events import (
    EntryRetryEvent,
    EntryStateChangedEvent,
    Event,
    RunStatusChangedEvent,
)
from scripter.models import ExecutionState, OutputKind, OutputLine, RunSnapshot, RunStatus

console = Console()

STATE_STYLES: dict[ExecutionState, str] = {
    ExecutionState.PENDING: "dim",
    ExecutionState.RUNNING: "cyan",
    ExecutionState.SUCCEEDED: "green",
    ExecutionState.FAILED: "red",
    ExecutionState.SKIPPED: "yellow",
    ExecutionState.CANCELLED: "magenta",
}


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]✓[/] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]✗[/] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]⚠[/] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[bold blue]ℹ[/] {message}")


def format_state(state: ExecutionState) -> str:
    style = STATE_STYLES[state]
    return f"[{style}]{state.value}[/]"


def print_event(event: Event) -> None:
    """Print one line per state change; output events are ignored."""
    if isinstance(event, EntryRetryEvent):
        print_warning(
            f"{escape(event.name)}: attempt {event.attempt}/{event.max_attempts} failed "
            f"({escape(event.error)}), retrying"
        )
    elif isinstance(event, EntryStateChangedEvent):
        if event.new_state == ExecutionState.RUNNING and event.old_state == ExecutionState.RUNNING:
            return
        label = f"#{event.index + 1} {escape(event.name)}"
        if event.new_state == ExecutionState.SUCCEEDED:
            print_success(f"{label} succeeded")
        elif event.new_state == ExecutionState.FAILED:
            detail = f" ({escape(event.outcome.describe())})" if event.outcome else ""
            print_error(f"{label} failed{detail}")
        elif event.new_state == ExecutionState.RUNNING:
            print_info(f"{label} running")
        else:
            console.print(f"  {label} {format_state(event.new_state)}")
    elif isinstance(event, RunStatusChangedEvent):
        if event.new_status == RunStatus.STOPPED:
            print_warning(f"Run {event.run_id} stopped")


def print_run_summary(snapshot: RunSnapshot) -> None:
    """Print a table of entries and their final states."""
    table = Table(title=f"Run {snapshot.run_id} ({snapshot.status.value})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Result")
    table.add_column("Log", style="dim")

    for entry in snapshot.entries:
        table.add_row(
            str(entry.index + 1),
            entry.name,
            format_state(entry.state),
            str(entry.attempt),
            entry.outcome.describe() if entry.outcome else "-",
            str(entry.log_path) if entry.log_path else "-",
        )

    console.print()
    console.print(table)

    summary = snapshot.summary
    console.print(
        f"[bold]{summary.succeeded}[/] succeeded, "
        f"[bold red]{summary.failed}[/] failed, "
        f"[bold yellow]{summary.skipped}[/] skipped, "
        f"[bold magenta]{summary.cancelled}[/] cancelled"
    )
    if snapshot.log_dir:
        console.print(f"[dim]Logs: {snapshot.log_dir}[/]")


def print_recent_output(lines: list[OutputLine]) -> None:
    """Print the recent output tail, errors in red and engine events dimmed."""
    for line in lines:
        if line.kind == OutputKind.ERROR:
            console.print(f"[red]{escape(line.text)}[/]", highlight=False)
        elif line.kind == OutputKind.EVENT:
            console.print(f"[dim]{escape(line.text)}[/]", highlight=False)
        else:
            console.print(line.text, markup=False, highlight=False)


def print_log_files(run_dir: Path, files: list[Path]) -> None:
    """Print the log files of one run directory."""
    if not files:
        print_info(f"No log files in {run_dir}")
        return

    table = Table(title=f"Logs in {run_dir}")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    for path in files:
        table.add_row(path.name, f"{path.stat().st_size} B")
    console.print(table)
