"""Scripter CLI - Main entry point.

Commands:
- run: Execute a queue file
- logs: Inspect the log directory of a past run
- version: Print the installed version
"""

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.logging import RichHandler

from scripter import __version__
from scripter.catalog import load_catalog, materialize_run
from scripter.config import load_config, merge_cli_overrides
from scripter.controller import RunController
from scripter.display import (
    console,
    print_error,
    print_event,
    print_info,
    print_log_files,
    print_recent_output,
    print_run_summary,
    print_warning,
)
from scripter.engine.container import Container
from scripter.events import EventType
from scripter.exceptions import ScripterError
from scripter.models import RunSnapshot

app = typer.Typer(
    help="Scripter - run a queue of scripts in order, with retries and logs.",
    no_args_is_help=True,
)

ERROR_EXIT_CODE = 2
POLL_INTERVAL_SECONDS = 0.2


def _configure_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("scripter")
    package_logger.setLevel(logging.INFO if verbose else logging.WARNING)
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(RichHandler(console=console, show_path=False))


def parse_env(values: list[str]) -> dict[str, str]:
    """Turn KEY=VALUE strings into an environment overlay."""
    env: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--env")
        env[key] = value
    return env


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show engine diagnostics.")
    ] = False,
) -> None:
    """Scripter - run a queue of scripts in order."""
    _configure_logging(verbose)


@app.command()
def run(
    queue_file: Annotated[Path, typer.Argument(help="YAML file with scripts and queue")],
    env: Annotated[
        Optional[list[str]],
        typer.Option("--env", "-e", help="Extra environment variable, KEY=VALUE"),
    ] = None,
    preset: Annotated[
        Optional[str], typer.Option("--preset", "-p", help="Run a named preset")
    ] = None,
    logs_dir: Annotated[
        Optional[Path], typer.Option("--logs-dir", help="Directory for run logs")
    ] = None,
    workdir: Annotated[
        Optional[Path], typer.Option("--workdir", help="Working directory for scripts")
    ] = None,
    grace: Annotated[
        Optional[float], typer.Option("--grace", help="Seconds between SIGTERM and SIGKILL")
    ] = None,
    retry_delay: Annotated[
        Optional[float], typer.Option("--retry-delay", help="Seconds to wait before a retry")
    ] = None,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Only print the final summary")
    ] = False,
) -> None:
    """Run every entry of a queue file in order.

    Exits 0 when every entry succeeded (or was skipped without a failure),
    1 when something failed or was cancelled, 2 on configuration errors.

    Examples:
        scripter run queue.yaml
        scripter run queue.yaml --preset nightly --env BRANCH=main
    """
    try:
        config = merge_cli_overrides(
            load_config(),
            logs_path=logs_dir,
            grace_period_seconds=grace,
            retry_delay_seconds=retry_delay,
        )
        catalog = load_catalog(queue_file)
        scripter_run = materialize_run(
            catalog,
            preset,
            working_directory=(workdir or Path.cwd()).resolve(),
            env=parse_env(env or []),
        )
    except ScripterError as e:
        print_error(str(e))
        raise typer.Exit(ERROR_EXIT_CODE) from e

    if not scripter_run.entries:
        print_warning("Queue is empty, nothing to run")
        raise typer.Exit(0)

    Container.set_config(config)
    engine = Container.execution_engine()
    if not quiet:
        engine.bus.subscribe(
            print_event,
            [EventType.ENTRY_STATE_CHANGED, EventType.ENTRY_RETRY, EventType.RUN_STATUS_CHANGED],
        )

    try:
        with RunController(engine) as controller:
            controller.start(scripter_run)
            summary = None
            while summary is None:
                try:
                    summary = controller.wait(timeout=POLL_INTERVAL_SECONDS)
                except KeyboardInterrupt:
                    print_warning("Stopping, waiting for the running script to exit...")
                    controller.stop()
            snapshot = controller.snapshot()
            recent = controller.recent_output()
    except ScripterError as e:
        print_error(str(e))
        raise typer.Exit(ERROR_EXIT_CODE) from e

    if summary.exit_code and not quiet:
        console.print()
        console.print("[bold]Recent output:[/]")
        print_recent_output(recent)
    print_run_summary(snapshot)
    raise typer.Exit(summary.exit_code)


@app.command()
def logs(
    run_dir: Annotated[Path, typer.Argument(help="Run log directory")],
) -> None:
    """List the log files of a run and its recorded outcome."""
    if not run_dir.is_dir():
        print_error(f"Run directory not found: {run_dir}")
        raise typer.Exit(ERROR_EXIT_CODE)

    print_log_files(run_dir, sorted(run_dir.glob("*.log")))

    manifest = run_dir / "manifest.json"
    if not manifest.exists():
        print_info("No manifest found; the run may still be in progress")
        return

    try:
        snapshot = RunSnapshot.model_validate_json(manifest.read_text())
    except ValueError as e:
        print_error(f"Cannot read {manifest}: {e}")
        raise typer.Exit(ERROR_EXIT_CODE) from e
    print_run_summary(snapshot)


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(f"scripter {__version__}")


if __name__ == "__main__":
    app()
