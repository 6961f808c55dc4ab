"""RunWarden CLI application."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import tempfile
from pathlib import Path
from typing import Optional

import psutil
import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from runwarden import __version__
from runwarden.config import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_LOGS_DIR,
    DEFAULT_PID_FILE,
    DEFAULT_RUNBOOKS_DIR,
    ConfigError,
    create_default_config,
    ensure_config_dir,
    load_config,
    load_runbook_file,
    save_runbook_file,
)
from runwarden.core.dry_run import dry_run
from runwarden.core.events import EventBus
from runwarden.core.executor import RunbookExecutor
from runwarden.core.graph import validate
from runwarden.core.runner import ShellScriptRunner
from runwarden.core.supervisor import Supervisor
from runwarden.db import Database
from runwarden.models import DryRunResult, ExecutionStatus, RunbookExecution, StepStatus

# Initialize
app = typer.Typer(
    name="runwarden",
    help="RunWarden - Runbook orchestration and self-healing",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
daemon_app = typer.Typer(help="Daemon management commands")
app.add_typer(daemon_app, name="daemon")

runbook_app = typer.Typer(help="Runbook management commands")
app.add_typer(runbook_app, name="runbook")

healing_app = typer.Typer(help="Self-healing approval commands")
app.add_typer(healing_app, name="healing")

STATUS_STYLES = {
    "succeeded": "green",
    "partial_success": "yellow",
    "failed": "red",
    "canceled": "dim",
    "skipped": "dim",
    "running": "blue",
    "paused": "yellow",
}


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _load_or_exit(file: Path):
    try:
        return load_runbook_file(file)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def get_daemon_pid() -> int | None:
    """Get the PID of the running daemon."""
    if not DEFAULT_PID_FILE.exists():
        return None

    try:
        pid = int(DEFAULT_PID_FILE.read_text().strip())
    except (ValueError, FileNotFoundError):
        return None

    if psutil.pid_exists(pid):
        return pid

    # Stale PID file
    DEFAULT_PID_FILE.unlink(missing_ok=True)
    return None


def write_daemon_pid(pid: int) -> None:
    """Write the daemon PID to file."""
    ensure_config_dir()
    DEFAULT_PID_FILE.write_text(str(pid))


def remove_daemon_pid() -> None:
    """Remove the daemon PID file."""
    DEFAULT_PID_FILE.unlink(missing_ok=True)


# ============================================================================
# Daemon Commands
# ============================================================================


@daemon_app.command("start")
def daemon_start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Start the RunWarden daemon in the foreground."""
    setup_logging(verbose)

    pid = get_daemon_pid()
    if pid:
        console.print(f"[yellow]Daemon is already running (PID: {pid})[/yellow]")
        raise typer.Exit(0)

    # Ensure config exists
    create_default_config()
    _run_daemon()


def _run_daemon() -> None:
    """Run the daemon process."""
    write_daemon_pid(os.getpid())

    try:
        config = load_config()

        logger.add(
            DEFAULT_LOGS_DIR / "daemon.log",
            level=config.daemon.log_level,
            rotation="10 MB",
            retention=5,
        )

        supervisor = Supervisor(config=config, db=Database())

        # Setup signal handlers
        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}")
            supervisor.shutdown()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        # Run supervisor
        asyncio.run(supervisor.run())

    except Exception as e:
        logger.error(f"Daemon error: {e}")
        raise
    finally:
        remove_daemon_pid()


@daemon_app.command("stop")
def daemon_stop(
    timeout: int = typer.Option(60, "--timeout", "-t", help="Shutdown timeout in seconds"),
) -> None:
    """Stop the RunWarden daemon."""
    pid = get_daemon_pid()
    if not pid:
        console.print("[yellow]Daemon is not running[/yellow]")
        raise typer.Exit(1)

    console.print(f"[blue]Stopping daemon (PID: {pid})...[/blue]")

    try:
        proc = psutil.Process(pid)
        proc.terminate()
        proc.wait(timeout=timeout)
        console.print("[green]✓ Daemon stopped[/green]")
    except psutil.NoSuchProcess:
        console.print("[yellow]Daemon process not found[/yellow]")
    except psutil.TimeoutExpired:
        console.print("[yellow]Daemon did not stop gracefully, force killing...[/yellow]")
        proc.kill()
        console.print("[green]✓ Daemon killed[/green]")
    finally:
        remove_daemon_pid()


@daemon_app.command("status")
def daemon_status() -> None:
    """Show daemon status."""
    from runwarden.cli.client import APIClient

    pid = get_daemon_pid()
    if not pid:
        console.print("[red]○ Daemon is not running[/red]")
        return

    console.print(f"[green]● Daemon is running (PID: {pid})[/green]")

    with APIClient() as client:
        if not client.is_daemon_running():
            console.print("  [yellow]API is not responding[/yellow]")
            return
        health = client.health()

    if health.get("uptime_seconds") is not None:
        console.print(f"  Uptime: {int(health['uptime_seconds'])}s")
    console.print(f"  Runbooks: {health['runbooks_total']}")
    console.print(f"  Active executions: {health['executions_active']}")
    console.print(f"  Pending approvals: {health['pending_approvals']}")


# ============================================================================
# Runbook Commands
# ============================================================================


@app.command("validate")
def validate_file(
    file: Path = typer.Argument(..., help="Runbook YAML file", exists=True, dir_okay=False),
) -> None:
    """Validate a runbook file."""
    runbook = _load_or_exit(file)
    result = validate(runbook)

    if result.is_valid:
        console.print(f"[green]✓ Runbook '{runbook.id}' is valid ({len(runbook.steps)} steps)[/green]")
        return

    console.print(f"[red]✗ Runbook '{runbook.id}' is invalid:[/red]")
    for error in result.errors:
        console.print(f"  - {error}")
    raise typer.Exit(1)


@app.command("run")
def run_file(
    file: Path = typer.Argument(..., help="Runbook YAML file", exists=True, dir_okay=False),
    dry_run_only: bool = typer.Option(False, "--dry-run", help="Show what would run without running it"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a runbook file locally and print the step results."""
    setup_logging(verbose)

    runbook = _load_or_exit(file)

    if dry_run_only:
        try:
            things = load_config().things
        except ConfigError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
        preview = dry_run(runbook, things)
        _print_dry_run(preview)
        if not preview.is_valid:
            raise typer.Exit(1)
        return

    result = validate(runbook)
    if not result.is_valid:
        for error in result.errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(1)

    try:
        config = load_config()
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(Path(tmpdir) / "run.db")
        executor = RunbookExecutor(
            db=db,
            runner=ShellScriptRunner(config.things),
            events=EventBus(),
            max_parallel_steps=config.daemon.max_parallel_steps,
        )

        async def run() -> RunbookExecution | None:
            execution_id = await executor.start_execution(runbook, trigger_info=f"cli {file}")
            return await executor.wait_for_completion(execution_id)

        try:
            execution = asyncio.run(run())
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted[/yellow]")
            raise typer.Exit(130)

    if execution is None:
        console.print("[red]Execution record lost[/red]")
        raise typer.Exit(1)

    _print_execution(execution, verbose)

    if execution.status not in (ExecutionStatus.SUCCEEDED, ExecutionStatus.PARTIAL_SUCCESS):
        raise typer.Exit(1)


def _print_dry_run(preview: DryRunResult) -> None:
    if not preview.is_valid:
        console.print(f"[red]✗ Runbook '{preview.runbook_id}' is invalid:[/red]")
        for error in preview.errors:
            console.print(f"  - {error}")

    table = Table(title=f"Dry run: {preview.runbook_id}")
    table.add_column("Step", style="cyan")
    table.add_column("Command")
    table.add_column("Condition")
    table.add_column("Depends on")
    table.add_column("Attempts", justify="right")
    table.add_column("Timeout", justify="right")

    for step in preview.steps:
        timeout = f"{step.timeout.total_seconds():.0f}s" if step.timeout else "-"
        attempts = str(step.max_attempts)
        if step.retry_delays:
            delays = ", ".join(f"{d.total_seconds():g}s" for d in step.retry_delays)
            attempts = f"{attempts} (backoff {delays})"
        table.add_row(
            step.name,
            escape(step.command) if step.command else "[red]unresolved[/red]",
            step.condition,
            ", ".join(step.depends_on) or "-",
            attempts,
            timeout,
        )

    console.print(table)
    for warning in preview.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


def _print_execution(execution: RunbookExecution, show_output: bool = False) -> None:
    table = Table(title=f"Execution {execution.id}")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for step in execution.step_executions:
        duration = f"{step.duration.total_seconds():.1f}s" if step.duration else "-"
        table.add_row(
            step.step_name,
            _styled(step.status.value),
            str(step.attempt),
            duration,
            step.error_message or "",
        )

    console.print(table)
    console.print(f"Result: {_styled(execution.status.value)}")
    if execution.error_message:
        console.print(f"[dim]{execution.error_message}[/dim]")

    if show_output:
        for step in execution.step_executions:
            if step.output and step.status != StepStatus.SKIPPED:
                console.print(f"\n[bold]{step.step_name}[/bold]")
                console.print(step.output.rstrip())


@runbook_app.command("import")
def runbook_import(
    file: Path = typer.Argument(..., help="Runbook YAML file", exists=True, dir_okay=False),
) -> None:
    """Import a runbook file into the runbooks directory and the store."""
    from runwarden.cli.client import APIClient

    runbook = _load_or_exit(file)
    result = validate(runbook)
    if not result.is_valid:
        for error in result.errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(1)

    target = save_runbook_file(runbook, DEFAULT_RUNBOOKS_DIR)

    # Prefer the daemon so triggers are registered right away
    if get_daemon_pid():
        definition = runbook.model_dump(mode="json", exclude={"id", "created_at", "updated_at", "version"})
        with APIClient() as client:
            if client.is_daemon_running():
                stored = client.save_runbook(runbook.id, definition)
                console.print(f"[green]✓ Imported '{runbook.id}' (version {stored['version']})[/green]")
                return

    db = Database()
    if db.get_runbook(runbook.id) is None:
        db.add_runbook(runbook)
        version = 1
    else:
        version = db.update_runbook(runbook).version

    console.print(f"[green]✓ Imported '{runbook.id}' (version {version})[/green]")
    console.print(f"[dim]Saved to {target}[/dim]")


@runbook_app.command("list")
def runbook_list() -> None:
    """List stored runbooks."""
    runbooks = Database().list_runbooks()

    if not runbooks:
        console.print("[yellow]No runbooks stored[/yellow]")
        console.print(f"Add runbook files to: {DEFAULT_RUNBOOKS_DIR}/")
        return

    table = Table(title="Runbooks")
    table.add_column("Runbook", style="cyan")
    table.add_column("Name")
    table.add_column("Trigger")
    table.add_column("Steps", justify="right")
    table.add_column("Version", justify="right")
    table.add_column("Enabled")

    for runbook in runbooks:
        table.add_row(
            runbook.id,
            runbook.name,
            runbook.trigger_type.value,
            str(len(runbook.steps)),
            str(runbook.version),
            "[green]yes[/green]" if runbook.is_enabled else "[dim]no[/dim]",
        )

    console.print(table)


@runbook_app.command("execute")
def runbook_execute(
    runbook_id: str = typer.Argument(..., help="Runbook ID"),
) -> None:
    """Start a stored runbook on the running daemon."""
    from runwarden.cli.client import APIClient

    with APIClient() as client:
        if not client.is_daemon_running():
            console.print("[red]Daemon is not running[/red]")
            raise typer.Exit(1)

        try:
            response = client.execute_runbook(runbook_id, trigger_info="manual (cli)")
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓ Started execution {response['execution_id']}[/green]")


@runbook_app.command("history")
def runbook_history(
    runbook_id: Optional[str] = typer.Argument(None, help="Runbook ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of executions to show"),
) -> None:
    """Show recent executions."""
    executions = Database().list_executions(runbook_id=runbook_id, limit=limit)

    if not executions:
        console.print("[yellow]No executions found[/yellow]")
        return

    table = Table(title="Executions")
    table.add_column("Execution", style="cyan")
    table.add_column("Runbook")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Duration", justify="right")

    for execution in executions:
        duration = f"{execution.duration.total_seconds():.1f}s" if execution.duration else "-"
        table.add_row(
            execution.id[:12],
            execution.runbook_id,
            _styled(execution.status.value),
            execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            duration,
        )

    console.print(table)


# ============================================================================
# Self-Healing Commands
# ============================================================================


@healing_app.command("pending")
def healing_pending() -> None:
    """List self-healing executions awaiting approval."""
    from runwarden.cli.client import APIClient

    with APIClient() as client:
        if not client.is_daemon_running():
            console.print("[red]Daemon is not running[/red]")
            raise typer.Exit(1)
        pending = client.list_pending_approvals()

    if not pending:
        console.print("[green]No executions awaiting approval[/green]")
        return

    table = Table(title="Awaiting Approval")
    table.add_column("Execution", style="cyan")
    table.add_column("Rule")
    table.add_column("Alert")
    table.add_column("Since")

    for execution in pending:
        table.add_row(
            execution["id"],
            execution["rule_id"],
            execution.get("triggering_alert_id") or "-",
            execution["started_at"][:19].replace("T", " "),
        )

    console.print(table)


def _decide(execution_id: str, approve: bool) -> None:
    from runwarden.cli.client import APIClient

    with APIClient() as client:
        if not client.is_daemon_running():
            console.print("[red]Daemon is not running[/red]")
            raise typer.Exit(1)

        try:
            execution = client.decide_healing_execution(execution_id, approve)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    verb = "Approved" if approve else "Rejected"
    console.print(f"[green]✓ {verb} {execution_id} ({execution['status']})[/green]")


@healing_app.command("approve")
def healing_approve(execution_id: str = typer.Argument(..., help="Self-healing execution ID")) -> None:
    """Approve a pending self-healing execution."""
    _decide(execution_id, approve=True)


@healing_app.command("reject")
def healing_reject(execution_id: str = typer.Argument(..., help="Self-healing execution ID")) -> None:
    """Reject a pending self-healing execution."""
    _decide(execution_id, approve=False)


# ============================================================================
# Misc Commands
# ============================================================================


@app.command("init")
def init_config() -> None:
    """Initialize RunWarden configuration."""
    create_default_config()
    console.print(f"[green]✓ Created configuration at {DEFAULT_CONFIG_DIR}[/green]")
    console.print(f"\nAdd runbook files to: {DEFAULT_RUNBOOKS_DIR}/")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"RunWarden v{__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
