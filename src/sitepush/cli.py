from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from .config import DeploySettings, load_settings
from .errors import DeployError, SnapshotError
from .models import DiffSet, Operation, SyncProgress
from .pipeline import log_notifier, plan_deployment, run_pipeline
from .sequencer import summarize_operations

app = typer.Typer(
    help="Build a static site and push only what changed since the last deployment",
    invoke_without_command=True,
)
console = Console()
logger = logging.getLogger("sitepush")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False, show_path=False)],
        force=True,
    )


def _load(env_file: Path | None) -> DeploySettings:
    try:
        settings = load_settings(env_file)
    except DeployError as exc:
        _setup_logging("INFO")
        _fail(exc)
    _setup_logging(settings.log_level)
    return settings


def _fail(exc: Exception) -> NoReturn:
    logger.debug("Fatal error", exc_info=exc)
    if isinstance(exc, SnapshotError):
        console.print(
            "[bold red]MIRROR IS OUT OF SYNC WITH THE REMOTE SITE.[/bold red] "
            "Inspect or delete the mirror before the next run."
        )
    console.print(f"[red]ERROR:[/red] {exc}")
    raise typer.Exit(1)


def _print_statistics(diff_set: DiffSet) -> None:
    console.print(
        "Statistics - equal entries: {}, distinct entries: {}, left only entries: {}, "
        "right only entries: {}, differences: {}".format(
            diff_set.equal,
            diff_set.distinct,
            diff_set.local_only_count,
            diff_set.mirror_only_count,
            diff_set.differences,
        )
    )


def _print_operations(operations: list[Operation]) -> None:
    for op in operations:
        console.print(op.describe(), highlight=False)
    summary = summarize_operations(operations)
    console.print(
        f"Planned: {summary.make_dir} mkdir, {summary.upload} upload, "
        f"{summary.delete} delete, {summary.remove_dir} rmdir (total {summary.total})"
    )


def _run_deploy(settings: DeploySettings) -> None:
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Syncing", total=None, visible=False)

        def on_progress(state: SyncProgress) -> None:
            progress.update(
                task_id,
                completed=state.completed,
                total=state.total,
                visible=True,
            )

        try:
            report = run_pipeline(
                settings,
                notifier=log_notifier(settings),
                progress_cb=on_progress,
            )
        except DeployError as exc:
            progress.stop()
            _fail(exc)

    if report.diff_set is not None and not report.diff_set.same:
        _print_statistics(report.diff_set)
    console.print(f"[yellow]{report.message}[/yellow]")


@app.callback()
def _default_command(
    ctx: typer.Context,
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        exists=True,
        dir_okay=False,
        help="Read configuration from this file instead of ./.env",
    ),
) -> None:
    """Run a deployment when no subcommand is provided."""
    ctx.obj = env_file
    if ctx.invoked_subcommand is None:
        _run_deploy(_load(env_file))


@app.command()
def deploy(ctx: typer.Context) -> None:
    """Pull, build, and push the changes to the remote server."""
    _run_deploy(_load(ctx.obj))


@app.command()
def plan(ctx: typer.Context) -> None:
    """Show what the next deployment would change, without contacting the server."""
    settings = _load(ctx.obj)
    try:
        diff_set, operations = plan_deployment(settings)
    except DeployError as exc:
        _fail(exc)
    if diff_set.same:
        console.print("[yellow]Already up to date![/yellow]")
        return
    _print_statistics(diff_set)
    _print_operations(operations)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
