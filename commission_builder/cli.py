"""Command line interface for the commission structure builder."""

import asyncio
import signal
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from commission_builder.core.config import get_settings
from commission_builder.core.database import DatabaseClient, dispose_engine, get_engine, get_session_maker
from commission_builder.core.exceptions import AppError
from commission_builder.models.pipeline import ResumeStrategy, RunState, RunStatus
from commission_builder.models.structures import AssemblySummary, GapCategory
from commission_builder.pipeline.factory import build_pipeline, build_pipeline_from_snapshot, config_snapshot
from commission_builder.pipeline.orchestrator import PipelineOrchestrator
from commission_builder.repositories.pipeline_state_repository import PipelineStateRepository
from commission_builder.utils.logging import get_logger, set_log_level

app = typer.Typer(help="Build proposal and hierarchy structures from certificate splits")
console = Console()
LOGGER = get_logger(__name__)

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "cyan",
    "skipped": "dim",
}


def print_summary(summary: Optional[AssemblySummary]) -> None:
    table = Table(title="Certificate Classification")
    table.add_column("Classification", style="cyan")
    table.add_column("Certificates", justify="right")

    counts = summary.to_dict() if summary else AssemblySummary().to_dict()
    for key in ("resolved", "fallback", "unresolved", "skipped", "failed"):
        table.add_row(key, str(counts[key]))
    console.print(table)

    if summary and (summary.rejected_rows or summary.unresolved_schedules):
        console.print(
            f"Rejected rows: {summary.rejected_rows}  Unresolved schedules: {summary.unresolved_schedules}",
            style="yellow",
        )
    if summary and summary.gap_categories:
        gaps = ", ".join(f"{name}={count}" for name, count in summary.to_dict()["gap_categories"].items())
        console.print(f"Gap categories: {gaps}", style="yellow")


def print_run(state: RunState) -> None:
    style = STATUS_STYLES.get(state.status.value, "white")
    console.print(f"Run {state.run_id} ({state.name}): [{style}]{state.status.value}[/{style}]")
    console.print(f"Steps completed: {state.completed_steps}/{state.total_steps}  Can resume: {state.can_resume}")
    if state.error_message:
        error_class = state.error_class.value if state.error_class else "aborted"
        console.print(f"Error ({error_class}): {state.error_message}", style="red")

    table = Table(title="Steps")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Duration (s)", justify="right")
    for step in state.steps:
        step_style = STATUS_STYLES.get(step.status.value, "white")
        table.add_row(
            str(step.step_number),
            step.name,
            f"[{step_style}]{step.status.value}[/{step_style}]",
            str(step.attempts),
            str(step.records_processed),
            f"{step.duration_seconds:.2f}" if step.duration_seconds is not None else "-",
        )
    console.print(table)


def _install_abort_handler(orchestrator: PipelineOrchestrator) -> None:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, orchestrator.request_abort)
    except (NotImplementedError, RuntimeError):
        # Signal handlers are unavailable on this platform/loop
        pass


async def _load_run(run_id: str) -> Optional[RunState]:
    async with get_session_maker()() as session:
        return await PipelineStateRepository(session).get_run(run_id)


async def _run(
    limit: Optional[int],
    group_ids: List[str],
    dry_run: bool,
    resume_from: Optional[str],
    restart: bool,
    fallback_categories: Optional[List[str]],
    create_tables: bool,
) -> int:
    settings = get_settings()
    try:
        if create_tables:
            await DatabaseClient(get_engine()).create_tables()

        if resume_from:
            existing = await _load_run(resume_from)
            if existing is None:
                console.print(f"Unknown run {resume_from}", style="red")
                return 1
            orchestrator = build_pipeline_from_snapshot(existing.config_snapshot, settings=settings)
            _install_abort_handler(orchestrator)
            strategy = ResumeStrategy.RESTART if restart else ResumeStrategy.FROM_FAILED_STEP
            state = await orchestrator.resume(resume_from, strategy)
        else:
            categories = fallback_categories or settings.assembly.fallback_categories
            orchestrator = build_pipeline(
                settings=settings,
                limit=limit,
                group_ids=group_ids or None,
                dry_run=dry_run,
                fallback_categories=categories,
            )
            _install_abort_handler(orchestrator)
            state = await orchestrator.run(
                config_snapshot=config_snapshot(settings, limit, group_ids, dry_run, categories),
            )

        print_run(state)
        print_summary(orchestrator.context.summary)
        return 0 if state.status == RunStatus.COMPLETED else 1

    except (AppError, ValueError) as e:
        LOGGER.error(f"Pipeline could not run: {e}", exc_info=True)
        console.print(f"Error: {e}", style="red")
        return 1
    finally:
        await dispose_engine()


async def _status(run_id: str) -> int:
    try:
        state = await _load_run(run_id)
        if state is None:
            console.print(f"Unknown run {run_id}", style="red")
            return 1
        print_run(state)
        return 0
    finally:
        await dispose_engine()


async def _runs(limit: int) -> int:
    try:
        async with get_session_maker()() as session:
            states = await PipelineStateRepository(session).list_runs(limit=limit)
    finally:
        await dispose_engine()

    table = Table(title="Pipeline Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Resumable")
    for state in states:
        style = STATUS_STYLES.get(state.status.value, "white")
        table.add_row(
            state.run_id,
            state.name,
            f"[{style}]{state.status.value}[/{style}]",
            f"{state.completed_steps}/{state.total_steps}",
            "yes" if state.status == RunStatus.FAILED and state.can_resume else "no",
        )
    console.print(table)
    return 0


@app.command()
def run(
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum number of certificates"),
    group: Optional[List[str]] = typer.Option(None, "--group", help="Restrict to a group id (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Assemble without writing staging output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    resume_from: Optional[str] = typer.Option(None, "--resume-from", help="Resume a failed run by id"),
    restart: bool = typer.Option(False, "--restart", help="With --resume-from, re-run every step"),
    fallback_category: Optional[List[str]] = typer.Option(
        None,
        "--fallback-category",
        help=f"Route a gap category to fallback assignments ({', '.join(c.value for c in GapCategory)})",
    ),
    create_tables: bool = typer.Option(False, "--create-tables", help="Create missing tables first"),
):
    """Run the commission structure pipeline."""
    if verbose:
        set_log_level("DEBUG")
    if restart and not resume_from:
        console.print("--restart requires --resume-from", style="red")
        raise typer.Exit(code=1)

    exit_code = asyncio.run(
        _run(limit, group or [], dry_run, resume_from, restart, fallback_category, create_tables)
    )
    raise typer.Exit(code=exit_code)


@app.command()
def status(run_id: str = typer.Argument(..., help="Pipeline run id")):
    """Show the persisted state of a run."""
    raise typer.Exit(code=asyncio.run(_status(run_id)))


@app.command()
def runs(limit: int = typer.Option(20, "--limit", min=1, help="Number of runs to show")):
    """List the most recent runs."""
    raise typer.Exit(code=asyncio.run(_runs(limit)))


if __name__ == "__main__":
    app()
