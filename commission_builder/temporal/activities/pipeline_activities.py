"""Temporal activities wrapping the pipeline orchestrator."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from commission_builder.core.config import get_settings
from commission_builder.core.database import get_session_maker
from commission_builder.models.pipeline import RunState, RunStatus
from commission_builder.pipeline.factory import build_pipeline, build_pipeline_from_snapshot, config_snapshot
from commission_builder.repositories.pipeline_state_repository import PipelineStateRepository
from commission_builder.temporal.core.activity_registry import ActivityRegistry
from commission_builder.temporal.core.constants import (
    EXECUTE_RUN_HEARTBEAT_INTERVAL_SECONDS,
    FATAL_PIPELINE_ERROR,
    RESUMABLE_PIPELINE_ERROR,
)
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)


@asynccontextmanager
async def heartbeat_while_running(label: str, interval: float) -> AsyncIterator[None]:
    """Heartbeat every ``interval`` seconds while the wrapped block executes.

    ``interval`` must stay below the activity's heartbeat timeout.
    """
    started = time.monotonic()

    async def beat() -> None:
        while True:
            activity.heartbeat(f"{label} (elapsed={time.monotonic() - started:.0f}s)")
            await asyncio.sleep(interval)

    task = asyncio.create_task(beat())
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def run_summary(state: RunState, summary: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Serializable view of a run for workflow results."""
    return {
        "run_id": state.run_id,
        "status": state.status.value,
        "completed_steps": state.completed_steps,
        "total_steps": state.total_steps,
        "records_processed": state.records_processed,
        "error_message": state.error_message,
        "error_class": state.error_class.value if state.error_class else None,
        "can_resume": state.can_resume,
        "summary": summary,
    }


@ActivityRegistry.register("pipeline", "create_pipeline_run")
@activity.defn
async def create_pipeline_run(options: Dict[str, Any]) -> str:
    """Create a pending pipeline run.

    Args:
        options: ``name``, ``limit``, ``group_ids``, ``dry_run`` and
            ``fallback_categories``

    Returns:
        The new run id
    """
    settings = get_settings()
    fallback_categories = options.get("fallback_categories")
    if fallback_categories is None:
        fallback_categories = settings.assembly.fallback_categories

    orchestrator = build_pipeline(
        settings=settings,
        limit=options.get("limit"),
        group_ids=options.get("group_ids"),
        dry_run=bool(options.get("dry_run", False)),
        fallback_categories=fallback_categories,
    )
    state = await orchestrator.create_run(
        options.get("name"),
        config_snapshot(
            settings,
            options.get("limit"),
            options.get("group_ids"),
            bool(options.get("dry_run", False)),
            fallback_categories,
        ),
    )
    activity.logger.info(f"Created pipeline run {state.run_id}")
    return state.run_id


@ActivityRegistry.register("pipeline", "execute_pipeline_run")
@activity.defn
async def execute_pipeline_run(run_id: str) -> Dict[str, Any]:
    """Execute (or continue) a pipeline run.

    Completed steps are skipped, so a retried activity resumes the run.

    Raises:
        ApplicationError: Non-retryable when the run failed fatally,
            retryable when it failed but can be resumed.
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        existing = await PipelineStateRepository(session).get_run(run_id)
    if existing is None:
        raise ApplicationError(f"Unknown pipeline run {run_id}", type=FATAL_PIPELINE_ERROR, non_retryable=True)

    orchestrator = build_pipeline_from_snapshot(existing.config_snapshot, session_maker=session_maker)
    activity.logger.info(f"Executing pipeline run {run_id} (attempt {activity.info().attempt})")

    async with heartbeat_while_running(f"executing run {run_id}", EXECUTE_RUN_HEARTBEAT_INTERVAL_SECONDS):
        state = await orchestrator.execute(run_id)
    summary = orchestrator.context.summary.to_dict() if orchestrator.context.summary else None

    if state.status == RunStatus.FAILED:
        if not state.can_resume:
            raise ApplicationError(
                f"Run {run_id} failed fatally: {state.error_message}",
                run_summary(state, summary),
                type=FATAL_PIPELINE_ERROR,
                non_retryable=True,
            )
        raise ApplicationError(
            f"Run {run_id} failed: {state.error_message}",
            run_summary(state, summary),
            type=RESUMABLE_PIPELINE_ERROR,
        )

    LOGGER.info(f"Pipeline run {run_id} finished", extra={"run_id": run_id, "summary": summary})
    return run_summary(state, summary)
