"""Resumable pipeline orchestrator.

Runs the pipeline steps in order as a persisted state machine. Every step is
persisted before and after it executes, so a failed run can be resumed from
its first non-completed step.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_builder.core.base_step import BaseStep
from commission_builder.core.config import PipelineSettings
from commission_builder.core.exceptions import PipelineStateError
from commission_builder.models.pipeline import (
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    ErrorClass,
    ResumeStrategy,
    RunState,
    RunStatus,
    StepState,
    StepStatus,
)
from commission_builder.pipeline.error_handler import classify_error, retry_with_backoff
from commission_builder.pipeline.steps import PipelineContext, default_steps
from commission_builder.repositories.pipeline_state_repository import PipelineStateRepository
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

ABORT_MESSAGE = "Run aborted by operator request"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _transition_run(state: RunState, status: RunStatus) -> None:
    if status not in RUN_TRANSITIONS[state.status]:
        raise PipelineStateError(f"Run {state.run_id}: illegal transition {state.status.value} -> {status.value}")
    state.status = status


def _reset_step(step: StepState) -> None:
    step.status = StepStatus.PENDING
    step.records_processed = 0
    step.error_message = None
    step.error_class = None
    step.start_time = None
    step.end_time = None
    step.duration_seconds = None
    step.output = None


def _transition_step(step: StepState, status: StepStatus) -> None:
    if status not in STEP_TRANSITIONS[step.status]:
        raise PipelineStateError(
            f"Step {step.step_number} ({step.name}): illegal transition {step.status.value} -> {status.value}"
        )
    step.status = status


class PipelineOrchestrator:
    """Executes pipeline steps with retry, failure classification and resume."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        context: PipelineContext,
        steps: Optional[List[BaseStep]] = None,
        settings: Optional[PipelineSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the orchestrator.

        Args:
            session_maker: Session factory for run/step state
            context: Collaborators shared by the steps
            steps: Ordered steps; the standard pipeline when omitted
            settings: Retry and naming settings
            sleep: Awaitable sleep used between retries
            clock: Source of timestamps
        """
        self.session_maker = session_maker
        self.context = context
        self.steps = steps if steps is not None else default_steps()
        self.settings = settings or PipelineSettings()
        self.sleep = sleep
        self.clock = clock
        self._abort_requested = False
        # Runs whose step output this process's writer holds
        self._materialized_runs: Set[str] = set()

        names = [step.name for step in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names: {names}")

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def request_abort(self) -> None:
        """Stop the run before its next step; the current step finishes."""
        LOGGER.warning("Abort requested; remaining steps will be skipped")
        self._abort_requested = True

    async def create_run(self, name: Optional[str] = None, config_snapshot: Optional[Dict[str, Any]] = None) -> RunState:
        run_id = str(uuid4())
        async with self.session_maker() as session:
            return await PipelineStateRepository(session).create_run(
                run_id=run_id,
                name=name or self.settings.run_name,
                step_names=self.step_names,
                config_snapshot=config_snapshot,
            )

    async def get_run(self, run_id: str) -> Optional[RunState]:
        async with self.session_maker() as session:
            return await PipelineStateRepository(session).get_run(run_id)

    async def run(self, name: Optional[str] = None, config_snapshot: Optional[Dict[str, Any]] = None) -> RunState:
        """Create a run and execute it."""
        state = await self.create_run(name, config_snapshot)
        return await self.execute(state.run_id)

    async def resume(self, run_id: str, strategy: ResumeStrategy = ResumeStrategy.FROM_FAILED_STEP) -> RunState:
        """Resume a failed run.

        Raises:
            PipelineStateError: When the run is unknown, not failed or not resumable.
        """
        state = await self._load(run_id)
        if state.status != RunStatus.FAILED:
            raise PipelineStateError(f"Run {run_id} is {state.status.value}; only failed runs can be resumed")
        if not state.can_resume:
            raise PipelineStateError(f"Run {run_id} failed fatally and cannot be resumed")

        LOGGER.info(
            f"Resuming run {run_id} with strategy {strategy.value}",
            extra={"run_id": run_id, "strategy": strategy.value},
        )
        if strategy == ResumeStrategy.RESTART:
            for step in state.steps:
                _reset_step(step)
                await self._save_step(step)
            state.completed_steps = 0
            await self._save_run(state)

        return await self.execute(run_id)

    async def execute(self, run_id: str) -> RunState:
        """Execute every non-completed step of a run, in order.

        Step failures do not raise: they are classified, persisted and
        reflected in the returned state.
        """
        state = await self._load(run_id)
        if state.status == RunStatus.COMPLETED:
            LOGGER.info(f"Run {run_id} already completed", extra={"run_id": run_id})
            return state
        if state.status == RunStatus.FAILED and not state.can_resume:
            raise PipelineStateError(f"Run {run_id} failed fatally and cannot be resumed")

        if state.status == RunStatus.RUNNING:
            # Left running by a crashed worker
            LOGGER.warning(f"Recovering interrupted run {run_id}", extra={"run_id": run_id})
            for step in state.steps:
                if step.status == StepStatus.RUNNING:
                    step.status = StepStatus.PENDING
        else:
            _transition_run(state, RunStatus.RUNNING)

        if not self.context.writer.durable and run_id not in self._materialized_runs:
            completed = [step for step in state.steps if step.status == StepStatus.COMPLETED]
            if completed:
                # Output of earlier steps was lost with the process that wrote it
                LOGGER.warning(
                    f"Run {run_id} output is not durable; re-running {len(completed)} completed step(s)",
                    extra={"run_id": run_id, "steps": [step.name for step in completed]},
                )
                for step in completed:
                    _reset_step(step)
                    await self._save_step(step)
                state.completed_steps = 0
        self._materialized_runs.add(run_id)

        state.start_time = state.start_time or self.clock()
        state.end_time = None
        state.error_message = None
        state.error_class = None
        await self._save_run(state)

        steps_by_name = {step.name: step for step in self.steps}
        for step_state in state.steps:
            step = steps_by_name.get(step_state.name)
            if step_state.status == StepStatus.COMPLETED and step is not None and step_state.output:
                step.restore(self.context, step_state.output)

        for step_state in sorted(state.steps, key=lambda s: s.step_number):
            if step_state.status == StepStatus.COMPLETED:
                continue

            if self._abort_requested:
                return await self._abort(state)

            step = steps_by_name.get(step_state.name)
            if step is None:
                raise PipelineStateError(f"Run {run_id} references unknown step {step_state.name}")

            failed = await self._execute_step(state, step_state, step)
            if failed:
                return state

        if self._abort_requested:
            self._abort_requested = False

        _transition_run(state, RunStatus.COMPLETED)
        state.end_time = self.clock()
        state.can_resume = False
        await self._save_run(state)
        LOGGER.info(
            f"Run {run_id} completed",
            extra={"run_id": run_id, "records_processed": state.records_processed},
        )
        return state

    async def _execute_step(self, state: RunState, step_state: StepState, step: BaseStep) -> bool:
        """Run one step with retry. Returns True when the step failed."""
        _transition_step(step_state, StepStatus.RUNNING)
        step_state.attempts += 1
        step_state.start_time = self.clock()
        step_state.end_time = None
        step_state.error_message = None
        step_state.error_class = None
        step_state.output = None
        await self._save_step(step_state)

        LOGGER.info(
            f"Step {step_state.step_number}/{state.total_steps} {step.name} started",
            extra={"run_id": state.run_id, "step": step.name},
        )
        started = time.monotonic()

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            step_state.attempts += 1

        try:
            result = await retry_with_backoff(
                lambda: step.execute(self.context),
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.base_delay_seconds,
                max_delay=self.settings.max_delay_seconds,
                sleep=self.sleep,
                on_retry=on_retry,
            )
        except Exception as e:
            error_class = classify_error(e)
            _transition_step(step_state, StepStatus.FAILED)
            step_state.error_message = str(e)
            step_state.error_class = error_class
            step_state.end_time = self.clock()
            step_state.duration_seconds = time.monotonic() - started
            await self._save_step(step_state)

            _transition_run(state, RunStatus.FAILED)
            state.error_message = f"{step.name}: {e}"
            state.error_class = error_class
            state.can_resume = error_class != ErrorClass.FATAL
            state.end_time = self.clock()
            await self._save_run(state)

            LOGGER.error(
                f"Step {step.name} failed ({error_class.value}): {e}",
                exc_info=True,
                extra={"run_id": state.run_id, "step": step.name, "error_class": error_class.value},
            )
            return True

        _transition_step(step_state, StepStatus.COMPLETED)
        step_state.records_processed = result.records_processed
        step_state.output = result.data or None
        step_state.end_time = self.clock()
        step_state.duration_seconds = time.monotonic() - started
        await self._save_step(step_state)

        state.completed_steps = sum(1 for s in state.steps if s.status == StepStatus.COMPLETED)
        await self._save_run(state)

        LOGGER.info(
            f"Step {step.name} completed ({result.records_processed} records)",
            extra={"run_id": state.run_id, "step": step.name, "records_processed": result.records_processed},
        )
        return False

    async def _abort(self, state: RunState) -> RunState:
        self._abort_requested = False
        for step_state in state.steps:
            if step_state.status in (StepStatus.PENDING, StepStatus.FAILED):
                _transition_step(step_state, StepStatus.SKIPPED)
                await self._save_step(step_state)

        _transition_run(state, RunStatus.FAILED)
        state.error_message = ABORT_MESSAGE
        state.error_class = None
        state.can_resume = True
        state.end_time = self.clock()
        await self._save_run(state)
        LOGGER.warning(f"Run {state.run_id} aborted", extra={"run_id": state.run_id})
        return state

    async def _load(self, run_id: str) -> RunState:
        state = await self.get_run(run_id)
        if state is None:
            raise PipelineStateError(f"Unknown pipeline run {run_id}")
        return state

    async def _save_run(self, state: RunState) -> None:
        async with self.session_maker() as session:
            await PipelineStateRepository(session).save_run(state)

    async def _save_step(self, state: StepState) -> None:
        async with self.session_maker() as session:
            await PipelineStateRepository(session).save_step(state)
