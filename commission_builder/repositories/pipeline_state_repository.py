"""Repository for pipeline run and step state."""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from commission_builder.database.models import PipelineRun, PipelineStep
from commission_builder.models.pipeline import ErrorClass, RunState, RunStatus, StepState, StepStatus
from commission_builder.repositories.base_repository import BaseRepository


def _step_state(step: PipelineStep) -> StepState:
    return StepState(
        run_id=step.run_id,
        step_number=step.step_number,
        name=step.name,
        status=StepStatus(step.status),
        attempts=step.attempts,
        records_processed=step.records_processed,
        error_message=step.error_message,
        error_class=ErrorClass(step.error_class) if step.error_class else None,
        start_time=step.start_time,
        end_time=step.end_time,
        duration_seconds=step.duration_seconds,
        output=step.output,
    )


def _run_state(run: PipelineRun) -> RunState:
    return RunState(
        run_id=run.id,
        name=run.name,
        status=RunStatus(run.status),
        total_steps=run.total_steps,
        completed_steps=run.completed_steps,
        start_time=run.start_time,
        end_time=run.end_time,
        error_message=run.error_message,
        error_class=ErrorClass(run.error_class) if run.error_class else None,
        can_resume=run.can_resume,
        config_snapshot=run.config_snapshot,
        steps=[_step_state(step) for step in sorted(run.steps, key=lambda s: s.step_number)],
    )


class PipelineStateRepository(BaseRepository[PipelineRun]):
    """Persists run/step state so a failed run can be resumed."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, PipelineRun)

    async def create_run(
        self,
        run_id: str,
        name: str,
        step_names: Sequence[str],
        config_snapshot: Optional[Dict[str, Any]] = None,
    ) -> RunState:
        """Create a pending run with one pending step per name."""
        try:
            run = PipelineRun(
                id=run_id,
                name=name,
                status=RunStatus.PENDING.value,
                total_steps=len(step_names),
                completed_steps=0,
                can_resume=True,
                config_snapshot=config_snapshot,
                steps=[
                    PipelineStep(step_number=number, name=step_name, status=StepStatus.PENDING.value)
                    for number, step_name in enumerate(step_names, start=1)
                ],
            )
            self.session.add(run)
            await self.session.flush()
            await self.session.commit()
            self.logger.info(
                f"Created pipeline run {run_id}",
                extra={"run_id": run_id, "steps": list(step_names)},
            )
            return _run_state(run)
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(f"Error creating pipeline run {run_id}: {str(e)}", exc_info=True)
            raise

    async def get_run(self, run_id: str) -> Optional[RunState]:
        """Load a run with all of its steps."""
        try:
            query = (
                select(PipelineRun)
                .options(selectinload(PipelineRun.steps))
                .where(PipelineRun.id == run_id)
                .execution_options(populate_existing=True)
            )
            run = (await self.session.execute(query)).scalar_one_or_none()
            return _run_state(run) if run else None
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading pipeline run {run_id}: {str(e)}", exc_info=True)
            raise

    async def list_runs(self, limit: int = 20) -> List[RunState]:
        """Most recent runs first."""
        try:
            query = (
                select(PipelineRun)
                .options(selectinload(PipelineRun.steps))
                .order_by(PipelineRun.created_at.desc())
                .limit(limit)
            )
            result = await self.session.execute(query)
            return [_run_state(run) for run in result.scalars().all()]
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing pipeline runs: {str(e)}", exc_info=True)
            raise

    async def save_run(self, state: RunState) -> None:
        """Persist the run-level fields of a state."""
        await self.update(
            state.run_id,
            status=state.status.value,
            total_steps=state.total_steps,
            completed_steps=state.completed_steps,
            start_time=state.start_time,
            end_time=state.end_time,
            error_message=state.error_message,
            error_class=state.error_class.value if state.error_class else None,
            can_resume=state.can_resume,
        )

    async def save_step(self, state: StepState) -> None:
        """Persist one step state."""
        try:
            query = select(PipelineStep).where(
                PipelineStep.run_id == state.run_id,
                PipelineStep.step_number == state.step_number,
            )
            step = (await self.session.execute(query)).scalar_one()
            step.status = state.status.value
            step.attempts = state.attempts
            step.records_processed = state.records_processed
            step.error_message = state.error_message
            step.error_class = state.error_class.value if state.error_class else None
            step.start_time = state.start_time
            step.end_time = state.end_time
            step.duration_seconds = state.duration_seconds
            step.output = state.output
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error saving step {state.step_number} of run {state.run_id}: {str(e)}",
                exc_info=True
            )
            raise
