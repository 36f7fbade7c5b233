"""Durable execution of the commission structure pipeline."""

from datetime import timedelta
from typing import Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

from commission_builder.temporal.core.constants import (
    CREATE_RUN_TIMEOUT_SECONDS,
    EXECUTE_RUN_HEARTBEAT_SECONDS,
    EXECUTE_RUN_TIMEOUT_SECONDS,
    FATAL_PIPELINE_ERROR,
)
from commission_builder.temporal.core.workflow_registry import WorkflowRegistry


@WorkflowRegistry.register()
@workflow.defn
class CommissionPipelineWorkflow:
    """Creates a pipeline run and executes it, resuming on activity retry."""

    def __init__(self):
        self._status = "initialized"
        self._run_id: Optional[str] = None

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for real-time status updates."""
        return {"status": self._status, "run_id": self._run_id}

    @workflow.run
    async def run(self, payload: Dict) -> dict:
        """Execute the pipeline.

        Args:
            payload: Run options; ``run_id`` continues an existing run
                instead of creating one
        """
        self._run_id = payload.get("run_id")

        if not self._run_id:
            self._status = "creating"
            self._run_id = await workflow.execute_activity(
                "create_pipeline_run",
                args=[payload],
                start_to_close_timeout=timedelta(seconds=CREATE_RUN_TIMEOUT_SECONDS),
                retry_policy=RetryPolicy(
                    maximum_attempts=3,
                    initial_interval=timedelta(seconds=1),
                    maximum_interval=timedelta(seconds=30),
                    backoff_coefficient=2.0,
                ),
            )

        self._status = "running"
        result = await workflow.execute_activity(
            "execute_pipeline_run",
            args=[self._run_id],
            start_to_close_timeout=timedelta(seconds=EXECUTE_RUN_TIMEOUT_SECONDS),
            heartbeat_timeout=timedelta(seconds=EXECUTE_RUN_HEARTBEAT_SECONDS),
            retry_policy=RetryPolicy(
                maximum_attempts=3,
                initial_interval=timedelta(seconds=1),
                maximum_interval=timedelta(seconds=30),
                backoff_coefficient=2.0,
                non_retryable_error_types=[FATAL_PIPELINE_ERROR],
            ),
        )

        self._status = result.get("status", "completed")
        return result
