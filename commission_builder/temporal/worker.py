"""Temporal worker for the commission structure pipeline.

This worker:
- Connects to the configured Temporal server
- Registers the pipeline workflow and its activities
- Polls the pipeline task queue until interrupted
"""

import asyncio

from temporalio.client import Client
from temporalio.worker import Worker

from commission_builder.core.config import get_settings
from commission_builder.temporal.activities import pipeline_activities  # noqa: F401
from commission_builder.temporal.core.activity_registry import ActivityRegistry
from commission_builder.temporal.core.workflow_registry import WorkflowRegistry
from commission_builder.temporal.workflows import commission_pipeline  # noqa: F401
from commission_builder.utils.logging import get_logger

logger = get_logger(__name__)


async def connect_client(max_retries: int = 5, retry_delay: float = 5.0) -> Client:
    """Connect to Temporal, retrying while the server comes up."""
    settings = get_settings()
    for attempt in range(max_retries):
        try:
            logger.info(
                f"Connecting to Temporal server at {settings.temporal_target} "
                f"(Attempt {attempt + 1}/{max_retries})"
            )
            return await Client.connect(
                target_host=settings.temporal_target,
                namespace=settings.temporal.namespace,
            )
        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}. Retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error(f"Failed to connect to Temporal server after {max_retries} attempts: {e}")
                raise


def build_worker(client: Client, task_queue: str) -> Worker:
    workflows = [metadata.workflow_class for metadata in WorkflowRegistry.get_all_workflows().values()]
    activities = list(ActivityRegistry.get_all_activities().values())
    logger.info(f"Registered {len(workflows)} workflows and {len(activities)} activities")
    return Worker(
        client,
        task_queue=task_queue,
        workflows=workflows,
        activities=activities,
        # One pipeline run at a time; steps are sequential
        max_concurrent_activities=1,
    )


async def main():
    """Start the Temporal worker."""
    settings = get_settings()
    client = await connect_client()
    worker = build_worker(client, settings.temporal.task_queue)

    logger.info(f"Worker polling queue '{settings.temporal.task_queue}'")
    await worker.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        raise
