"""Shared constants for Temporal workflows."""

# Task Queues
DEFAULT_TASK_QUEUE = "commission-pipeline-queue"

# Timeouts
DEFAULT_WORKFLOW_TIMEOUT_SECONDS = 6 * 3600  # 6 hours
CREATE_RUN_TIMEOUT_SECONDS = 60
EXECUTE_RUN_TIMEOUT_SECONDS = 4 * 3600  # 4 hours
EXECUTE_RUN_HEARTBEAT_SECONDS = 120
EXECUTE_RUN_HEARTBEAT_INTERVAL_SECONDS = 30  # well inside the heartbeat timeout

# Error types raised by activities
FATAL_PIPELINE_ERROR = "FatalPipelineError"
RESUMABLE_PIPELINE_ERROR = "ResumablePipelineError"
