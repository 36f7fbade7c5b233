"""Run and step state of the pipeline orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    UNKNOWN = "unknown"


class ResumeStrategy(str, Enum):
    FROM_FAILED_STEP = "from_failed_step"
    RESTART = "restart"


# Legal transitions; anything else is a PipelineStateError
RUN_TRANSITIONS: Dict[RunStatus, set] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.FAILED: {RunStatus.RUNNING},
    RunStatus.COMPLETED: set(),
}

STEP_TRANSITIONS: Dict[StepStatus, set] = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.FAILED: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.SKIPPED: {StepStatus.RUNNING},
    StepStatus.COMPLETED: set(),
}


@dataclass
class StepState:
    run_id: str
    step_number: int
    name: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    records_processed: int = 0
    error_message: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    output: Optional[Dict[str, Any]] = None


@dataclass
class RunState:
    run_id: str
    name: str
    status: RunStatus = RunStatus.PENDING
    total_steps: int = 0
    completed_steps: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    can_resume: bool = True
    config_snapshot: Optional[Dict[str, Any]] = None
    steps: List[StepState] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return sum(step.records_processed for step in self.steps)

    def first_incomplete_step(self) -> Optional[StepState]:
        for step in sorted(self.steps, key=lambda s: s.step_number):
            if step.status != StepStatus.COMPLETED:
                return step
        return None


@dataclass
class StepResult:
    """Standard result from step execution."""
    status: StepStatus
    records_processed: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
