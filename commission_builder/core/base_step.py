"""Base step interface for all pipeline steps."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

from commission_builder.models.pipeline import StepResult

if TYPE_CHECKING:
    from commission_builder.pipeline.steps import PipelineContext


class BaseStep(ABC):
    """Base class for pipeline steps.

    Steps must be safe to re-execute: resume and retries run a step again
    from scratch.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Step name as persisted in pipeline_steps."""
        pass

    @abstractmethod
    async def execute(self, context: "PipelineContext") -> StepResult:
        """Execute the step."""
        pass

    def restore(self, context: "PipelineContext", output: Dict[str, Any]) -> None:
        """Reload the persisted ``StepResult.data`` of a completed step.

        Called on resume for steps that are not re-executed.
        """
        pass
