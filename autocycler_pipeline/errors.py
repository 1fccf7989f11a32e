from pathlib import Path
from typing import Optional


class PipelineError(RuntimeError):
    """Base class for errors raised while driving the assembly pipeline."""


class NoInputFound(PipelineError):
    """The reads directory held no recognised read files."""


class ToolNotFound(PipelineError):
    """A required external executable is not on PATH."""


class EstimationFailed(PipelineError):
    """Genome size could not be derived from the reads."""


class UpstreamArtifactMissing(PipelineError):
    """A stage's input artifact was never produced, so the stage is skipped."""

    def __init__(self, path: Path, detail: Optional[str] = None):
        self.path = Path(path)
        super().__init__(detail or f"expected input not found: {self.path}")


class StageFailed(PipelineError):
    """An external tool invocation failed for one work item."""

    def __init__(self, stage_name: str, item_id: str, reason: str = ""):
        self.stage_name = stage_name
        self.item_id = item_id
        message = f"Stage {stage_name} failed for {item_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class DependencyUnsatisfied(PipelineError):
    """A stage was about to run while a stage it requires is incomplete."""

    def __init__(self, stage_name: str, item_id: str, dependency: str):
        self.stage_name = stage_name
        self.item_id = item_id
        self.dependency = dependency
        super().__init__(
            f"Stage {stage_name} for {item_id} requires {dependency}, "
            f"whose output is missing"
        )
