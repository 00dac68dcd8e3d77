from .outcome import ProcessOutcome
from .runtime import PipelineRuntime, build_runtime

__all__ = ["PipelineRuntime", "ProcessOutcome", "build_runtime"]
