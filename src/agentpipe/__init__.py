"""Artifact-checked orchestrator for the Azure integration agent pipeline.

Sequences agent stages (discovery, architecture, development, testing,
documentation), checks each stage's input artifacts before it runs, and keeps
run state resumable. The agents themselves sit behind the executor interface.
"""

from .core import (
    Artifact,
    Orchestrator,
    PipelineRun,
    RunSummary,
    StageFailure,
    StageSpec,
    StageStatus,
    run_with_retries,
)
from .errors import (
    AgentPipeError,
    ConfigurationError,
    ExecutorError,
    ExecutorTimeoutError,
    MissingArtifactError,
    RunNotFoundError,
)
from .executors import (
    CommandExecutor,
    FunctionExecutor,
    ManualExecutor,
    TimeoutExecutor,
    handles,
)

__all__ = [
    "Artifact",
    "Orchestrator",
    "PipelineRun",
    "RunSummary",
    "StageFailure",
    "StageSpec",
    "StageStatus",
    "run_with_retries",
    "AgentPipeError",
    "ConfigurationError",
    "ExecutorError",
    "ExecutorTimeoutError",
    "MissingArtifactError",
    "RunNotFoundError",
    "CommandExecutor",
    "FunctionExecutor",
    "ManualExecutor",
    "TimeoutExecutor",
    "handles",
]
