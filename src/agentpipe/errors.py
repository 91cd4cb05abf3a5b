from __future__ import annotations

from typing import Iterable


class AgentPipeError(Exception):
    """Base class for every error raised by agentpipe."""


class ConfigurationError(AgentPipeError):
    """Stage configuration cannot be satisfied; no run is created."""

    def __init__(self, message: str, stage: str | None = None, artifact: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.artifact = artifact


class MissingArtifactError(AgentPipeError):
    def __init__(self, stage: str, missing: Iterable[str]):
        self.stage = stage
        self.missing = list(missing)
        super().__init__(
            f"Stage '{stage}' is missing required artifact(s): {', '.join(self.missing)}"
        )


class ExecutorError(AgentPipeError):
    """The agent executor failed to produce a stage's outputs."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"Executor failed on stage '{stage}': {message}")


class ExecutorTimeoutError(ExecutorError):
    """The executor did not answer within the configured timeout.

    This is an :class:`ExecutorError`, not the builtin :class:`TimeoutError`;
    catch ``ExecutorError`` (or this class) to handle it.
    """

    def __init__(self, stage: str, timeout: float):
        self.timeout = timeout
        super().__init__(stage, f"no response within {timeout:g}s")


class RunNotFoundError(AgentPipeError):
    pass
