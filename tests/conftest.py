"""Shared fixtures for agentpipe tests."""

import pytest

from agentpipe.core import Orchestrator, StageSpec
from agentpipe.errors import ExecutorError


class RecordingExecutor:
    """Echoes each stage's declared outputs and records every call."""

    def __init__(self, stages, fail_on=()):
        self.outputs = {s.name: s.produced_outputs for s in stages}
        self.fail_on = set(fail_on)
        self.calls = []

    def execute(self, stage_name, inputs):
        self.calls.append((stage_name, dict(inputs)))
        if stage_name in self.fail_on:
            raise ExecutorError(stage_name, "agent unavailable")
        return {a: f"{a} from {stage_name}" for a in self.outputs[stage_name]}

    @property
    def called_stages(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def five_stages():
    return (
        StageSpec("discovery", (), ("D",)),
        StageSpec("architecture", ("D",), ("A",)),
        StageSpec("development", ("D", "A"), ("P", "S")),
        StageSpec("testing", ("A", "S"), ("T",)),
        StageSpec("documentation", ("D", "A", "P", "S", "T"), ("Readme",)),
    )


@pytest.fixture
def executor(five_stages):
    return RecordingExecutor(five_stages)


@pytest.fixture
def orchestrator(executor):
    return Orchestrator(executor, name="test")


@pytest.fixture
def make_executor():
    return RecordingExecutor
