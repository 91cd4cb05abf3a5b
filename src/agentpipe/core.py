from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Union

from .errors import (
    AgentPipeError,
    ConfigurationError,
    ExecutorError,
    MissingArtifactError,
)
from .executors import AgentExecutor, TimeoutExecutor
from .logging import get_logger
from .utils import new_run_id, sha256_text


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StageSpec:
    """One step of the agent sequence and the artifacts it consumes/produces."""

    name: str
    required_inputs: tuple[str, ...] = ()
    produced_outputs: tuple[str, ...] = ()
    capability: str = ""
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "required_inputs", tuple(self.required_inputs))
        object.__setattr__(self, "produced_outputs", tuple(self.produced_outputs))
        if not self.capability:
            object.__setattr__(self, "capability", self.name)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "requiredInputs": list(self.required_inputs),
            "producedOutputs": list(self.produced_outputs),
            "capability": self.capability,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "StageSpec":
        if not data.get("name"):
            raise ConfigurationError(f"Stage definition without a name: {dict(data)}")
        inputs = data.get("requiredInputs", data.get("required_inputs")) or []
        outputs = data.get("producedOutputs", data.get("produced_outputs")) or []
        if isinstance(inputs, str) or isinstance(outputs, str):
            raise ConfigurationError(
                f"Stage '{data['name']}': inputs and outputs must be lists", stage=data["name"]
            )
        return cls(
            name=str(data["name"]),
            required_inputs=tuple(str(i) for i in inputs),
            produced_outputs=tuple(str(o) for o in outputs),
            capability=str(data.get("capability") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass
class Artifact:
    artifact_id: str
    producer: str | None = None
    location: str = ""
    exists: bool = False
    content: str | None = None
    digest: str | None = None


@dataclass
class StageFailure:
    stage: str
    kind: str
    message: str
    missing: list[str] = field(default_factory=list)


@dataclass
class PipelineRun:
    run_id: str
    pipeline: str
    stages: tuple[StageSpec, ...]
    current_index: int = 0
    statuses: dict[str, StageStatus] = field(default_factory=dict)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    failure: StageFailure | None = None
    cancelled: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    # Last stage error as raised; not persisted, `failure` carries its summary
    error: AgentPipeError | None = field(default=None, repr=False, compare=False)

    @property
    def is_complete(self) -> bool:
        return all(
            self.statuses.get(s.name) in (StageStatus.SUCCEEDED, StageStatus.SKIPPED)
            for s in self.stages
        )

    @property
    def is_terminal(self) -> bool:
        return self.cancelled or self.is_complete

    @property
    def current_stage(self) -> StageSpec | None:
        if self.is_terminal or self.current_index >= len(self.stages):
            return None
        return self.stages[self.current_index]

    @property
    def is_halted(self) -> bool:
        stage = self.current_stage
        return stage is not None and self.statuses.get(stage.name) == StageStatus.FAILED

    def has_artifact(self, artifact_id: str) -> bool:
        art = self.artifacts.get(artifact_id)
        return art is not None and art.exists

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "stages": [s.to_dict() for s in self.stages],
            "current_index": self.current_index,
            "statuses": {k: v.value for k, v in self.statuses.items()},
            "artifacts": {k: asdict(v) for k, v in self.artifacts.items()},
            "attempts": dict(self.attempts),
            "failure": asdict(self.failure) if self.failure else None,
            "cancelled": self.cancelled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "PipelineRun":
        failure = data.get("failure")
        return cls(
            run_id=data["run_id"],
            pipeline=data.get("pipeline", "pipeline"),
            stages=tuple(StageSpec.from_dict(s) for s in data.get("stages", [])),
            current_index=int(data.get("current_index", 0)),
            statuses={k: StageStatus(v) for k, v in data.get("statuses", {}).items()},
            artifacts={
                k: Artifact(**v) for k, v in (data.get("artifacts") or {}).items()
            },
            attempts=dict(data.get("attempts") or {}),
            failure=StageFailure(**failure) if failure else None,
            cancelled=bool(data.get("cancelled", False)),
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at") or _now(),
        )


@dataclass
class RunSummary:
    run_id: str
    pipeline: str
    current_stage: str | None
    statuses: dict[str, str]
    existing_artifacts: list[str]
    outstanding_artifacts: list[str]
    failure: StageFailure | None
    terminal: bool
    cancelled: bool


InitialArtifacts = Mapping[str, Union[str, Artifact]]


def select_window(
    stages: tuple[StageSpec, ...], from_stage: str | None, until_stage: str | None
) -> tuple[int, int]:
    """Return the inclusive index range of stages selected to run."""
    names = [s.name for s in stages]
    start, end = 0, len(stages) - 1
    if from_stage:
        if from_stage not in names:
            raise ConfigurationError(f"Unknown stage: {from_stage}", stage=from_stage)
        start = names.index(from_stage)
    if until_stage:
        if until_stage not in names:
            raise ConfigurationError(f"Unknown stage: {until_stage}", stage=until_stage)
        end = names.index(until_stage)
    if end < start:
        raise ConfigurationError(
            f"Stage '{until_stage}' comes before '{from_stage}'", stage=until_stage
        )
    return start, end


def check_dependencies(stages: Iterable[StageSpec], available: Iterable[str]) -> None:
    """Raise ConfigurationError unless every input is produced upstream or supplied."""
    known = set(available)
    producers: dict[str, str] = {}
    seen: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise ConfigurationError(f"Duplicate stage name: {stage.name}", stage=stage.name)
        seen.add(stage.name)
        for artifact in stage.required_inputs:
            if artifact not in known:
                raise ConfigurationError(
                    f"Stage '{stage.name}' requires artifact '{artifact}' "
                    "which no earlier stage or initial artifact provides",
                    stage=stage.name,
                    artifact=artifact,
                )
        for artifact in stage.produced_outputs:
            if artifact in known:
                owner = producers.get(artifact, "the initial artifacts")
                raise ConfigurationError(
                    f"Stage '{stage.name}' produces artifact '{artifact}' "
                    f"already provided by {owner}",
                    stage=stage.name,
                    artifact=artifact,
                )
            producers[artifact] = stage.name
            known.add(artifact)


class Orchestrator:
    """Drives PipelineRuns one stage at a time through an agent executor.

    The orchestrator holds configuration only; all per-run state lives on the
    PipelineRun, so one orchestrator may serve several runs.
    """

    def __init__(
        self,
        executor: AgentExecutor,
        timeout: float | None = None,
        locations: Mapping[str, str] | None = None,
        name: str = "pipeline",
        log_file: Path | None = None,
    ):
        self.executor = TimeoutExecutor(executor, timeout) if timeout else executor
        self.timeout = timeout
        self.locations = dict(locations or {})
        self.name = name
        self.logger = get_logger(f"agentpipe.{self.name}", log_file)

    def _location(self, artifact_id: str) -> str:
        return self.locations.get(artifact_id, artifact_id)

    def _external(self, artifact_id: str, value: str | Artifact) -> Artifact:
        if isinstance(value, Artifact):
            return value
        return Artifact(
            artifact_id=artifact_id,
            producer=None,
            location=self._location(artifact_id),
            exists=True,
            content=value,
            digest=sha256_text(value),
        )

    def start_run(
        self,
        stage_definitions: Iterable[StageSpec],
        initial_artifacts: InitialArtifacts | None = None,
        run_id: str | None = None,
        from_stage: str | None = None,
        until_stage: str | None = None,
    ) -> PipelineRun:
        stages = tuple(stage_definitions)
        if not stages:
            raise ConfigurationError("No stages configured")

        registry = {
            artifact_id: self._external(artifact_id, value)
            for artifact_id, value in (initial_artifacts or {}).items()
        }

        start, end = select_window(stages, from_stage, until_stage)
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            dup = next(n for n in names if names.count(n) > 1)
            raise ConfigurationError(f"Duplicate stage name: {dup}", stage=dup)
        check_dependencies(
            stages[start : end + 1], [k for k, a in registry.items() if a.exists]
        )

        statuses = {}
        for idx, stage in enumerate(stages):
            inside = start <= idx <= end
            statuses[stage.name] = StageStatus.PENDING if inside else StageStatus.SKIPPED

        run = PipelineRun(
            run_id=run_id or new_run_id(),
            pipeline=self.name,
            stages=stages,
            current_index=start,
            statuses=statuses,
            artifacts=registry,
            attempts={s.name: 0 for s in stages},
        )
        self.logger.info(
            "Started run %s: %s",
            run.run_id,
            " → ".join(s.name for s in stages[start : end + 1]),
        )
        return run

    def supply_artifact(
        self, run: PipelineRun, artifact_id: str, value: str | Artifact
    ) -> PipelineRun:
        """Register an externally supplied artifact on an existing run.

        This is how a stage halted on a missing input is unblocked before the
        next ``advance``. Outputs of stages that still run cannot be supplied,
        and an artifact already registered is never replaced.
        """
        artifact = self._external(artifact_id, value)
        if not artifact.exists:
            raise ConfigurationError(
                f"Artifact '{artifact_id}' is flagged as missing", artifact=artifact_id
            )
        for stage in run.stages:
            if run.statuses.get(stage.name) == StageStatus.SKIPPED:
                continue
            if artifact_id in stage.produced_outputs:
                raise ConfigurationError(
                    f"Artifact '{artifact_id}' is produced by stage '{stage.name}'",
                    stage=stage.name,
                    artifact=artifact_id,
                )
        current = run.artifacts.get(artifact_id)
        if current is not None and current.exists:
            if current.digest == artifact.digest:
                return run
            raise ConfigurationError(
                f"Artifact '{artifact_id}' is already registered", artifact=artifact_id
            )
        run.artifacts[artifact_id] = artifact
        run.touch()
        self.logger.info("Run %s: supplied %s", run.run_id, artifact_id)
        return run

    def advance(self, run: PipelineRun, strict: bool = False) -> PipelineRun:
        """Run the current stage once and record the outcome on the run.

        Stage failures are recorded on ``run.failure`` and the stage status;
        with ``strict`` the underlying error is raised as well.
        """
        if run.is_terminal:
            return run
        stage = run.current_stage
        if stage is None:
            return run
        step_logger = get_logger(f"agentpipe.{run.pipeline}.{stage.name}")
        run.failure = None
        run.error = None

        missing = [a for a in stage.required_inputs if not run.has_artifact(a)]
        if missing:
            return self._fail(run, stage, MissingArtifactError(stage.name, missing), strict)

        run.statuses[stage.name] = StageStatus.RUNNING
        run.attempts[stage.name] = run.attempts.get(stage.name, 0) + 1
        run.touch()
        inputs = {a: run.artifacts[a].content or "" for a in stage.required_inputs}
        step_logger.info(
            "Run: %s (attempt %d)", stage.name, run.attempts[stage.name]
        )

        try:
            outputs = self.executor.execute(stage.name, inputs)
        except ExecutorError as e:
            return self._fail(run, stage, e, strict)
        except Exception as e:  # noqa: BLE001
            err = ExecutorError(stage.name, str(e) or type(e).__name__)
            err.__cause__ = e
            return self._fail(run, stage, err, strict)

        if not isinstance(outputs, Mapping):
            err = ExecutorError(
                stage.name, f"expected a mapping of outputs, got {type(outputs).__name__}"
            )
            return self._fail(run, stage, err, strict)
        absent = [o for o in stage.produced_outputs if outputs.get(o) is None]
        if absent:
            err = ExecutorError(stage.name, f"did not produce: {', '.join(absent)}")
            return self._fail(run, stage, err, strict)
        extra = sorted(set(outputs) - set(stage.produced_outputs))
        if extra:
            step_logger.debug("Ignoring undeclared outputs: %s", ", ".join(extra))

        for artifact_id in stage.produced_outputs:
            content = str(outputs[artifact_id])
            run.artifacts[artifact_id] = Artifact(
                artifact_id=artifact_id,
                producer=stage.name,
                location=self._location(artifact_id),
                exists=True,
                content=content,
                digest=sha256_text(content),
            )
        run.statuses[stage.name] = StageStatus.SUCCEEDED
        run.current_index += 1
        run.touch()
        step_logger.info(
            "Done: %s → %s", stage.name, ", ".join(stage.produced_outputs) or "(no outputs)"
        )
        if run.is_complete:
            self.logger.info("Run %s complete", run.run_id)
        return run

    def _fail(
        self, run: PipelineRun, stage: StageSpec, err: AgentPipeError, strict: bool
    ) -> PipelineRun:
        run.statuses[stage.name] = StageStatus.FAILED
        run.failure = StageFailure(
            stage=stage.name,
            kind=type(err).__name__,
            message=str(err),
            missing=list(getattr(err, "missing", [])),
        )
        run.error = err
        run.touch()
        get_logger(f"agentpipe.{run.pipeline}.{stage.name}").error("%s", err)
        if strict:
            raise err
        return run

    def run_to_completion(
        self, run: PipelineRun, cancel_event: threading.Event | None = None
    ) -> PipelineRun:
        """Advance until the run is terminal or a stage fails. Never retries."""
        while not run.is_terminal:
            if cancel_event is not None and cancel_event.is_set():
                self.cancel(run)
                break
            self.advance(run)
            if run.is_halted:
                break
        return run

    def cancel(self, run: PipelineRun) -> PipelineRun:
        if run.is_terminal:
            return run
        run.cancelled = True
        run.touch()
        stage = run.current_stage
        self.logger.warning(
            "Run %s cancelled before stage %s",
            run.run_id,
            stage.name if stage else "-",
        )
        return run

    def status(self, run: PipelineRun) -> RunSummary:
        outstanding = [
            a
            for s in run.stages
            if run.statuses.get(s.name) != StageStatus.SKIPPED
            for a in s.produced_outputs
            if not run.has_artifact(a)
        ]
        current = run.current_stage
        return RunSummary(
            run_id=run.run_id,
            pipeline=run.pipeline,
            current_stage=current.name if current else None,
            statuses={s.name: run.statuses[s.name].value for s in run.stages},
            existing_artifacts=[k for k, a in run.artifacts.items() if a.exists],
            outstanding_artifacts=outstanding,
            failure=run.failure,
            terminal=run.is_terminal,
            cancelled=run.cancelled,
        )


def run_with_retries(
    orchestrator: Orchestrator,
    run: PipelineRun,
    retries: int = 0,
    backoff: float = 0.0,
    cancel_event: threading.Event | None = None,
) -> PipelineRun:
    """Caller-side retry policy around ``run_to_completion``."""
    logger = get_logger(f"agentpipe.{run.pipeline}")
    attempt = 0
    while True:
        orchestrator.run_to_completion(run, cancel_event=cancel_event)
        if not run.is_halted:
            return run
        attempt += 1
        if attempt > retries:
            return run
        logger.warning(
            "Stage failed (%s), retry %d/%d",
            run.failure.stage if run.failure else "-",
            attempt,
            retries,
        )
        if backoff:
            time.sleep(backoff * attempt)
