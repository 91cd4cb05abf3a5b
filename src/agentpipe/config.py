from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

import yaml

from .catalog import ARTIFACT_LOCATIONS, get_variant
from .core import Orchestrator, StageSpec
from .errors import ConfigurationError
from .executors import AgentExecutor, CommandExecutor, FunctionExecutor, ManualExecutor
from .store import ArtifactStore, RunStore
from .utils import _get, slugify


DEFAULT_CONFIG = "agentpipe.yaml"
EXECUTOR_KINDS = ("manual", "command", "python")


def load_config(path: str | Path | None) -> dict:
    """Read a YAML config; a missing default config yields the built-in defaults."""
    p = Path(path or DEFAULT_CONFIG)
    if not p.exists():
        if path and str(path) != DEFAULT_CONFIG:
            raise ConfigurationError(f"Config file not found: {p}")
        return {}
    with open(p, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {p} must be a mapping at the top level")
    return data


@dataclass
class PipelineConfig:
    name: str = "integration"
    variant: str = "linear"
    stages: tuple[StageSpec, ...] = ()
    locations: Dict[str, str] = field(default_factory=lambda: dict(ARTIFACT_LOCATIONS))
    workspace: Path = Path(".")
    runs_dir: Path = Path("runs")
    executor_kind: str = "manual"
    timeout: float | None = None
    commands: Dict[str, str] = field(default_factory=dict)
    handlers_module: str | None = None

    @classmethod
    def from_dict(cls, raw: dict, variant: str | None = None) -> "PipelineConfig":
        name = slugify(_get(raw, "pipeline", "name", default="integration"))
        override = variant
        variant = variant or _get(raw, "pipeline", "variant", default="linear")

        # An explicitly requested variant wins over configured stages
        stage_records = raw.get("stages")
        if stage_records and not override:
            if not isinstance(stage_records, list) or not all(
                isinstance(s, dict) for s in stage_records
            ):
                raise ConfigurationError("`stages` must be a list of mappings")
            stages = tuple(StageSpec.from_dict(s) for s in stage_records)
            variant = "custom"
        else:
            stages = get_variant(variant)

        locations = dict(ARTIFACT_LOCATIONS)
        locations.update({str(k): str(v) for k, v in (raw.get("artifacts") or {}).items()})

        kind = _get(raw, "executor", "kind", default="manual")
        if kind not in EXECUTOR_KINDS:
            raise ConfigurationError(
                f"Unknown executor kind '{kind}' (choose from: {', '.join(EXECUTOR_KINDS)})"
            )
        commands = _get(raw, "executor", "commands", default={}) or {}
        if kind == "command" and not commands:
            raise ConfigurationError("executor.kind 'command' needs executor.commands")
        module = _get(raw, "executor", "module")
        if kind == "python" and not module:
            raise ConfigurationError("executor.kind 'python' needs executor.module")
        timeout = float(_get(raw, "executor", "timeout", default=0) or 0)

        return cls(
            name=name,
            variant=variant,
            stages=stages,
            locations=locations,
            workspace=Path(os.getenv("AGENTPIPE_WORKSPACE") or raw.get("workspace") or "."),
            runs_dir=Path(os.getenv("AGENTPIPE_RUNS_DIR") or raw.get("runs_dir") or "runs"),
            executor_kind=kind,
            timeout=timeout or None,
            commands={str(k): str(v) for k, v in commands.items()},
            handlers_module=module,
        )

    def artifact_store(self) -> ArtifactStore:
        return ArtifactStore(self.workspace, self.locations)

    def run_store(self) -> RunStore:
        return RunStore(self.runs_dir, self.name)

    def build_executor(self) -> AgentExecutor:
        if self.executor_kind == "command":
            return CommandExecutor(
                self.stages, self.artifact_store(), self.commands, timeout=self.timeout
            )
        if self.executor_kind == "python":
            return FunctionExecutor.from_module(self.handlers_module)
        return ManualExecutor(self.stages, self.artifact_store())

    def orchestrator(self, log_file: Path | None = None) -> Orchestrator:
        # Commands enforce their own timeout so the subprocess gets killed
        timeout = self.timeout if self.executor_kind == "python" else None
        return Orchestrator(
            self.build_executor(),
            timeout=timeout,
            locations=self.locations,
            name=self.name,
            log_file=log_file,
        )
