"""Agent executors: the boundary between the orchestrator and whoever does a stage's work.

An executor receives a stage name and the contents of that stage's input
artifacts and returns a mapping of output artifact id to content. Failures are
reported by raising :class:`~agentpipe.errors.ExecutorError`.
"""

from __future__ import annotations

import importlib
import os
import pkgutil
import subprocess
import threading
from types import ModuleType
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Protocol, Union

from .errors import ConfigurationError, ExecutorError, ExecutorTimeoutError
from .logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from .core import StageSpec
    from .store import ArtifactStore


log = get_logger("agentpipe.executors")

Handler = Callable[[Mapping[str, str]], Mapping[str, str]]


class AgentExecutor(Protocol):
    def execute(self, stage_name: str, inputs: Mapping[str, str]) -> Mapping[str, str]:
        ...


def handles(stage_name: str):
    """Decorator marking a function as the in-process handler for a stage.

    The wrapped function receives the input artifact contents and returns the
    output artifact contents.
    """

    def deco(fn: Handler):
        setattr(fn, "_stage_handler", stage_name)
        return fn

    return deco


def _import_handlers(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except Exception as e:  # noqa: BLE001
        log.warning("Failed to import %s: %s", name, e)
        raise ConfigurationError(f"Cannot import handlers module '{name}': {e}") from e


class FunctionExecutor:
    def __init__(self, handlers: Mapping[str, Handler] | None = None):
        self.handlers: dict[str, Handler] = dict(handlers or {})

    def register(self, stage_name: str, fn: Handler) -> None:
        self.handlers[stage_name] = fn

    @classmethod
    def from_module(cls, module: Union[str, ModuleType]) -> "FunctionExecutor":
        """Collect ``@handles`` functions from a module or every module of a package."""
        mod = _import_handlers(module) if isinstance(module, str) else module
        modules = [mod]
        if hasattr(mod, "__path__"):
            for m in pkgutil.iter_modules(mod.__path__, prefix=f"{mod.__name__}."):
                modules.append(_import_handlers(m.name))
        executor = cls()
        for m in modules:
            for attr_name in dir(m):
                obj = getattr(m, attr_name)
                stage_name = getattr(obj, "_stage_handler", None)
                if isinstance(stage_name, str) and callable(obj):
                    executor.register(stage_name, obj)
        log.debug("Collected handlers: %s", ", ".join(sorted(executor.handlers)))
        return executor

    def execute(self, stage_name: str, inputs: Mapping[str, str]) -> Mapping[str, str]:
        fn = self.handlers.get(stage_name)
        if fn is None:
            raise ExecutorError(stage_name, "no handler registered")
        return fn(inputs)


class TimeoutExecutor:
    """Bounds another executor's wall-clock time.

    The wrapped call runs on a daemon thread, so a timed-out call neither
    blocks the caller nor keeps the process alive; stopping the work itself
    is up to the wrapped executor.
    """

    def __init__(self, inner: AgentExecutor, timeout: float):
        self.inner = inner
        self.timeout = timeout

    def execute(self, stage_name: str, inputs: Mapping[str, str]) -> Mapping[str, str]:
        outcome: dict = {}

        def target():
            try:
                outcome["result"] = self.inner.execute(stage_name, inputs)
            except Exception as e:  # noqa: BLE001
                outcome["error"] = e

        worker = threading.Thread(target=target, name=f"agentpipe-{stage_name}", daemon=True)
        worker.start()
        worker.join(self.timeout)
        if worker.is_alive():
            raise ExecutorTimeoutError(stage_name, self.timeout)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]


class ManualExecutor:
    """Human-in-the-loop executor.

    The operator (or an AI chat tool acting on the stage's prompt) writes the
    stage's outputs into the workspace; advancing the stage collects them.
    """

    def __init__(self, stages: Iterable["StageSpec"], store: "ArtifactStore"):
        stages = list(stages)
        self.outputs = {s.name: tuple(s.produced_outputs) for s in stages}
        self.capabilities = {s.name: s.capability for s in stages}
        self.store = store

    def collect(self, stage_name: str) -> dict[str, str]:
        if stage_name not in self.outputs:
            raise ExecutorError(stage_name, "unknown stage")
        missing = [a for a in self.outputs[stage_name] if not self.store.exists(a)]
        if missing:
            waiting = ", ".join(f"{a} ({self.store.location(a)})" for a in missing)
            raise ExecutorError(stage_name, f"waiting for outputs: {waiting}")
        return {a: self.store.read(a) for a in self.outputs[stage_name]}

    def execute(self, stage_name: str, inputs: Mapping[str, str]) -> Mapping[str, str]:
        return self.collect(stage_name)


class CommandExecutor(ManualExecutor):
    """Runs a configured shell command per capability, then collects its outputs.

    The command runs in the workspace with AGENTPIPE_STAGE, AGENTPIPE_CAPABILITY,
    AGENTPIPE_WORKSPACE, AGENTPIPE_INPUTS and AGENTPIPE_OUTPUTS in its
    environment (paths joined with ``os.pathsep``).
    """

    def __init__(
        self,
        stages: Iterable["StageSpec"],
        store: "ArtifactStore",
        commands: Mapping[str, str],
        timeout: float | None = None,
    ):
        super().__init__(stages, store)
        self.commands = dict(commands)
        self.timeout = timeout

    def _command_for(self, stage_name: str) -> str:
        capability = self.capabilities.get(stage_name, stage_name)
        command = self.commands.get(capability) or self.commands.get(stage_name)
        if not command:
            raise ExecutorError(stage_name, f"no command configured for '{capability}'")
        return command

    def execute(self, stage_name: str, inputs: Mapping[str, str]) -> Mapping[str, str]:
        command = self._command_for(stage_name)
        env = dict(os.environ)
        env.update(
            {
                "AGENTPIPE_STAGE": stage_name,
                "AGENTPIPE_CAPABILITY": self.capabilities.get(stage_name, stage_name),
                "AGENTPIPE_WORKSPACE": str(self.store.root),
                "AGENTPIPE_INPUTS": os.pathsep.join(
                    str(self.store.path_for(a)) for a in inputs
                ),
                "AGENTPIPE_OUTPUTS": os.pathsep.join(
                    str(self.store.path_for(a)) for a in self.outputs.get(stage_name, ())
                ),
            }
        )
        log.info("Exec [%s]: %s", stage_name, command)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=self.store.root,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutorTimeoutError(stage_name, self.timeout or 0) from None
        except OSError as e:
            raise ExecutorError(stage_name, str(e)) from e
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "").strip().splitlines()[-5:]
            detail = " | ".join(tail) or "no output"
            raise ExecutorError(
                stage_name, f"command exited with {proc.returncode}: {detail}"
            )
        return self.collect(stage_name)
