"""Tests for agentpipe.executors."""

import os
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

import agentpipe
from agentpipe.core import StageSpec
from agentpipe.errors import ConfigurationError, ExecutorError, ExecutorTimeoutError
from agentpipe.executors import (
    CommandExecutor,
    FunctionExecutor,
    ManualExecutor,
    TimeoutExecutor,
    handles,
)
from agentpipe.store import ArtifactStore


STAGES = [
    StageSpec("discovery", (), ("idd",), capability="discovery-analyst"),
    StageSpec("development", ("idd",), ("plan", "source"), capability="integration-developer"),
]
LOCATIONS = {"idd": "/specs/docs/IDD.md", "plan": "/specs/plans/dev-plan.md", "source": "/src/"}

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path, LOCATIONS)


class TestFunctionExecutor:
    def test_dispatches_to_registered_handler(self):
        executor = FunctionExecutor({"discovery": lambda inputs: {"idd": "# IDD"}})
        assert executor.execute("discovery", {}) == {"idd": "# IDD"}

    def test_unknown_stage(self):
        with pytest.raises(ExecutorError, match="no handler"):
            FunctionExecutor().execute("discovery", {})

    def test_handles_decorator_marks_function(self):
        @handles("architecture")
        def architect(inputs):
            return {"ird": inputs["idd"].upper()}

        assert architect._stage_handler == "architecture"
        executor = FunctionExecutor()
        executor.register("architecture", architect)
        assert executor.execute("architecture", {"idd": "x"}) == {"ird": "X"}

    def test_from_module_collects_handlers(self, tmp_path, monkeypatch):
        pkg = tmp_path / "fake_agents"
        pkg.mkdir()
        (pkg / "__init__.py").write_text("")
        (pkg / "analyst.py").write_text(
            textwrap.dedent(
                """
                from agentpipe.executors import handles

                @handles("discovery")
                def discover(inputs):
                    return {"idd": "found"}

                def helper():
                    return None
                """
            )
        )
        monkeypatch.syspath_prepend(str(tmp_path))

        executor = FunctionExecutor.from_module("fake_agents")

        assert set(executor.handlers) == {"discovery"}
        assert executor.execute("discovery", {}) == {"idd": "found"}

    def test_from_module_unknown_module(self):
        with pytest.raises(ConfigurationError, match="no_such_agents_module"):
            FunctionExecutor.from_module("no_such_agents_module")

    def test_from_module_broken_submodule(self, tmp_path, monkeypatch):
        pkg = tmp_path / "broken_agents"
        pkg.mkdir()
        (pkg / "__init__.py").write_text("")
        (pkg / "architect.py").write_text("import not_installed_dependency\n")
        monkeypatch.syspath_prepend(str(tmp_path))

        with pytest.raises(ConfigurationError) as exc:
            FunctionExecutor.from_module("broken_agents")

        assert "broken_agents.architect" in str(exc.value)
        assert isinstance(exc.value.__cause__, ImportError)


SLOW_RUN = textwrap.dedent(
    """
    import time
    from agentpipe.core import Orchestrator, StageSpec

    class Slow:
        def execute(self, stage_name, inputs):
            time.sleep(5)
            return {"D": "late"}

    orch = Orchestrator(Slow(), timeout=0.2)
    run = orch.start_run([StageSpec("discovery", (), ("D",))])
    orch.advance(run)
    print(run.statuses["discovery"].value, run.failure.kind)
    """
)


class TestTimeoutExecutor:
    def test_passes_result_through(self):
        inner = FunctionExecutor({"discovery": lambda inputs: {"idd": "ok"}})
        assert TimeoutExecutor(inner, 1.0).execute("discovery", {}) == {"idd": "ok"}

    def test_raises_on_timeout(self):
        release = threading.Event()
        inner = FunctionExecutor({"discovery": lambda inputs: release.wait(5) and {}})
        try:
            with pytest.raises(ExecutorTimeoutError) as exc:
                TimeoutExecutor(inner, 0.05).execute("discovery", {})
        finally:
            release.set()
        assert exc.value.stage == "discovery"
        assert exc.value.timeout == 0.05
        assert isinstance(exc.value, ExecutorError)
        assert not isinstance(exc.value, TimeoutError)

    def test_timed_out_call_does_not_block_exit(self):
        src = str(Path(agentpipe.__file__).resolve().parents[1])
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(p for p in (src, env.get("PYTHONPATH")) if p)
        started = time.monotonic()
        proc = subprocess.run(
            [sys.executable, "-c", SLOW_RUN],
            capture_output=True,
            text=True,
            env=env,
            timeout=30,
        )
        elapsed = time.monotonic() - started
        assert proc.returncode == 0, proc.stderr
        assert proc.stdout.split() == ["failed", "ExecutorTimeoutError"]
        assert elapsed < 4, f"process exited {elapsed:.1f}s after a 0.2s timeout"

    def test_inner_errors_propagate(self):
        def fail(inputs):
            raise ExecutorError("discovery", "nope")

        with pytest.raises(ExecutorError, match="nope"):
            TimeoutExecutor(FunctionExecutor({"discovery": fail}), 1.0).execute("discovery", {})


class TestManualExecutor:
    def test_waits_for_outputs(self, store):
        executor = ManualExecutor(STAGES, store)
        with pytest.raises(ExecutorError) as exc:
            executor.execute("discovery", {})
        assert "/specs/docs/IDD.md" in str(exc.value)

    def test_collects_written_outputs(self, store, tmp_path):
        (tmp_path / "specs" / "plans").mkdir(parents=True)
        (tmp_path / "specs" / "plans" / "dev-plan.md").write_text("plan")
        (tmp_path / "src" / "infra").mkdir(parents=True)
        (tmp_path / "src" / "infra" / "main.bicep").write_text("resource")

        out = ManualExecutor(STAGES, store).execute("development", {"idd": "x"})

        assert out == {"plan": "plan", "source": "infra/main.bicep"}

    def test_partial_outputs_reported(self, store, tmp_path):
        (tmp_path / "specs" / "plans").mkdir(parents=True)
        (tmp_path / "specs" / "plans" / "dev-plan.md").write_text("plan")
        with pytest.raises(ExecutorError) as exc:
            ManualExecutor(STAGES, store).execute("development", {})
        assert "source" in str(exc.value)
        assert "plan (" not in str(exc.value)

    def test_unknown_stage(self, store):
        with pytest.raises(ExecutorError, match="unknown stage"):
            ManualExecutor(STAGES, store).execute("deploy", {})


@posix_only
class TestCommandExecutor:
    def test_runs_command_and_collects(self, store, tmp_path):
        commands = {
            "discovery-analyst": 'mkdir -p specs/docs && printf "# IDD for $AGENTPIPE_STAGE" > specs/docs/IDD.md'
        }
        out = CommandExecutor(STAGES, store, commands).execute("discovery", {})
        assert out == {"idd": "# IDD for discovery"}

    def test_stage_name_fallback(self, store):
        commands = {"discovery": "mkdir -p specs/docs && echo idd > specs/docs/IDD.md"}
        out = CommandExecutor(STAGES, store, commands).execute("discovery", {})
        assert out["idd"].strip() == "idd"

    def test_environment_lists_paths(self, store, tmp_path):
        commands = {
            "integration-developer": (
                'mkdir -p specs/plans src && echo "$AGENTPIPE_INPUTS" > specs/plans/dev-plan.md'
                ' && echo "$AGENTPIPE_OUTPUTS" > src/outputs.txt'
            )
        }
        out = CommandExecutor(STAGES, store, commands).execute("development", {"idd": "x"})
        assert out["plan"].strip().endswith("specs/docs/IDD.md")
        assert (tmp_path / "src" / "outputs.txt").read_text().count("dev-plan.md") == 1

    def test_non_zero_exit(self, store):
        commands = {"discovery-analyst": "echo 'model quota exceeded' >&2; exit 3"}
        with pytest.raises(ExecutorError) as exc:
            CommandExecutor(STAGES, store, commands).execute("discovery", {})
        assert "exited with 3" in str(exc.value)
        assert "model quota exceeded" in str(exc.value)

    def test_missing_command(self, store):
        with pytest.raises(ExecutorError, match="no command configured"):
            CommandExecutor(STAGES, store, {}).execute("discovery", {})

    def test_timeout(self, store):
        commands = {"discovery-analyst": "sleep 5"}
        with pytest.raises(ExecutorTimeoutError):
            CommandExecutor(STAGES, store, commands, timeout=0.2).execute("discovery", {})

    def test_succeeds_without_writing_outputs(self, store):
        commands = {"discovery-analyst": "true"}
        with pytest.raises(ExecutorError, match="waiting for outputs"):
            CommandExecutor(STAGES, store, commands).execute("discovery", {})
