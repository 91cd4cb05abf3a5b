from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv

from .catalog import role_for
from .config import DEFAULT_CONFIG, PipelineConfig, load_config
from .core import Artifact, Orchestrator, PipelineRun, StageStatus, run_with_retries
from .errors import AgentPipeError
from .logging import detach_file_handlers, get_logger
from .utils import new_run_id, sha256_text


app = typer.Typer(add_completion=False, help="Artifact-checked agent pipeline orchestrator")
log = get_logger("agentpipe.cli")

_MARKS = {
    StageStatus.PENDING: " ",
    StageStatus.RUNNING: ">",
    StageStatus.SUCCEEDED: "x",
    StageStatus.FAILED: "!",
    StageStatus.SKIPPED: "-",
}


@app.callback()
def _main():
    load_dotenv()


def _abort(message: str) -> None:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _load(config: str, variant: str = "") -> PipelineConfig:
    return PipelineConfig.from_dict(load_config(config), variant=variant or None)


def _orchestrator(cfg: PipelineConfig, run_id: str) -> Orchestrator:
    return cfg.orchestrator(log_file=cfg.run_store().log_file(run_id))


def _release(cfg: PipelineConfig) -> None:
    detach_file_handlers(get_logger(f"agentpipe.{cfg.name}"))


def _initial_artifacts(
    cfg: PipelineConfig, items: List[str], from_step: str
) -> dict[str, Artifact]:
    """Resolve ``--artifact`` options.

    ``id=path`` reads the given file; a bare ``id`` reads the artifact from its
    workspace location. With ``--from-step``, outputs of the skipped stages
    are picked up from the workspace when present.
    """
    store = cfg.artifact_store()
    out: dict[str, Artifact] = {}

    def from_workspace(artifact_id: str) -> Artifact:
        content = store.read(artifact_id)
        return Artifact(
            artifact_id=artifact_id,
            location=store.location(artifact_id),
            exists=True,
            content=content,
            digest=sha256_text(content),
        )

    for item in items:
        artifact_id, sep, path = item.partition("=")
        artifact_id = artifact_id.strip()
        if sep:
            p = Path(path.strip())
            if not p.is_file():
                _abort(f"Artifact file not found: {p}")
            content = p.read_text(encoding="utf-8")
            out[artifact_id] = Artifact(
                artifact_id=artifact_id,
                location=str(p),
                exists=True,
                content=content,
                digest=sha256_text(content),
            )
        elif store.exists(artifact_id):
            out[artifact_id] = from_workspace(artifact_id)
        else:
            _abort(f"Artifact '{artifact_id}' not found at {store.path_for(artifact_id)}")

    if from_step:
        names = [s.name for s in cfg.stages]
        if from_step in names:
            for stage in cfg.stages[: names.index(from_step)]:
                for artifact_id in stage.produced_outputs:
                    if artifact_id not in out and store.exists(artifact_id):
                        out[artifact_id] = from_workspace(artifact_id)
                        log.info("Using workspace copy of %s for skipped stage %s", artifact_id, stage.name)
    return out


def _supply(orch: Orchestrator, run: PipelineRun, artifacts: dict[str, Artifact]) -> None:
    for artifact_id, item in artifacts.items():
        orch.supply_artifact(run, artifact_id, item)


def _echo_summary(orch: Orchestrator, run: PipelineRun) -> None:
    summary = orch.status(run)
    if summary.cancelled:
        state = "cancelled"
    elif summary.terminal:
        state = "complete"
    elif summary.failure:
        state = f"halted at {summary.failure.stage}"
    else:
        state = f"next: {summary.current_stage}"
    typer.echo(f"Run {summary.run_id} ({summary.pipeline}) - {state}")
    for stage in run.stages:
        status = run.statuses[stage.name]
        typer.echo(f"  [{_MARKS[status]}] {stage.name:<16} {status.value}")
    typer.echo("Artifacts: " + (", ".join(summary.existing_artifacts) or "(none)"))
    if summary.outstanding_artifacts:
        typer.echo("Outstanding: " + ", ".join(summary.outstanding_artifacts))
    if summary.failure:
        typer.echo(f"Failure [{summary.failure.kind}]: {summary.failure.message}")


@app.command("stages")
def list_stages(
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    variant: str = typer.Option("", help="Built-in variant to show instead of the configured one"),
):
    """List configured stages with their inputs and outputs."""
    try:
        cfg = _load(config, variant)
    except AgentPipeError as e:
        _abort(str(e))
    typer.echo(f"Pipeline {cfg.name} ({cfg.variant}):")
    for stage in cfg.stages:
        typer.echo(f"- {stage.name} [{role_for(stage)}]")
        typer.echo(f"    needs:    {', '.join(stage.required_inputs) or '-'}")
        typer.echo(
            "    produces: "
            + (", ".join(f"{a} ({cfg.locations.get(a, a)})" for a in stage.produced_outputs) or "-")
        )


@app.command()
def start(
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    artifact: Optional[List[str]] = typer.Option(None, help="Initial artifact as id=path, or id to read it from the workspace"),
    from_step: str = typer.Option("", help="Start from this stage name"),
    until_step: str = typer.Option("", help="Stop after this stage name"),
):
    """Validate the configuration and save a new run."""
    try:
        cfg = _load(config)
        initial = _initial_artifacts(cfg, artifact or [], from_step)
        run_id = new_run_id()
        orch = _orchestrator(cfg, run_id)
        try:
            run = orch.start_run(
                cfg.stages,
                initial,
                run_id=run_id,
                from_stage=from_step or None,
                until_stage=until_step or None,
            )
            cfg.run_store().save(run)
        finally:
            _release(cfg)
    except AgentPipeError as e:
        _abort(str(e))
    typer.echo(run.run_id)


@app.command()
def advance(
    run_id: str = typer.Argument(..., help="Run to advance"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    artifact: Optional[List[str]] = typer.Option(None, help="Artifact to supply before advancing (id=path or id)"),
):
    """Run the current stage of a saved run once."""
    try:
        cfg = _load(config)
        store = cfg.run_store()
        run = store.load(run_id)
        supplied = _initial_artifacts(cfg, artifact or [], "")
        orch = _orchestrator(cfg, run_id)
        try:
            _supply(orch, run, supplied)
            orch.advance(run)
            store.save(run)
        finally:
            _release(cfg)
    except AgentPipeError as e:
        _abort(str(e))
    _echo_summary(orch, run)
    if run.is_halted:
        raise typer.Exit(code=1)


@app.command()
def run(
    run_id: str = typer.Argument("", help="Run to resume; a new run is started when omitted"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    artifact: Optional[List[str]] = typer.Option(None, help="Initial artifacts for a new run, or artifacts to supply to a resumed one (id=path or id)"),
    retries: int = typer.Option(0, help="Retries of a failed stage"),
    backoff: float = typer.Option(0.0, help="Seconds to wait between retries, multiplied by attempt"),
):
    """Run a pipeline until it completes or a stage fails."""
    try:
        cfg = _load(config)
        store = cfg.run_store()
        resume = bool(run_id)
        if resume:
            current = store.load(run_id)
        else:
            run_id = new_run_id()
        supplied = _initial_artifacts(cfg, artifact or [], "")
        orch = _orchestrator(cfg, run_id)
        try:
            if resume:
                _supply(orch, current, supplied)
            else:
                current = orch.start_run(cfg.stages, supplied, run_id=run_id)
            run_with_retries(orch, current, retries=retries, backoff=backoff)
            store.save(current)
        finally:
            _release(cfg)
    except AgentPipeError as e:
        _abort(str(e))
    _echo_summary(orch, current)
    if current.is_halted:
        raise typer.Exit(code=1)


@app.command()
def status(
    run_id: str = typer.Argument("", help="Run to show; latest when omitted"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
):
    """Show stage statuses and artifacts of a saved run."""
    try:
        cfg = _load(config)
        store = cfg.run_store()
        current = store.load(run_id) if run_id else store.latest()
        orch = cfg.orchestrator()
    except AgentPipeError as e:
        _abort(str(e))
    _echo_summary(orch, current)


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run to cancel"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
):
    """Mark a saved run cancelled; it will not advance again."""
    try:
        cfg = _load(config)
        store = cfg.run_store()
        current = store.load(run_id)
        cfg.orchestrator().cancel(current)
        store.save(current)
    except AgentPipeError as e:
        _abort(str(e))
    typer.echo(f"Run {run_id} cancelled" if current.cancelled else f"Run {run_id} already complete")


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
