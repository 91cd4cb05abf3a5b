from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

from .core import PipelineRun
from .errors import RunNotFoundError


class ArtifactStore:
    """Artifacts as files under a workspace root.

    Locations are workspace-relative; a leading ``/`` is allowed so the
    documented paths (``/specs/docs/IDD.md``) can be used as-is. A location
    ending in ``/`` names a file-set directory.
    """

    def __init__(self, root: str | Path, locations: Mapping[str, str] | None = None):
        self.root = Path(root)
        self.locations = dict(locations or {})

    def location(self, artifact_id: str) -> str:
        return self.locations.get(artifact_id, artifact_id)

    def is_fileset(self, artifact_id: str) -> bool:
        return self.location(artifact_id).endswith("/")

    def path_for(self, artifact_id: str) -> Path:
        return self.root / self.location(artifact_id).lstrip("/")

    def _files(self, base: Path) -> list[Path]:
        files: list[Path] = []
        for root, _, names in os.walk(base):
            for name in names:
                files.append(Path(root) / name)
        return sorted(files)

    def exists(self, artifact_id: str) -> bool:
        p = self.path_for(artifact_id)
        if self.is_fileset(artifact_id):
            return p.is_dir() and bool(self._files(p))
        return p.is_file()

    def read(self, artifact_id: str) -> str:
        """File content, or for a file-set the sorted list of its relative paths."""
        p = self.path_for(artifact_id)
        if self.is_fileset(artifact_id):
            return "\n".join(str(f.relative_to(p).as_posix()) for f in self._files(p))
        return p.read_text(encoding="utf-8")


class RunStore:
    """Persists runs as ``<runs_dir>/<pipeline>/<run_id>/state.json``."""

    def __init__(self, runs_dir: str | Path, pipeline: str):
        self.base = Path(runs_dir) / pipeline

    def run_dir(self, run_id: str) -> Path:
        return self.base / run_id

    def log_file(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "run.log"

    def save(self, run: PipelineRun) -> Path:
        run_dir = self.run_dir(run.run_id)
        os.makedirs(run_dir, exist_ok=True)
        path = run_dir / "state.json"
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(run.to_dict(), f, indent=2)
        os.replace(tmp, path)
        return path

    def load(self, run_id: str) -> PipelineRun:
        path = self.run_dir(run_id) / "state.json"
        if not path.exists():
            raise RunNotFoundError(f"No saved run '{run_id}' under {self.base}")
        with open(path, "r", encoding="utf-8") as f:
            return PipelineRun.from_dict(json.load(f))

    def list_runs(self) -> list[str]:
        if not self.base.is_dir():
            return []
        return sorted(
            p.name for p in self.base.iterdir() if (p / "state.json").is_file()
        )

    def latest(self) -> PipelineRun:
        runs = self.list_runs()
        if not runs:
            raise RunNotFoundError(f"No saved runs under {self.base}")
        return self.load(runs[-1])
