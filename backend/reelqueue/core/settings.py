"""Runtime paths and static app settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    backend_root: Path
    runtime_root: Path
    uploads_root: Path
    assets_root: Path
    staging_root: Path
    config_path: Path
    db_path: Path
    queue_path: Path


def build_paths() -> AppPaths:
    backend_root = Path(__file__).resolve().parents[2]
    project_root = backend_root.parent
    override = os.environ.get("REELQUEUE_RUNTIME_ROOT", "").strip()
    runtime_root = Path(override).resolve() if override else project_root / "runtime"
    uploads_root = runtime_root / "uploads"
    assets_root = runtime_root / "assets"
    staging_root = runtime_root / "staging"

    for path in (runtime_root, uploads_root, assets_root, staging_root):
        path.mkdir(parents=True, exist_ok=True)

    return AppPaths(
        project_root=project_root,
        backend_root=backend_root,
        runtime_root=runtime_root,
        uploads_root=uploads_root,
        assets_root=assets_root,
        staging_root=staging_root,
        config_path=runtime_root / "config.json",
        db_path=runtime_root / "app.sqlite3",
        queue_path=runtime_root / "queue.sqlite",
    )


APP_VERSION = "0.1.0"
PATHS = build_paths()
