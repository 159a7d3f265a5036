from __future__ import annotations

from pathlib import Path

WAYLOG_DIR_NAME = ".waylog"


def waylog_dir(project_dir: Path) -> Path:
    return project_dir / WAYLOG_DIR_NAME


def history_dir(project_dir: Path) -> Path:
    return waylog_dir(project_dir) / "history"


def state_path(project_dir: Path) -> Path:
    return waylog_dir(project_dir) / "state.json"


def config_path(project_dir: Path) -> Path:
    return waylog_dir(project_dir) / "config.json"


def lock_dir(project_dir: Path) -> Path:
    return waylog_dir(project_dir) / "locks"


def log_path(project_dir: Path) -> Path:
    return waylog_dir(project_dir) / "waylog.log"


def relative_to_project(path: Path, project_dir: Path) -> str:
    """Ledger paths are stored relative to the project so the project can move."""
    try:
        return path.resolve().relative_to(project_dir.resolve()).as_posix()
    except ValueError:
        return str(path)


def resolve_in_project(stored: str, project_dir: Path) -> Path:
    path = Path(stored)
    if path.is_absolute():
        return path
    return project_dir / path
