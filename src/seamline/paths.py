"""Path helpers for locating seamline data directories and files."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from platformdirs import user_data_dir

SEAMLINE_APP_NAME = "seamline"
PROJECTS_DIRNAME = "projects"
WORKTREES_DIRNAME = "worktrees"
CONFIG_FILENAME = "config.json"
REGISTRY_FILENAME = "workspaces.json"
MONITOR_STATE_FILENAME = "monitor.json"


def seamline_data_dir() -> Path:
    """Return the base seamline data directory.

    Example:
        >>> isinstance(seamline_data_dir(), Path)
        True
    """
    return Path(user_data_dir(SEAMLINE_APP_NAME))


def project_key(repo_root: Path) -> str:
    """Return a stable, readable key for a repository root.

    Example:
        >>> project_key(Path("/work/My Repo"))[:8]
        'my-repo-'
    """
    resolved = repo_root.expanduser().resolve().as_posix()
    slug = re.sub(r"[^a-z0-9._-]+", "-", repo_root.name.lower()).strip("-") or "repo"
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def project_dir(repo_root: Path, *, data_dir: Path | None = None) -> Path:
    """Return the per-repository data directory."""
    base = data_dir if data_dir is not None else seamline_data_dir()
    return base / PROJECTS_DIRNAME / project_key(repo_root)


def worktrees_dir(project_path: Path) -> Path:
    """Return the directory holding workspace worktrees.

    Example:
        >>> worktrees_dir(Path("/tmp/project")).name == WORKTREES_DIRNAME
        True
    """
    return project_path / WORKTREES_DIRNAME


def config_path(project_path: Path) -> Path:
    return project_path / CONFIG_FILENAME


def registry_path(project_path: Path) -> Path:
    return project_path / REGISTRY_FILENAME


def monitor_state_path(project_path: Path) -> Path:
    return project_path / MONITOR_STATE_FILENAME
