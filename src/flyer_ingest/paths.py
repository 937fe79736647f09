"""Where the pipeline keeps its state on disk: everything lives under <project-root>/var."""

import os
from typing import Optional

from .logging import get_logger

log = get_logger("paths")

ROOT_MARKERS = ("pyproject.toml", "README.md")


def find_project_root(start_dir: Optional[str] = None) -> str:
    """Walk upward from start_dir to the first directory holding .git/ or a root marker.

    Falls back to start_dir itself when no marker is found.
    """
    start = os.path.abspath(start_dir or os.getcwd() or ".")
    d = start
    while True:
        if os.path.isdir(os.path.join(d, ".git")) or any(
            os.path.isfile(os.path.join(d, marker)) for marker in ROOT_MARKERS
        ):
            return d
        parent = os.path.dirname(d)
        if parent == d:
            log.debug(f"No project marker found above {start}; using it as root")
            return start
        d = parent


def var_dir(root_dir: str) -> str:
    return os.path.join(os.path.abspath(root_dir), "var")


def state_dir(name: str, root_dir: Optional[str] = None) -> str:
    """Create (if needed) and return var/<name> for the project containing root_dir."""
    path = os.path.join(var_dir(find_project_root(root_dir)), name)
    os.makedirs(path, exist_ok=True)
    return path
