from __future__ import annotations

from pathlib import Path
from typing import Optional


def discover_repo_root(start: Path) -> Optional[Path]:
    for p in [start] + list(start.parents):
        if (p / "pyproject.toml").is_file() and (p / "configs").is_dir():
            return p
    return None


def resolve_config_path(value: str) -> Path:
    """Absolute paths pass through; relative ones resolve against the cwd, then the repo root."""

    path = Path(value)
    if path.is_absolute() or path.exists():
        return path
    root = discover_repo_root(Path(__file__).resolve())
    if root is None:
        return path
    return root / path
