"""Runtime locations and defaults shared by the CLI, API and watcher."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

DB_ENV_VAR = "BLETETHER_DB"
DEFAULT_DB_PATH = Path.home() / ".bletether" / "bletether.db"

API_HOST = "127.0.0.1"
API_PORT = 8000


def resolve_db_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    """Pick the database location: explicit flag, then environment, then default."""
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(DB_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser()
    return DEFAULT_DB_PATH


__all__ = ["DB_ENV_VAR", "DEFAULT_DB_PATH", "API_HOST", "API_PORT", "resolve_db_path"]
