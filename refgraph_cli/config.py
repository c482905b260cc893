"""Configuration paths for local refgraph state."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("REFGRAPH_HOME", str(Path.home() / ".refgraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
SYSTEM_WORKSPACE_DIR = BASE_DIR / "system"
DEFAULT_MODEL_FILE = "refgraph-model.toml"
DEFAULT_WORKSPACE_DIR = Path(os.environ.get("REFGRAPH_WORKSPACE", ".")).expanduser()
MANIFEST_FILE = "refgraph.toml"


def ensure_base_dirs() -> None:
    """Create base directories for local state if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    SYSTEM_WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
