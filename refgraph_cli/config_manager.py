"""Persisted runtime properties stored in ``~/.refgraph/config.toml``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from . import config
from .models import NodePath
from .properties import RuntimeProperties

logger = logging.getLogger(__name__)


def load_full_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    path = config_file or config.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}


def save_full_config(data: Dict[str, Any], config_file: Optional[Path] = None) -> None:
    """Write the entire config dict to the TOML file."""
    path = config_file or config.CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        toml.dump(data, f)


def load_properties(config_file: Optional[Path] = None) -> RuntimeProperties:
    return RuntimeProperties.from_config(load_full_config(config_file))


def set_property(
    name: str,
    value: Optional[str],
    node_path: Optional[NodePath] = None,
    config_file: Optional[Path] = None,
) -> None:
    """Persist one property, or remove it when *value* is None.

    Other sections of the file are preserved.
    """
    data = load_full_config(config_file)
    if node_path is None:
        section = data.setdefault("properties", {})
    else:
        section = data.setdefault("modules", {}).setdefault(str(node_path), {})
    if value is None:
        section.pop(name, None)
    else:
        section[name] = value
    save_full_config(data, config_file)
