"""Directory-based workspace allocator.

User workspaces live directly under a workspace directory and are listed in its
``.refgraph-workspace.toml`` index. System checkouts are scratch directories under
``REFGRAPH_HOME/system`` and are reused across runs.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import toml

from . import config
from .errors import InvariantViolation
from .models import ModuleVersion, NodePath, Version, WorkspaceMode
from .plugins import WorkspaceAllocator

logger = logging.getLogger(__name__)

INDEX_FILE = ".refgraph-workspace.toml"


def _safe_name(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", text)


class DirectoryWorkspaceAllocator(WorkspaceAllocator):
    def __init__(self, workspace_dir: Path, system_dir: Optional[Path] = None):
        self.workspace_dir = Path(workspace_dir).resolve()
        self.system_dir = Path(system_dir or config.SYSTEM_WORKSPACE_DIR).resolve()
        self._acquired: Dict[Path, int] = {}

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def _load_index(self) -> Dict[str, Dict[str, str]]:
        index_file = self.workspace_dir / INDEX_FILE
        if not index_file.exists():
            return {}
        with open(index_file, "r") as f:
            return toml.load(f).get("workspaces", {})

    def _save_index(self, index: Dict[str, Dict[str, str]]) -> None:
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        with open(self.workspace_dir / INDEX_FILE, "w") as f:
            toml.dump({"workspaces": index}, f)

    def _user_entries(self) -> Dict[Path, ModuleVersion]:
        entries = {}
        for dir_name, entry in self._load_index().items():
            path = self.workspace_dir / dir_name
            if path.is_dir():
                entries[path] = ModuleVersion(NodePath.parse(entry["module"]), Version.parse(entry["version"]))
        return entries

    def _user_path(self, module_version: ModuleVersion) -> Optional[Path]:
        for path, entry in self._user_entries().items():
            if entry == module_version:
                return path
        return None

    # ------------------------------------------------------------------
    # WorkspaceAllocator
    # ------------------------------------------------------------------

    def acquire(self, module_version: ModuleVersion, mode: WorkspaceMode) -> Path:
        path = self._user_path(module_version)
        if path is None:
            if mode is WorkspaceMode.USER:
                path = self.workspace_dir / _safe_name(str(module_version.node_path).replace("/", "."))
                if path.exists() and any(path.iterdir()):
                    raise InvariantViolation(f"Directory {path} is already used by another workspace")
                path.mkdir(parents=True, exist_ok=True)
                index = self._load_index()
                index[path.name] = {
                    "module": str(module_version.node_path),
                    "version": str(module_version.version),
                }
                self._save_index(index)
            else:
                path = (
                    self.system_dir
                    / _safe_name(str(module_version.node_path))
                    / _safe_name(str(module_version.version))
                )
                path.mkdir(parents=True, exist_ok=True)
        self._acquired[path] = self._acquired.get(path, 0) + 1
        logger.debug("Acquired %s workspace %s for %s", mode.value, path, module_version)
        return path

    def release(self, path: Path) -> None:
        count = self._acquired.get(path, 0)
        if count == 0:
            raise InvariantViolation(f"Workspace {path} released but not acquired")
        if count == 1:
            del self._acquired[path]
        else:
            self._acquired[path] = count - 1

    def exists(self, module_version: ModuleVersion) -> bool:
        return self._user_path(module_version) is not None

    def conflict(self, module_version: ModuleVersion) -> Optional[ModuleVersion]:
        for entry in self._user_entries().values():
            if entry.node_path == module_version.node_path and entry != module_version:
                return entry
        return None

    def is_user_workspace(self, path: Path) -> bool:
        return Path(path).resolve() in self._user_entries()

    def retarget(self, path: Path, module_version: ModuleVersion) -> None:
        index = self._load_index()
        name = Path(path).resolve().name
        if name in index and Path(path).resolve().parent == self.workspace_dir:
            index[name] = {"module": str(module_version.node_path), "version": str(module_version.version)}
            self._save_index(index)

    def delete(self, module_version: ModuleVersion) -> None:
        path = self._user_path(module_version)
        if path is None:
            return
        if path in self._acquired:
            raise InvariantViolation(f"Cannot delete workspace {path} while it is acquired")
        shutil.rmtree(path)
        index = self._load_index()
        index.pop(path.name, None)
        self._save_index(index)
        logger.info("Deleted user workspace %s of %s", path, module_version)

    def list_user_workspaces(self) -> List[ModuleVersion]:
        return list(self._user_entries().values())
