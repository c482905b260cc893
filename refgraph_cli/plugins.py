"""Collaborator interfaces consumed by the traversal engine and the jobs.

Each module of the model is composed with one implementation per capability
(see :mod:`refgraph_cli.modules`). Concrete adapters live in ``git_scm``, ``manifest``,
``builder``, ``workspace``, ``version_policy`` and ``console``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, TextIO, Tuple

from .models import (
    ArtifactVersion,
    Commit,
    MergeResult,
    ModuleVersion,
    Reference,
    SyncScope,
    Version,
    VersionType,
    WorkspaceMode,
)


# ===================================================================
# Source control
# ===================================================================

class Scm(ABC):
    """Source-control capability of one module."""

    @abstractmethod
    def checkout_for_inspection(self, version: Version) -> Path:
        """Return a read-only checkout of *version*, reusing the operator's one if present.

        The returned path must be released through the workspace allocator.
        """
        ...

    @abstractmethod
    def checkout(self, version: Version, path: Path) -> None:
        ...

    @abstractmethod
    def is_synchronized(self, path: Path, scope: SyncScope = SyncScope.ALL) -> bool:
        ...

    @abstractmethod
    def update(self, path: Path) -> bool:
        """Bring *path* up to date with the backend. Return True if conflicts occurred."""
        ...

    @abstractmethod
    def switch_version(self, path: Path, version: Version) -> None:
        ...

    @abstractmethod
    def create_version(
        self,
        path: Path,
        new_version: Version,
        switch_to_it: bool = False,
        attributes: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    @abstractmethod
    def commit(self, path: Path, message: str, attributes: Optional[Dict[str, str]] = None) -> None:
        """Commit and publish the workspace changes. May raise UpdateNeededError."""
        ...

    @abstractmethod
    def merge(
        self, path: Path, source_version: Version, excluded_commit_ids: Sequence[str] = ()
    ) -> MergeResult:
        ...

    @abstractmethod
    def list_commits_diverging(self, version: Version, other: Version) -> List[Commit]:
        """Commits reachable from *version* and not from *other*, oldest first."""
        ...

    @abstractmethod
    def list_commits(self, version: Version, limit: int = 1) -> List[Commit]:
        """Latest commits of *version*, newest first."""
        ...

    @abstractmethod
    def version_exists(self, version: Version) -> bool:
        ...

    @abstractmethod
    def list_versions(self, version_type: VersionType) -> List[Version]:
        ...

    @abstractmethod
    def default_version(self) -> Version:
        ...

    def get_version_attributes(self, version: Version) -> Dict[str, str]:
        return {}


# ===================================================================
# References and auxiliary identifier
# ===================================================================

class ReferenceManager(ABC):
    @abstractmethod
    def list_references(self, path: Path) -> List[Reference]:
        ...

    @abstractmethod
    def update_reference_version(self, path: Path, reference: Reference, new_version: Version) -> bool:
        """Rewrite *reference* to *new_version*. Return True if the workspace changed."""
        ...


class ArtifactVersionManager(ABC):
    @abstractmethod
    def get(self, path: Path) -> ArtifactVersion:
        ...

    @abstractmethod
    def set(self, path: Path, artifact_version: ArtifactVersion) -> bool:
        """Apply *artifact_version*. Return True if the workspace changed."""
        ...


class ArtifactVersionMapper(ABC):
    @abstractmethod
    def map_version(self, version: Version) -> ArtifactVersion:
        ...


# ===================================================================
# Build and version policy
# ===================================================================

class Builder(ABC):
    @abstractmethod
    def build(self, path: Path, context: Optional[str], log_sink: TextIO) -> bool:
        ...


class VersionPolicy(ABC):
    """Decides the versions a module moves to."""

    @abstractmethod
    def next_static_version(self, current: Version) -> Version:
        ...

    @abstractmethod
    def next_dynamic_version(self, current: Version) -> Optional[Tuple[Version, Version]]:
        """Return ``(new_version, base_version)``, or None to leave the module alone."""
        ...

    @abstractmethod
    def select_static_version(self, current: Version) -> Optional[Version]:
        """Return the static version to release *current* as, or None to abort."""
        ...


# ===================================================================
# Workspaces
# ===================================================================

class WorkspaceAllocator(ABC):
    @abstractmethod
    def acquire(self, module_version: ModuleVersion, mode: WorkspaceMode) -> Path:
        ...

    @abstractmethod
    def release(self, path: Path) -> None:
        ...

    @abstractmethod
    def exists(self, module_version: ModuleVersion) -> bool:
        """Whether the operator has a workspace for exactly this module version."""
        ...

    @abstractmethod
    def conflict(self, module_version: ModuleVersion) -> Optional[ModuleVersion]:
        """Module version of the operator's workspace for the same module at another version."""
        ...

    @abstractmethod
    def is_user_workspace(self, path: Path) -> bool:
        ...

    @abstractmethod
    def delete(self, module_version: ModuleVersion) -> None:
        """Delete the operator workspace of *module_version*."""
        ...

    def retarget(self, path: Path, module_version: ModuleVersion) -> None:
        """Record that the workspace at *path* now holds *module_version*."""

    def list_user_workspaces(self) -> List[ModuleVersion]:
        return []


# ===================================================================
# Operator interaction
# ===================================================================

class UserInteraction(ABC):
    @abstractmethod
    def inform(self, message: str) -> None:
        ...

    @abstractmethod
    def ask(self, prompt: str, default: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def choose(self, prompt: str, choices: Sequence[str], default: Optional[str] = None) -> str:
        """Ask for one of *choices* (case-insensitive) and return it as listed."""
        ...

    def confirm(self, prompt: str, default: bool = True) -> bool:
        answer = self.choose(prompt, ["yes", "no"], "yes" if default else "no")
        return answer == "yes"

    @contextmanager
    def indent(self) -> Iterator[None]:
        yield

    @contextmanager
    def bracket(self, title: str) -> Iterator[None]:
        self.inform(title)
        with self.indent():
            yield

    @contextmanager
    def log_sink(self, title: str) -> Iterator[TextIO]:
        """Stream receiving long-running tool output (builds)."""
        raise NotImplementedError
