"""Core value types: node paths, versions, module versions and references."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

# Commit attributes understood by the jobs.
COMMIT_ATTR_VERSION_CHANGE = "version-change"
COMMIT_ATTR_REFERENCE_VERSION_CHANGE = "reference-version-change"
COMMIT_ATTR_EQUIVALENT_STATIC_VERSION = "equivalent-static-version"

# Version attribute carrying the project code of a dynamic version.
VERSION_ATTR_PROJECT_CODE = "project-code"


class VersionType(Enum):
    DYNAMIC = "D"
    STATIC = "S"


@dataclass(frozen=True)
class NodePath:
    """Hierarchical module identifier such as ``Libs/core``."""

    parts: Tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> "NodePath":
        parts = tuple(part for part in text.strip().split("/") if part)
        if not parts:
            raise ValueError(f"Invalid node path: {text!r}")
        return cls(parts)

    @property
    def name(self) -> str:
        return self.parts[-1]

    @property
    def parent(self) -> Optional["NodePath"]:
        if len(self.parts) == 1:
            return None
        return NodePath(self.parts[:-1])

    def ancestors(self) -> List["NodePath"]:
        """Return the node path itself followed by its ancestors, most specific first."""
        return [NodePath(self.parts[:i]) for i in range(len(self.parts), 0, -1)]

    def __str__(self) -> str:
        return "/".join(self.parts)


@dataclass(frozen=True)
class Version:
    """A dynamic (branch-like) or static (tag-like) version, rendered ``D/main`` or ``S/1.0``."""

    type: VersionType
    name: str

    @classmethod
    def parse(cls, text: str) -> "Version":
        prefix, sep, name = text.strip().partition("/")
        if not sep or not name:
            raise ValueError(f"Invalid version: {text!r} (expected D/<name> or S/<name>)")
        try:
            version_type = VersionType(prefix)
        except ValueError:
            raise ValueError(f"Invalid version type in {text!r}: {prefix!r}") from None
        return cls(version_type, name)

    @classmethod
    def dynamic(cls, name: str) -> "Version":
        return cls(VersionType.DYNAMIC, name)

    @classmethod
    def static(cls, name: str) -> "Version":
        return cls(VersionType.STATIC, name)

    @property
    def is_dynamic(self) -> bool:
        return self.type is VersionType.DYNAMIC

    @property
    def is_static(self) -> bool:
        return self.type is VersionType.STATIC

    def __str__(self) -> str:
        return f"{self.type.value}/{self.name}"


@dataclass(frozen=True)
class ModuleVersion:
    node_path: NodePath
    version: Optional[Version] = None

    @classmethod
    def parse(cls, text: str) -> "ModuleVersion":
        """Parse ``node/path`` or ``node/path:D/main``."""
        path_text, _, version_text = text.partition(":")
        version = Version.parse(version_text) if version_text else None
        return cls(NodePath.parse(path_text), version)

    def with_version(self, version: Version) -> "ModuleVersion":
        return ModuleVersion(self.node_path, version)

    def __str__(self) -> str:
        if self.version is None:
            return str(self.node_path)
        return f"{self.node_path}:{self.version}"


@dataclass(frozen=True)
class ArtifactVersion:
    """Auxiliary build identifier (``1.0``, ``1.1-SNAPSHOT``)."""

    value: str

    @property
    def is_dynamic(self) -> bool:
        return self.value.endswith("-SNAPSHOT")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ArtifactCoordinates:
    group_id: str
    artifact_id: str

    @classmethod
    def parse(cls, text: str) -> "ArtifactCoordinates":
        group_id, sep, artifact_id = text.strip().partition(":")
        if not sep or not group_id or not artifact_id:
            raise ValueError(f"Invalid artifact coordinates: {text!r}")
        return cls(group_id, artifact_id)

    def __str__(self) -> str:
        return f"{self.group_id}:{self.artifact_id}"


@dataclass(frozen=True)
class Reference:
    """Edge from a parent module's sources to a child module version or external artifact.

    ``module_version`` is None when the reference points outside the known module set.
    """

    module_version: Optional[ModuleVersion] = None
    artifact_coordinates: Optional[ArtifactCoordinates] = None
    artifact_version: Optional[ArtifactVersion] = None

    @classmethod
    def root(cls, module_version: ModuleVersion) -> "Reference":
        return cls(module_version=module_version)

    @property
    def is_external(self) -> bool:
        return self.module_version is None

    def with_version(self, version: Version) -> "Reference":
        if self.module_version is None:
            raise ValueError(f"External reference {self} has no module version")
        return replace(self, module_version=self.module_version.with_version(version))

    def equals_ignoring_version(self, other: "Reference") -> bool:
        """Identity comparison that survives a version change of the referenced module."""
        if (self.module_version is None) != (other.module_version is None):
            return False
        if self.module_version is not None and other.module_version is not None:
            if self.module_version.node_path != other.module_version.node_path:
                return False
        return self.artifact_coordinates == other.artifact_coordinates

    def __str__(self) -> str:
        if self.module_version is not None:
            text = str(self.module_version)
        else:
            text = "<external>"
        if self.artifact_coordinates is not None:
            text += f" ({self.artifact_coordinates}"
            if self.artifact_version is not None:
                text += f":{self.artifact_version}"
            text += ")"
        return text


@dataclass
class Commit:
    id: str
    message: str
    attributes: Dict[str, str] = field(default_factory=dict)
    static_versions: List[Version] = field(default_factory=list)

    @property
    def is_version_change(self) -> bool:
        return self.attributes.get(COMMIT_ATTR_VERSION_CHANGE) == "true"

    @property
    def is_reference_change(self) -> bool:
        return self.attributes.get(COMMIT_ATTR_REFERENCE_VERSION_CHANGE) == "true"


class MergeResult(Enum):
    MERGED = "merged"
    CONFLICTS = "conflicts"
    NOTHING_TO_MERGE = "nothing-to-merge"


class SyncScope(Enum):
    LOCAL = "local"
    REMOTE = "remote"
    ALL = "all"


class WorkspaceMode(Enum):
    SYSTEM = "system"  # read-only scratch checkout
    USER = "user"  # operator read-write checkout
