"""References and artifact version stored in a ``refgraph.toml`` manifest at a module root.

Example::

    artifact_version = "1.2-SNAPSHOT"

    [[references]]
    module = "Libs/core"
    version = "D/main"
    artifact = "org.acme:core"
    artifact_version = "1.2-SNAPSHOT"
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import toml

from . import config
from .errors import UserError
from .models import ArtifactCoordinates, ArtifactVersion, ModuleVersion, NodePath, Reference, Version
from .plugins import ArtifactVersionManager, ArtifactVersionMapper, ReferenceManager

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_RULES: Sequence[Tuple[str, str]] = (
    (r"S/(.*)", r"\1"),
    (r"D/(.*)", r"\1-SNAPSHOT"),
)


def _manifest_file(path: Path) -> Path:
    return path / config.MANIFEST_FILE


def load_manifest(path: Path) -> Dict[str, Any]:
    manifest = _manifest_file(path)
    if not manifest.exists():
        return {}
    try:
        with open(manifest, "r") as f:
            return toml.load(f)
    except toml.TomlDecodeError as exc:
        raise UserError(f"Invalid manifest {manifest}: {exc}") from exc


def save_manifest(path: Path, data: Dict[str, Any]) -> None:
    with open(_manifest_file(path), "w") as f:
        toml.dump(data, f)


def _reference_from_entry(entry: Dict[str, Any]) -> Reference:
    module_version = None
    if entry.get("module"):
        version = Version.parse(entry["version"]) if entry.get("version") else None
        module_version = ModuleVersion(NodePath.parse(entry["module"]), version)
    coordinates = ArtifactCoordinates.parse(entry["artifact"]) if entry.get("artifact") else None
    artifact_version = ArtifactVersion(entry["artifact_version"]) if entry.get("artifact_version") else None
    return Reference(module_version, coordinates, artifact_version)


class RegexArtifactVersionMapper(ArtifactVersionMapper):
    """Maps versions to artifact versions with the first matching regex rule."""

    def __init__(self, rules: Optional[Sequence[Tuple[str, str]]] = None):
        self.rules = [(re.compile(pattern), replacement) for pattern, replacement in (rules or DEFAULT_MAPPING_RULES)]

    def map_version(self, version: Version) -> ArtifactVersion:
        text = str(version)
        for pattern, replacement in self.rules:
            match = pattern.fullmatch(text)
            if match:
                return ArtifactVersion(match.expand(replacement))
        raise UserError(f"No artifact version mapping rule matches version {version}")


class ManifestReferenceManager(ReferenceManager):
    def __init__(self, mapper: Optional[ArtifactVersionMapper] = None):
        self.mapper = mapper

    def list_references(self, path: Path) -> List[Reference]:
        manifest = load_manifest(path)
        try:
            return [_reference_from_entry(entry) for entry in manifest.get("references", [])]
        except (KeyError, ValueError) as exc:
            raise UserError(f"Invalid reference in {_manifest_file(path)}: {exc}") from exc

    def update_reference_version(self, path: Path, reference: Reference, new_version: Version) -> bool:
        manifest = load_manifest(path)
        changed = False
        for entry in manifest.get("references", []):
            if not _reference_from_entry(entry).equals_ignoring_version(reference):
                continue
            if entry.get("version") != str(new_version):
                entry["version"] = str(new_version)
                changed = True
            if self.mapper is not None and "artifact_version" in entry:
                artifact_version = str(self.mapper.map_version(new_version))
                if entry["artifact_version"] != artifact_version:
                    entry["artifact_version"] = artifact_version
                    changed = True
        if changed:
            save_manifest(path, manifest)
            logger.debug("Reference %s set to %s in %s", reference, new_version, path)
        return changed


class ManifestArtifactVersionManager(ArtifactVersionManager):
    def get(self, path: Path) -> ArtifactVersion:
        value = load_manifest(path).get("artifact_version")
        if not value:
            raise UserError(f"{_manifest_file(path)} does not declare an artifact_version")
        return ArtifactVersion(value)

    def set(self, path: Path, artifact_version: ArtifactVersion) -> bool:
        manifest = load_manifest(path)
        if manifest.get("artifact_version") == str(artifact_version):
            return False
        manifest["artifact_version"] = str(artifact_version)
        save_manifest(path, manifest)
        return True
