"""Composition of the module model from ``refgraph-model.toml``.

Example::

    [defaults]
    version_increment = "minor"

    [modules."Libs/core"]
    url = "git@example.com:libs/core.git"
    build = "make test"

    [modules."App/web"]
    url = "git@example.com:app/web.git"
    dynamic_version = "D/feature-login"
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .builder import CommandBuilder
from .errors import UserError
from .git_scm import GitScm
from .manifest import ManifestArtifactVersionManager, ManifestReferenceManager, RegexArtifactVersionMapper
from .models import NodePath, Version
from .modules import Model, Module
from .plugins import UserInteraction, WorkspaceAllocator
from .version_policy import SemanticVersionPolicy

logger = logging.getLogger(__name__)


def build_module(
    node_path: NodePath,
    settings: Dict[str, Any],
    workspace: WorkspaceAllocator,
    ui: UserInteraction,
    mirror_dir: Optional[Path] = None,
) -> Module:
    if not settings.get("url"):
        raise UserError(f"Module {node_path} has no url in the model file")
    scm = GitScm(node_path, settings["url"], workspace, mirror_dir)
    rules = settings.get("artifact_version_rules")
    mapper = RegexArtifactVersionMapper([tuple(rule) for rule in rules] if rules else None)
    dynamic_version = Version.parse(settings["dynamic_version"]) if settings.get("dynamic_version") else None
    return Module(
        node_path=node_path,
        scm=scm,
        reference_manager=ManifestReferenceManager(mapper),
        artifact_version_manager=ManifestArtifactVersionManager(),
        artifact_version_mapper=mapper,
        builder=CommandBuilder(settings["build"]) if settings.get("build") else None,
        version_policy=SemanticVersionPolicy(
            scm, ui, settings.get("version_increment", "minor"), dynamic_version
        ),
    )


def load_model(
    model_file: Path,
    workspace: WorkspaceAllocator,
    ui: UserInteraction,
    mirror_dir: Optional[Path] = None,
) -> Model:
    if not model_file.exists():
        raise UserError(f"Model file {model_file} not found")
    try:
        with open(model_file, "r") as f:
            data = toml.load(f)
    except toml.TomlDecodeError as exc:
        raise UserError(f"Invalid model file {model_file}: {exc}") from exc

    defaults = data.get("defaults", {})
    model = Model()
    for name, settings in data.get("modules", {}).items():
        try:
            node_path = NodePath.parse(name)
            module = build_module(node_path, {**defaults, **settings}, workspace, ui, mirror_dir)
        except ValueError as exc:
            raise UserError(f"Invalid module {name!r} in {model_file}: {exc}") from exc
        model.add(module)
    logger.info("Loaded %d modules from %s", len(model.modules), model_file)
    return model
