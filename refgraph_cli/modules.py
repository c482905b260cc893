"""Modules of the model and the collaborators they are composed with."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .errors import UserError
from .models import NodePath
from .plugins import (
    ArtifactVersionManager,
    ArtifactVersionMapper,
    Builder,
    ReferenceManager,
    Scm,
    VersionPolicy,
)


@dataclass
class Module:
    node_path: NodePath
    scm: Scm
    reference_manager: Optional[ReferenceManager] = None
    artifact_version_manager: Optional[ArtifactVersionManager] = None
    artifact_version_mapper: Optional[ArtifactVersionMapper] = None
    builder: Optional[Builder] = None
    version_policy: Optional[VersionPolicy] = None

    def require_version_policy(self) -> VersionPolicy:
        if self.version_policy is None:
            raise UserError(f"Module {self.node_path} has no version policy configured")
        return self.version_policy


class Model:
    """The known module set, keyed by node path."""

    def __init__(self, modules: Iterable[Module] = ()):
        self._modules: Dict[NodePath, Module] = {}
        for module in modules:
            self.add(module)

    def add(self, module: Module) -> None:
        self._modules[module.node_path] = module

    def get_module(self, node_path: NodePath) -> Optional[Module]:
        return self._modules.get(node_path)

    def require_module(self, node_path: NodePath) -> Module:
        module = self._modules.get(node_path)
        if module is None:
            raise UserError(f"Module {node_path} is not known to the model")
        return module

    @property
    def modules(self) -> List[Module]:
        return list(self._modules.values())
