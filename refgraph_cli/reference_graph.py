"""Read-only job recording the reference graph reachable from the roots."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .context import ExecContext
from .matchers import ReferencePathMatcher
from .models import ModuleVersion, Reference
from .reference_path import ReferencePath
from .traversal import ReentryPolicy, RootModuleVersionJob

logger = logging.getLogger(__name__)


@dataclass
class ReferenceGraph:
    """Module versions connected by the references through which they were reached."""

    roots: List[ModuleVersion] = field(default_factory=list)
    matched: Set[ModuleVersion] = field(default_factory=set)
    _edges: Dict[ModuleVersion, List[Tuple[Reference, ModuleVersion]]] = field(default_factory=dict)

    def add_matched_path(self, path: ReferencePath) -> None:
        module_versions = path.module_versions
        if not module_versions:
            return
        if module_versions[0] not in self.roots:
            self.roots.append(module_versions[0])
        self._edges.setdefault(module_versions[0], [])
        for index in range(1, len(module_versions)):
            parent = module_versions[index - 1]
            child = module_versions[index]
            self._edges.setdefault(child, [])
            edges = self._edges.setdefault(parent, [])
            if all(existing != child for _, existing in edges):
                edges.append((path[index], child))
        self.matched.add(module_versions[-1])

    @property
    def module_versions(self) -> List[ModuleVersion]:
        return list(self._edges)

    def references_from(self, module_version: ModuleVersion) -> List[Tuple[Reference, ModuleVersion]]:
        return list(self._edges.get(module_version, []))

    def referrers_of(self, module_version: ModuleVersion) -> List[ModuleVersion]:
        return [
            parent
            for parent, edges in self._edges.items()
            if any(child == module_version for _, child in edges)
        ]

    def is_matched(self, module_version: ModuleVersion) -> bool:
        return module_version in self.matched

    def walk(self) -> Iterator[Tuple[int, ModuleVersion]]:
        """Depth-first ``(depth, module_version)`` pairs, each subtree expanded once."""
        expanded: Set[ModuleVersion] = set()

        def _walk(module_version: ModuleVersion, depth: int):
            yield depth, module_version
            if module_version in expanded:
                return
            expanded.add(module_version)
            for _, child in self._edges.get(module_version, []):
                yield from _walk(child, depth + 1)

        for root in self.roots:
            yield from _walk(root, 0)


class BuildReferenceGraph(RootModuleVersionJob):
    title = "build reference graph"
    reentry_policy = ReentryPolicy.ALLOW

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
    ):
        super().__init__(context, roots, matcher)
        self.graph = ReferenceGraph()

    def visit_matched_module_version(self, reference: Reference) -> bool:
        self.graph.add_matched_path(self.reference_path)
        # Every path is recorded but a module version's children are descended once.
        return self.reentry.process(reference.module_version)

    def after_iterate(self) -> None:
        logger.info(
            "Reference graph: %d module versions, %d matched",
            len(self.graph.module_versions),
            len(self.graph.matched),
        )
