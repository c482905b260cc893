"""Two-phase predicates over reference paths.

Every matcher answers two questions about a :class:`ReferencePath`:

- ``matches``: is this exact path selected for a transition?
- ``can_match_children``: could any extension of this path be selected? A traversal only
  checks out a node's sources to enumerate its references when this is true.

Implementations must keep the two consistent: if ``matches`` can be true for some extension
of a path, ``can_match_children`` must be true for that path.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set

from .models import VERSION_ATTR_PROJECT_CODE, ModuleVersion, NodePath, Reference
from .reference_path import ReferencePath

if TYPE_CHECKING:
    from .modules import Model

logger = logging.getLogger(__name__)

ELEMENT_SEPARATOR = "->"
ANY_ELEMENTS = "**"


# ===================================================================
# Abstract Matcher Interface
# ===================================================================

class ReferencePathMatcher(ABC):
    """Pure predicate over reference paths."""

    @abstractmethod
    def matches(self, path: ReferencePath) -> bool:
        ...

    @abstractmethod
    def can_match_children(self, path: ReferencePath) -> bool:
        ...


class MatchAllMatcher(ReferencePathMatcher):
    def matches(self, path: ReferencePath) -> bool:
        return True

    def can_match_children(self, path: ReferencePath) -> bool:
        return True


class AndMatcher(ReferencePathMatcher):
    def __init__(self, matchers: Sequence[ReferencePathMatcher]):
        self.matchers = list(matchers)

    def matches(self, path: ReferencePath) -> bool:
        return all(m.matches(path) for m in self.matchers)

    def can_match_children(self, path: ReferencePath) -> bool:
        return all(m.can_match_children(path) for m in self.matchers)


class OrMatcher(ReferencePathMatcher):
    def __init__(self, matchers: Sequence[ReferencePathMatcher]):
        self.matchers = list(matchers)

    def matches(self, path: ReferencePath) -> bool:
        return any(m.matches(path) for m in self.matchers)

    def can_match_children(self, path: ReferencePath) -> bool:
        return any(m.can_match_children(path) for m in self.matchers)


# ===================================================================
# Path patterns
# ===================================================================

class _ElementPattern:
    """One ``nodepath[:version]`` glob of a path pattern."""

    def __init__(self, text: str):
        node_glob, _, version_glob = text.partition(":")
        self.text = text
        self.node_glob = node_glob.strip()
        self.version_glob = version_glob.strip() or None

    def matches(self, reference: Reference) -> bool:
        module_version = reference.module_version
        if module_version is None:
            return False
        if not fnmatchcase(str(module_version.node_path), self.node_glob):
            return False
        if self.version_glob is None:
            return True
        return module_version.version is not None and fnmatchcase(
            str(module_version.version), self.version_glob
        )


class PathPatternMatcher(ReferencePathMatcher):
    """Matches paths against ``->``-separated element globs, ``**`` spanning any elements.

    ``App/*:D/main->**->Libs/core`` selects ``Libs/core`` wherever it is reached from the
    ``D/main`` version of a module under ``App``.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern
        elements = [e.strip() for e in pattern.split(ELEMENT_SEPARATOR)]
        if not elements or any(not e for e in elements):
            raise ValueError(f"Invalid path pattern: {pattern!r}")
        self._elements: List[Optional[_ElementPattern]] = [
            None if e == ANY_ELEMENTS else _ElementPattern(e) for e in elements
        ]

    def _closure(self, states: Set[int]) -> Set[int]:
        result = set(states)
        pending = list(states)
        while pending:
            state = pending.pop()
            if state < len(self._elements) and self._elements[state] is None:
                if state + 1 not in result:
                    result.add(state + 1)
                    pending.append(state + 1)
        return result

    def _states_after(self, path: ReferencePath) -> Set[int]:
        states = self._closure({0})
        for reference in path:
            following: Set[int] = set()
            for state in states:
                if state >= len(self._elements):
                    continue
                element = self._elements[state]
                if element is None:
                    following.add(state)
                elif element.matches(reference):
                    following.add(state + 1)
            states = self._closure(following)
            if not states:
                break
        return states

    def matches(self, path: ReferencePath) -> bool:
        return len(self._elements) in self._states_after(path)

    def can_match_children(self, path: ReferencePath) -> bool:
        return any(state < len(self._elements) for state in self._states_after(path))

    def __repr__(self) -> str:
        return f"PathPatternMatcher({self.pattern!r})"


class NodePathMatcher(ReferencePathMatcher):
    """Selects any path whose leaf is one of the given modules."""

    def __init__(self, node_paths: Iterable[NodePath]):
        self.node_paths = set(node_paths)

    def matches(self, path: ReferencePath) -> bool:
        if path.is_empty():
            return False
        module_version = path.leaf.module_version
        return module_version is not None and module_version.node_path in self.node_paths

    def can_match_children(self, path: ReferencePath) -> bool:
        return True


class ProjectCodeMatcher(ReferencePathMatcher):
    """Selects leaves whose version carries the given project code attribute."""

    def __init__(self, model: "Model", project_code: str):
        self.model = model
        self.project_code = project_code
        self._cache: Dict[ModuleVersion, bool] = {}

    def matches(self, path: ReferencePath) -> bool:
        if path.is_empty():
            return False
        module_version = path.leaf.module_version
        if module_version is None or module_version.version is None:
            return False
        if module_version not in self._cache:
            module = self.model.get_module(module_version.node_path)
            if module is None:
                self._cache[module_version] = False
            else:
                attributes = module.scm.get_version_attributes(module_version.version)
                self._cache[module_version] = (
                    attributes.get(VERSION_ATTR_PROJECT_CODE) == self.project_code
                )
                logger.debug(
                    "Project code of %s: %s", module_version, attributes.get(VERSION_ATTR_PROJECT_CODE)
                )
        return self._cache[module_version]

    def can_match_children(self, path: ReferencePath) -> bool:
        return True


def matcher_from_patterns(patterns: Sequence[str]) -> ReferencePathMatcher:
    """Build the matcher for a list of path patterns; no pattern selects everything."""
    if not patterns:
        return MatchAllMatcher()
    matchers = [PathPatternMatcher(p) for p in patterns]
    if len(matchers) == 1:
        return matchers[0]
    return OrMatcher(matchers)
