"""Root-to-current stack of references maintained during a traversal."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

from .errors import InvariantViolation, UserError
from .models import ModuleVersion, Reference


class ReferencePath:
    """Ordered references from a traversal root to the node being visited.

    Owned by a single job. Entries are pushed on entry to a visit and popped on exit,
    including exits by exception; use :meth:`entered` to get that pairing.
    """

    def __init__(self, references: Optional[List[Reference]] = None):
        self._references: List[Reference] = list(references or [])

    def push(self, reference: Reference) -> None:
        if reference.module_version is None:
            raise InvariantViolation(f"Cannot traverse external reference {reference}")
        if reference.module_version in self.module_versions:
            raise UserError(f"Cyclic reference to {reference.module_version} in path {self}")
        self._references.append(reference)

    def pop(self) -> Reference:
        if not self._references:
            raise InvariantViolation("Reference path is empty")
        return self._references.pop()

    @contextmanager
    def entered(self, reference: Reference) -> Iterator["ReferencePath"]:
        self.push(reference)
        try:
            yield self
        finally:
            self.pop()

    def replace_leaf(self, reference: Reference) -> None:
        """Replace the last element, used when the visited node changed version."""
        if not self._references:
            raise InvariantViolation("Reference path is empty")
        self._references[-1] = reference

    @property
    def leaf(self) -> Reference:
        if not self._references:
            raise InvariantViolation("Reference path is empty")
        return self._references[-1]

    @property
    def module_versions(self) -> List[ModuleVersion]:
        return [ref.module_version for ref in self._references if ref.module_version is not None]

    def copy(self) -> "ReferencePath":
        return ReferencePath(self._references)

    def parent(self) -> "ReferencePath":
        return ReferencePath(self._references[:-1])

    def is_empty(self) -> bool:
        return not self._references

    def __len__(self) -> int:
        return len(self._references)

    def __iter__(self) -> Iterator[Reference]:
        return iter(list(self._references))

    def __getitem__(self, index: int) -> Reference:
        return self._references[index]

    def __str__(self) -> str:
        return " -> ".join(str(ref.module_version) for ref in self._references)

    def describe(self) -> str:
        """Multi-line rendering used in operator messages."""
        lines = []
        for depth, ref in enumerate(self._references):
            lines.append("  " * depth + str(ref))
        return "\n".join(lines)
