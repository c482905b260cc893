"""Diff between a module's reference lists before and after its own version changed."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .models import NodePath, Reference, Version
from .traversal import VisitAction


class DifferenceKind(Enum):
    REMOVED = "removed"
    ADDED = "added"
    VERSION_CHANGED = "version-changed"


@dataclass
class ReferenceDifference:
    kind: DifferenceKind
    original: Optional[Reference] = None
    new: Optional[Reference] = None
    original_action: Optional[VisitAction] = None
    selected_version: Optional[Version] = None

    def describe(self) -> str:
        if self.kind is DifferenceKind.REMOVED:
            return f"Reference {self.original} is no longer present in the new version."
        if self.kind is DifferenceKind.ADDED:
            return f"Reference {self.new} is new and will be visited."
        new_version = self.new.module_version.version
        if self.original_action is VisitAction.NONE or self.original_action is None:
            return (
                f"Reference {self.original} now points to {new_version}. It had not been processed "
                "and will be visited again."
            )
        if self.selected_version == new_version:
            return (
                f"Reference {self.original} now points to {new_version}, the version already "
                "selected for it."
            )
        return (
            f"Reference {self.original} now points to {new_version} while "
            f"{self.selected_version} was selected for it. The reference will be updated."
        )


@dataclass
class Reconciliation:
    """Result of reconciling the reference lists of a transitioned module.

    ``carried`` maps references of the new list to the action already recorded for the
    matching original reference. References of the new list absent from it still have
    to be visited.
    """

    differences: List[ReferenceDifference] = field(default_factory=list)
    carried: Dict[Reference, VisitAction] = field(default_factory=dict)

    def to_visit(self, references: Sequence[Reference]) -> List[Reference]:
        return [ref for ref in references if ref.module_version is not None and ref not in self.carried]


def reconcile_references(
    original: Sequence[Reference],
    new: Sequence[Reference],
    actions: Dict[Reference, VisitAction],
    selected_version: Callable[[NodePath], Optional[Version]],
) -> Reconciliation:
    """Match *new* against *original* by identity ignoring version.

    *actions* holds the visit action recorded for each original reference that was visited,
    *selected_version* returns the version established for a module in this run.
    """
    result = Reconciliation()
    matched_new = set()

    for original_ref in original:
        if original_ref.module_version is None:
            continue
        new_ref = next(
            (ref for ref in new if ref.module_version is not None and ref.equals_ignoring_version(original_ref)),
            None,
        )
        if new_ref is None:
            result.differences.append(ReferenceDifference(DifferenceKind.REMOVED, original=original_ref))
            continue
        matched_new.add(new_ref)
        action = actions.get(original_ref)

        if new_ref.module_version.version == original_ref.module_version.version:
            if action is not None:
                result.carried[new_ref] = action
            continue

        difference = ReferenceDifference(
            DifferenceKind.VERSION_CHANGED,
            original=original_ref,
            new=new_ref,
            original_action=action,
        )
        if action is not None and action is not VisitAction.NONE:
            difference.selected_version = selected_version(original_ref.module_version.node_path)
            result.carried[new_ref] = action
        result.differences.append(difference)

    for new_ref in new:
        if new_ref.module_version is None or new_ref in matched_new:
            continue
        result.differences.append(ReferenceDifference(DifferenceKind.ADDED, new=new_ref))

    return result
