"""Switching matched modules, and their parents, to dynamic versions.

Unlike promotion, a parent cannot be transitioned until it is known whether one of its
descendants moved to a new dynamic version. Each node is therefore visited in three phases:

``COLLECT_CHILDREN``
    visit the children first without touching the parent,
``DECIDE_PARENT``
    switch the parent if a child was processed or if the parent itself matches,
``RECONCILE``
    diff the parent's new reference list against the one seen before the switch, then
    rewrite references to the versions established for the children.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .context import ExecContext
from .errors import AbortError, InvariantViolation, UserError
from .interaction import (
    CONTEXT_CREATE_DYNAMIC_VERSION,
    CONTEXT_REFERENCE_CHANGE_AFTER_SWITCHING,
    confirm_continue,
)
from .matchers import ReferencePathMatcher
from .models import (
    COMMIT_ATTR_EQUIVALENT_STATIC_VERSION,
    COMMIT_ATTR_VERSION_CHANGE,
    VERSION_ATTR_PROJECT_CODE,
    ModuleVersion,
    NodePath,
    Reference,
    SyncScope,
    Version,
    WorkspaceMode,
)
from .modules import Module
from .reconcile import reconcile_references
from .reference_path import ReferencePath
from .registry import TransitionRegistry
from .traversal import (
    PROP_PROJECT_CODE,
    RECOVERABLE_ERRORS,
    RootModuleVersionJob,
    VisitAction,
    VisitOutcome,
)

logger = logging.getLogger(__name__)


class SwitchPhase(Enum):
    COLLECT_CHILDREN = "collect-children"
    DECIDE_PARENT = "decide-parent"
    RECONCILE = "reconcile"


# ===================================================================
# Unwind policies
# ===================================================================

def switched_elsewhere(registry: TransitionRegistry[NodePath], reference: Reference) -> bool:
    """True if the module of *reference* was already switched to another version."""
    established = registry.get(reference.module_version.node_path)
    return established is not None and established != reference.module_version.version


class UnwindPolicy(ABC):
    """Decides whether a matched node defers to an ancestor that was already switched."""

    @abstractmethod
    def should_unwind(self, registry: TransitionRegistry[NodePath], path: ReferencePath) -> bool:
        """*path* ends with the matched node, which is not itself considered."""
        ...


class UnwindToTransitionedAncestor(UnwindPolicy):
    """Unwind when an ancestor of the matched node was switched earlier in the run and the
    path still goes through its old version.

    The subtree being visited is then stale. Unwinding lets the ancestor's parent point at the
    version already established instead of prompting again for modules under the old version.
    An ancestor switched during the current descent appears at its new version and does not
    cause unwinding.
    """

    def should_unwind(self, registry: TransitionRegistry[NodePath], path: ReferencePath) -> bool:
        return any(switched_elsewhere(registry, ref) for ref in list(path)[:-1])


class NeverUnwind(UnwindPolicy):
    def should_unwind(self, registry: TransitionRegistry[NodePath], path: ReferencePath) -> bool:
        return False


# ===================================================================
# Job
# ===================================================================

class SwitchToDynamicVersion(RootModuleVersionJob):
    title = "switch to dynamic version"
    handle_static_versions = True

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
        unwind_policy: Optional[UnwindPolicy] = None,
    ):
        super().__init__(context, roots, matcher)
        self.registry: TransitionRegistry[NodePath] = TransitionRegistry()
        self.unwind_policy = unwind_policy or UnwindToTransitionedAncestor()

    def visit_module_version(self, reference: Reference) -> VisitOutcome:
        outcome = self._visit(reference, allow_unwinding=False)
        if outcome.action is VisitAction.UNWIND:
            # a root revisited at the old version of a module switched earlier
            return self._established_outcome(reference)
        return outcome

    def _established_outcome(self, reference: Reference) -> VisitOutcome:
        established = self.registry.get(reference.module_version.node_path)
        if established is None or established == reference.module_version.version:
            return VisitOutcome.processed()
        return VisitOutcome.changed(established)

    def _path_is_stale(self) -> bool:
        return any(switched_elsewhere(self.registry, ref) for ref in self.reference_path)

    def _visit(self, reference: Reference, allow_unwinding: bool) -> VisitOutcome:
        module_version = reference.module_version
        with self.reference_path.entered(reference), self.ui.bracket(
            f"Visiting {self.reference_path}"
        ):
            module = self.context.model.require_module(module_version.node_path)
            scm = module.scm

            with self.checked_out(module, module_version.version) as path:
                if (
                    module_version.version.is_dynamic
                    and self.context.workspace.is_user_workspace(path)
                    and not scm.is_synchronized(path, SyncScope.ALL)
                ):
                    raise UserError(f"User workspace {path} of {module_version} is not synchronized.")
                references = self.list_references(module, path)

            phase = SwitchPhase.COLLECT_CHILDREN
            logger.debug("%s: %s", module_version, phase.value)
            child_actions: Dict[Reference, VisitAction] = {}
            references_processed = False

            if self.matcher.can_match_children(self.reference_path):
                for child in references:
                    if child.module_version is None:
                        continue
                    try:
                        outcome = self._visit(child, allow_unwinding=True)
                    except AbortError:
                        raise
                    except RECOVERABLE_ERRORS as exc:
                        self.handle_visit_error(child.module_version, exc)
                        continue
                    if self.cancelled:
                        return VisitOutcome.none()
                    action = outcome.action
                    if action is VisitAction.UNWIND:
                        if self._path_is_stale():
                            logger.debug("Unwinding past %s", module_version)
                            return VisitOutcome.unwind()
                        action = VisitAction.CHANGED
                    child_actions[child] = action
                    if action is not VisitAction.NONE:
                        references_processed = True

            phase = SwitchPhase.DECIDE_PARENT
            logger.debug("%s: %s", module_version, phase.value)
            result = VisitOutcome.none()

            if references_processed:
                self.ui.inform(f"{module_version} must be processed because some of its references were.")
                new_version = self.process_switch(module, module_version)
                if self.cancelled:
                    return result
                if new_version is not None:
                    result = VisitOutcome.changed(new_version)
                    reference = reference.with_version(new_version)
                    module_version = reference.module_version
                    self.reference_path.replace_leaf(reference)

                    phase = SwitchPhase.RECONCILE
                    logger.debug("%s: %s", module_version, phase.value)
                    new_references = self.list_child_references(module, new_version)
                    reconciliation = reconcile_references(
                        references, new_references, child_actions, self.registry.get
                    )
                    if reconciliation.differences:
                        with self.ui.bracket(
                            f"The references of {module_version} differ from the ones of the original version:"
                        ):
                            for difference in reconciliation.differences:
                                self.ui.inform(difference.describe())
                        if not confirm_continue(self.context, CONTEXT_REFERENCE_CHANGE_AFTER_SWITCHING):
                            return result
                    references = new_references
                    child_actions = reconciliation.carried
                else:
                    result = VisitOutcome.processed()

            elif self.handles_version(module_version.version) and self.matcher.matches(self.reference_path):
                if allow_unwinding and self.unwind_policy.should_unwind(self.registry, self.reference_path):
                    self.ui.inform(
                        f"{module_version} matched but an ancestor was already switched; "
                        "unwinding to it."
                    )
                    return VisitOutcome.unwind()
                self.ui.inform(f"{module_version} matched.")
                new_version = self.process_switch(module, module_version)
                if self.cancelled:
                    return result
                if new_version is not None:
                    result = VisitOutcome.changed(new_version)
                    reference = reference.with_version(new_version)
                    module_version = reference.module_version
                    self.reference_path.replace_leaf(reference)
                    references = self.list_child_references(module, new_version)
                else:
                    result = VisitOutcome.processed()

            can_match_children = self.matcher.can_match_children(self.reference_path)
            if references_processed or (result.is_changed and can_match_children):
                self._update_child_references(
                    module, module_version, references, child_actions, can_match_children
                )

        return result

    def _update_child_references(
        self,
        module: Module,
        module_version: ModuleVersion,
        references: List[Reference],
        child_actions: Dict[Reference, VisitAction],
        can_match_children: bool,
    ) -> None:
        """Point the references of *module_version* at the versions established for them.

        References never visited before are visited now, without unwinding.
        """
        with self.checked_out(module, module_version.version) as path:
            with self.reference_updates(module, path, module_version) as updates:
                for child in references:
                    if child.module_version is None:
                        continue
                    new_version = None
                    if child in child_actions:
                        if child_actions[child] is VisitAction.NONE:
                            continue
                        new_version = self.registry.get(child.module_version.node_path)
                    elif can_match_children:
                        try:
                            outcome = self._visit(child, allow_unwinding=False)
                        except AbortError:
                            raise
                        except RECOVERABLE_ERRORS as exc:
                            self.handle_visit_error(child.module_version, exc)
                            continue
                        if self.cancelled:
                            updates.aborted = True
                            break
                        if outcome.action is VisitAction.UNWIND:
                            outcome = self._established_outcome(child)
                        if outcome.is_changed:
                            new_version = outcome.version

                    if new_version is None or new_version == child.module_version.version:
                        continue
                    result = self.update_reference(module, path, module_version, child, new_version)
                    if not updates.record(result):
                        break

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------

    def process_switch(self, module: Module, module_version: ModuleVersion) -> Optional[Version]:
        """Switch *module_version* to the dynamic version chosen by its policy.

        Returns the new version, or None when the module keeps its version (or the operator
        declined, in which case the run is cancelled).
        """
        node_path = module_version.node_path
        established = self.registry.get(node_path)
        if established is not None:
            if established == module_version.version:
                self.ui.inform(f"{module_version} was already switched or kept in this run.")
                return None
            self.ui.inform(f"{node_path} was already switched to {established} in this run.")
            return established

        selection = module.require_version_policy().next_dynamic_version(module_version.version)
        if selection is None:
            self.ui.inform(f"No dynamic version selected for {module_version}.")
            return None
        new_version, base_version = selection
        if not new_version.is_dynamic:
            raise InvariantViolation(f"Version policy returned {new_version}, which is not dynamic")

        same = new_version == module_version.version
        workspace = self.context.workspace
        in_user_workspace = workspace.exists(module_version)
        path: Optional[Path] = None
        try:
            with self.ui.indent():
                if same:
                    self.ui.inform(f"{module_version} keeps its version.")
                else:
                    self.ui.inform(f"{module_version} will be switched to {new_version}.")
                if in_user_workspace:
                    path = workspace.acquire(module_version, WorkspaceMode.USER)
                    self.ui.inform(f"The switch will be performed in the user workspace {path}.")
                    self.require_synchronized(module, path, module_version)

                create = not same and not module.scm.version_exists(new_version)
                if create:
                    self.ui.inform(
                        f"Dynamic version {new_version} does not exist and will be created from {base_version}."
                    )
                if not confirm_continue(self.context, CONTEXT_CREATE_DYNAMIC_VERSION):
                    return None

                path = self._switch_workspace(
                    module, module_version, path, new_version, base_version, same, create
                )
                self._update_artifact_version(module, module_version, path, new_version, base_version, create)
        finally:
            if path is not None:
                workspace.release(path)

        self.registry.record(node_path, new_version)
        return None if same else new_version

    def _switch_workspace(
        self,
        module: Module,
        module_version: ModuleVersion,
        path: Optional[Path],
        new_version: Version,
        base_version: Version,
        same: bool,
        create: bool,
    ) -> Path:
        scm = module.scm
        attributes = None
        project_code = self.properties.get(PROP_PROJECT_CODE)
        if create and project_code:
            attributes = {VERSION_ATTR_PROJECT_CODE: project_code}

        if path is not None:
            if create:
                if base_version != module_version.version:
                    scm.switch_version(path, base_version)
                scm.create_version(path, new_version, switch_to_it=True, attributes=attributes)
                self.actions.add(
                    f"Dynamic version {new_version} of {module_version.node_path} created from "
                    f"{base_version} in user workspace {path}."
                )
            elif not same:
                scm.switch_version(path, new_version)
                self.actions.add(f"User workspace {path} switched to {new_version}.")
            return path

        if create:
            path = scm.checkout_for_inspection(base_version)
            scm.create_version(path, new_version, switch_to_it=True, attributes=attributes)
            self.actions.add(
                f"Dynamic version {new_version} of {module_version.node_path} created from {base_version}."
            )
            return path
        return scm.checkout_for_inspection(new_version)

    def _update_artifact_version(
        self,
        module: Module,
        module_version: ModuleVersion,
        path: Path,
        new_version: Version,
        base_version: Version,
        create: bool,
    ) -> None:
        manager = module.artifact_version_manager
        mapper = module.artifact_version_mapper
        if manager is None or mapper is None:
            return
        artifact_version = mapper.map_version(new_version)
        if not manager.set(path, artifact_version):
            return
        attributes = {COMMIT_ATTR_VERSION_CHANGE: "true"}
        if create and base_version.is_static:
            equivalent = base_version
        else:
            equivalent = self._equivalent_static_version(module, new_version)
        if equivalent is not None:
            attributes[COMMIT_ATTR_EQUIVALENT_STATIC_VERSION] = str(equivalent)
        module.scm.commit(
            path, f"Artifact version set to {artifact_version} for {new_version}.", attributes
        )
        self.actions.add(
            f"Artifact version of {module_version.node_path} set to {artifact_version} in {new_version}."
        )

    def _equivalent_static_version(self, module: Module, version: Version) -> Optional[Version]:
        commits = module.scm.list_commits(version, limit=1)
        if not commits:
            return None
        latest = commits[0]
        recorded = latest.attributes.get(COMMIT_ATTR_EQUIVALENT_STATIC_VERSION)
        if recorded:
            equivalent = Version.parse(recorded)
            if not equivalent.is_static:
                raise InvariantViolation(
                    f"Commit {latest.id} records {equivalent} as equivalent static version"
                )
            return equivalent
        if latest.static_versions:
            return latest.static_versions[0]
        return None
