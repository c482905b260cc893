"""Depth-first traversal of the reference graph induced by root module versions.

:class:`RootModuleVersionJob` walks references from each root, applies the job's matcher,
and hands matched nodes to :meth:`RootModuleVersionJob.visit_matched_module_version`.
Jobs that transition versions override :meth:`RootModuleVersionJob.visit_module_version`
and reuse the helpers defined here for checkouts, synchronization checks, reference
updates and commits.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .context import ExecContext
from .errors import AbortError, BackendError, UpdateNeededError, UserError
from .interaction import (
    COND_USER_ERROR,
    CONTEXT_COMMIT_REFERENCE_CHANGE_AFTER_ABORT,
    CONTEXT_UNSYNC_CHANGES,
    CONTEXT_UPDATE_REFERENCE,
    confirm_continue,
    continue_after_exceptional_condition,
)
from .matchers import AndMatcher, MatchAllMatcher, ProjectCodeMatcher, ReferencePathMatcher
from .models import (
    COMMIT_ATTR_REFERENCE_VERSION_CHANGE,
    ModuleVersion,
    Reference,
    SyncScope,
    Version,
    WorkspaceMode,
)
from .modules import Module
from .reference_path import ReferencePath
from .registry import ActionLog, ReentryAvoider

logger = logging.getLogger(__name__)

PROP_PROJECT_CODE = "PROJECT_CODE"
PROP_UNSYNC_LOCAL_CHANGES_BEHAVIOR = "UNSYNC_LOCAL_CHANGES_BEHAVIOR"
PROP_UNSYNC_REMOTE_CHANGES_BEHAVIOR = "UNSYNC_REMOTE_CHANGES_BEHAVIOR"

RECOVERABLE_ERRORS = (UserError, BackendError, UpdateNeededError)


class VisitAction(Enum):
    NONE = "none"
    PROCESSED_NO_CHANGE = "processed-no-change"
    CHANGED = "changed"
    UNWIND = "unwind"  # switch job only: let an ancestor handle this subtree


@dataclass(frozen=True)
class VisitOutcome:
    """Tagged result of visiting one node; ``version`` is set for CHANGED."""

    action: VisitAction = VisitAction.NONE
    version: Optional[Version] = None

    @classmethod
    def none(cls) -> "VisitOutcome":
        return cls(VisitAction.NONE)

    @classmethod
    def processed(cls) -> "VisitOutcome":
        return cls(VisitAction.PROCESSED_NO_CHANGE)

    @classmethod
    def changed(cls, version: Version) -> "VisitOutcome":
        return cls(VisitAction.CHANGED, version)

    @classmethod
    def unwind(cls) -> "VisitOutcome":
        return cls(VisitAction.UNWIND)

    @property
    def is_changed(self) -> bool:
        return self.action is VisitAction.CHANGED


class ReentryPolicy(Enum):
    AVOID = "avoid"  # process each module version at most once per run
    ALLOW = "allow"  # visit every path, for read-only enumeration


class UnsyncChangesBehavior(Enum):
    DO_NOT_HANDLE = "DO_NOT_HANDLE"
    USER_ERROR = "USER_ERROR"
    INTERACT = "INTERACT"


@dataclass
class ReferenceUpdates:
    """Reference rewrites pending in one parent workspace."""

    updated: bool = False
    aborted: bool = False

    def record(self, result: Optional[bool]) -> bool:
        """Fold in a result of ``update_reference``. False means the operator declined."""
        if result is None:
            self.aborted = True
            return False
        self.updated = self.updated or result
        return True


# ===================================================================
# Base job
# ===================================================================

class RootModuleVersionJob:
    """Base class of jobs iterating over root module versions."""

    title = "job"
    handle_static_versions = True
    handle_dynamic_versions = True
    reentry_policy = ReentryPolicy.AVOID
    depth_first = False
    unsync_local_changes = UnsyncChangesBehavior.DO_NOT_HANDLE
    unsync_remote_changes = UnsyncChangesBehavior.DO_NOT_HANDLE

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
    ):
        self.context = context
        self.roots: List[ModuleVersion] = list(roots)
        self.matcher = self._combine_matcher(matcher or MatchAllMatcher())
        self.reference_path = ReferencePath()
        self.reentry = ReentryAvoider()
        self.actions = ActionLog()
        self.visit_errors: List[str] = []
        self.roots_changed = False

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------

    @property
    def ui(self):
        return self.context.ui

    @property
    def properties(self):
        return self.context.properties

    @property
    def cancelled(self) -> bool:
        return self.context.cancellation.cancelled

    def _combine_matcher(self, matcher: ReferencePathMatcher) -> ReferencePathMatcher:
        project_code = self.context.properties.get(PROP_PROJECT_CODE)
        if not project_code:
            return matcher
        return AndMatcher([matcher, ProjectCodeMatcher(self.context.model, project_code)])

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> ActionLog:
        self.validate_roots()
        self.before_iterate()
        try:
            self.iterate_roots()
        finally:
            self.after_iterate()
        return self.actions

    def validate_roots(self) -> None:
        """Resolve roots given without a version and check that every root version exists."""
        for index, root in enumerate(self.roots):
            module = self.context.model.require_module(root.node_path)
            if root.version is None:
                candidates = [
                    mv
                    for mv in self.context.workspace.list_user_workspaces()
                    if mv.node_path == root.node_path
                ]
                if len(candidates) == 1:
                    version = candidates[0].version
                else:
                    version = module.scm.default_version()
                root = root.with_version(version)
                self.roots[index] = root
                logger.info("Root %s resolved to version %s", root.node_path, version)
            if not module.scm.version_exists(root.version):
                raise UserError(f"Version {root.version} of root module {root.node_path} does not exist")

    def before_iterate(self) -> None:
        pass

    def after_iterate(self) -> None:
        self.report()

    def check_visit_root(self, root: ModuleVersion) -> bool:
        return True

    def iterate_roots(self) -> None:
        with self.ui.bracket(f"Iterating over root module versions ({self.title})"):
            for index, root in enumerate(list(self.roots)):
                if not self.check_visit_root(root):
                    continue
                outcome = VisitOutcome.none()
                try:
                    outcome = self.visit_module_version(Reference.root(root))
                except AbortError:
                    raise
                except RECOVERABLE_ERRORS as exc:
                    self.handle_visit_error(root, exc)

                if outcome.is_changed and outcome.version != root.version:
                    self.roots[index] = root.with_version(outcome.version)
                    self.roots_changed = True
                    self.ui.inform(f"Root module version {root} changed to {self.roots[index]}.")

                if self.cancelled:
                    self.ui.inform("Processing aborted.")
                    break

    def handle_visit_error(self, module_version: ModuleVersion, exc: Exception) -> None:
        """Report an error raised while visiting a node and apply the continue policy."""
        condition = getattr(exc, "condition", COND_USER_ERROR)
        message = f"Error while visiting {module_version}: {exc}"
        logger.warning(message)
        self.ui.inform(message)
        self.visit_errors.append(message)
        if not continue_after_exceptional_condition(self.context, condition, module_version.node_path):
            raise AbortError(f"Stopping after {condition.lower().replace('_', ' ')}: {exc}") from exc

    def report(self) -> None:
        if self.actions:
            with self.ui.bracket("The following actions were performed:"):
                for action in self.actions:
                    self.ui.inform(action)
        else:
            self.ui.inform("No actions were performed.")
        if self.visit_errors:
            self.ui.inform(f"{len(self.visit_errors)} error(s) occurred while visiting module versions.")

    # ------------------------------------------------------------------
    # Generic visit
    # ------------------------------------------------------------------

    def handles_version(self, version: Version) -> bool:
        if version.is_dynamic:
            return self.handle_dynamic_versions
        return self.handle_static_versions

    def visit_module_version(self, reference: Reference) -> VisitOutcome:
        """Visit one node: match it, then descend into its children when useful."""
        module_version = reference.module_version
        with self.reference_path.entered(reference), self.ui.indent():
            if self.reentry_policy is ReentryPolicy.AVOID and self.reentry.is_processed(module_version):
                logger.info("Module version %s already processed", module_version)
                return VisitOutcome.none()

            module = self.context.model.require_module(module_version.node_path)
            visit_children = True
            unsync_handled = False

            if not self.depth_first and self._is_matched(module_version):
                unsync_handled = True
                visit_children = self._visit_matched(module, reference)
                if self.cancelled:
                    return VisitOutcome.none()

            if visit_children and self.matcher.can_match_children(self.reference_path):
                if not unsync_handled and self.reentry_policy is ReentryPolicy.AVOID:
                    self.handle_unsync_changes(module, module_version)
                    unsync_handled = True
                for child in self.list_child_references(module, module_version.version):
                    if child.module_version is None:
                        logger.debug("Skipping external reference %s", child)
                        continue
                    try:
                        self.visit_module_version(child)
                    except AbortError:
                        raise
                    except RECOVERABLE_ERRORS as exc:
                        self.handle_visit_error(child.module_version, exc)
                    if self.cancelled:
                        return VisitOutcome.none()

            if self.depth_first and self._is_matched(module_version):
                self._visit_matched(module, reference, handle_unsync=not unsync_handled)

        return VisitOutcome.none()

    def _is_matched(self, module_version: ModuleVersion) -> bool:
        return self.handles_version(module_version.version) and self.matcher.matches(self.reference_path)

    def _visit_matched(self, module: Module, reference: Reference, handle_unsync: bool = True) -> bool:
        if self.reentry_policy is ReentryPolicy.AVOID:
            self.reentry.process(reference.module_version)
            if handle_unsync:
                self.handle_unsync_changes(module, reference.module_version)
            if self.cancelled:
                return False
        return self.visit_matched_module_version(reference)

    def visit_matched_module_version(self, reference: Reference) -> bool:
        """Handle a matched node. Return whether its children should still be visited."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Workspace helpers
    # ------------------------------------------------------------------

    @contextmanager
    def checked_out(self, module: Module, version: Version) -> Iterator[Path]:
        path = module.scm.checkout_for_inspection(version)
        try:
            yield path
        finally:
            self.context.workspace.release(path)

    @contextmanager
    def user_workspace(self, module_version: ModuleVersion) -> Iterator[Path]:
        path = self.context.workspace.acquire(module_version, WorkspaceMode.USER)
        try:
            yield path
        finally:
            self.context.workspace.release(path)

    def list_references(self, module: Module, path: Path) -> List[Reference]:
        if module.reference_manager is None:
            return []
        return module.reference_manager.list_references(path)

    def list_child_references(self, module: Module, version: Version) -> List[Reference]:
        if module.reference_manager is None:
            return []
        with self.checked_out(module, version) as path:
            return self.list_references(module, path)

    def require_synchronized(self, module: Module, path: Path, module_version: ModuleVersion) -> None:
        if not module.scm.is_synchronized(path, SyncScope.ALL):
            raise UserError(
                f"Workspace {path} of {module_version} is not synchronized with the remote "
                "repository. Commit, push or update it and run the job again."
            )

    def _unsync_behavior(self, name: str, default: UnsyncChangesBehavior, module: Module):
        value = self.properties.get(name, module.node_path)
        if value is None:
            return default
        try:
            return UnsyncChangesBehavior(value.strip().upper())
        except ValueError:
            logger.warning("Invalid value %r for %s", value, name)
            return default

    def handle_unsync_changes(self, module: Module, module_version: ModuleVersion) -> None:
        """Deal with local or remote changes in the operator's workspace of a matched node."""
        local = self._unsync_behavior(PROP_UNSYNC_LOCAL_CHANGES_BEHAVIOR, self.unsync_local_changes, module)
        remote = self._unsync_behavior(PROP_UNSYNC_REMOTE_CHANGES_BEHAVIOR, self.unsync_remote_changes, module)
        if local is UnsyncChangesBehavior.DO_NOT_HANDLE and remote is UnsyncChangesBehavior.DO_NOT_HANDLE:
            return
        if not self.context.workspace.exists(module_version):
            return

        with self.user_workspace(module_version) as path:
            if local is not UnsyncChangesBehavior.DO_NOT_HANDLE and not module.scm.is_synchronized(
                path, SyncScope.LOCAL
            ):
                message = f"Workspace {path} of {module_version} contains local changes."
                if local is UnsyncChangesBehavior.USER_ERROR:
                    raise UserError(message)
                self.ui.inform(message)
                if not confirm_continue(self.context, CONTEXT_UNSYNC_CHANGES):
                    return

            if remote is not UnsyncChangesBehavior.DO_NOT_HANDLE and not module.scm.is_synchronized(
                path, SyncScope.REMOTE
            ):
                message = f"Workspace {path} of {module_version} is missing remote changes."
                if remote is UnsyncChangesBehavior.USER_ERROR:
                    raise UserError(message)
                self.ui.inform(message)
                if self.ui.confirm("Do you want to update the workspace?"):
                    if module.scm.update(path):
                        raise UserError(f"Conflicts occurred while updating workspace {path}.")
                    self.actions.add(f"Workspace {path} of {module_version} was updated.")

    # ------------------------------------------------------------------
    # Reference propagation helpers
    # ------------------------------------------------------------------

    def update_reference(
        self, module: Module, path: Path, parent: ModuleVersion, reference: Reference, new_version: Version
    ) -> Optional[bool]:
        """Point *reference* at *new_version* in *path*.

        Returns True if the workspace changed, False if it did not, None if the operator
        declined (the run is then cancelled).
        """
        self.ui.inform(
            f"Reference {reference} in {parent} will be updated to version {new_version}."
        )
        if self.context.workspace.is_user_workspace(path):
            self.ui.inform(f"The change will be performed in the user workspace {path}.")
        if not confirm_continue(self.context, CONTEXT_UPDATE_REFERENCE):
            return None
        if module.reference_manager is None:
            return False
        if module.reference_manager.update_reference_version(path, reference, new_version):
            self.ui.inform(f"Reference {reference} in {parent} updated to {new_version}.")
            self.actions.add(f"Reference {reference} in {parent} updated to version {new_version}.")
            return True
        self.ui.inform(f"Reference {reference} in {parent} needed no change.")
        return False

    @contextmanager
    def reference_updates(
        self, module: Module, path: Path, parent: ModuleVersion
    ) -> Iterator[ReferenceUpdates]:
        """Collect the reference rewrites made in *path* and commit them once.

        When a child raises, the rewrites already applied are committed (as after an abort)
        before the exception propagates.
        """
        updates = ReferenceUpdates()
        try:
            yield updates
        except (AbortError,) + RECOVERABLE_ERRORS:
            if updates.updated:
                self.commit_reference_changes(module, path, parent, after_abort=True)
            raise
        if updates.updated:
            self.commit_reference_changes(module, path, parent, after_abort=updates.aborted)

    def commit_reference_changes(
        self, module: Module, path: Path, parent: ModuleVersion, after_abort: bool
    ) -> bool:
        """Commit reference updates of *parent*, asking first when the run was aborted."""
        if after_abort:
            self.ui.inform(
                f"Processing was aborted but references of {parent} were already updated in {path}."
            )
            if not confirm_continue(self.context, CONTEXT_COMMIT_REFERENCE_CHANGE_AFTER_ABORT):
                self.ui.inform(f"Reference changes in {path} were left uncommitted.")
                return False
        message = f"Updated references of {parent}."
        module.scm.commit(path, message, {COMMIT_ATTR_REFERENCE_VERSION_CHANGE: "true"})
        self.actions.add(f"Reference changes in {parent} committed.")
        return True
