"""Merge jobs.

- :class:`MergeMain` merges each matched static source version into an independently
  specified destination dynamic version.
- :class:`MergeReferenceGraph` merges a source reference graph into the destination graph
  rooted at each matched dynamic version, following references on both sides.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Set, Tuple

from .context import ExecContext
from .errors import AbortError, BackendError, UpdateNeededError, UserError
from .interaction import (
    COND_MERGE_CONFLICTS,
    CONTEXT_MAY_LOSE_COMMITS,
    CONTEXT_MERGE,
    CONTEXT_MERGE_CONFLICTS,
    AlwaysNeverAsk,
    confirm_continue,
    continue_after_exceptional_condition,
    get_always_never_ask,
)
from .matchers import NodePathMatcher, ReferencePathMatcher
from .models import Commit, MergeResult, ModuleVersion, NodePath, Reference, Version, WorkspaceMode
from .modules import Module
from .reconcile import DifferenceKind, reconcile_references
from .switch_dynamic import SwitchToDynamicVersion
from .traversal import ReferenceUpdates, RootModuleVersionJob

logger = logging.getLogger(__name__)

PROP_SPECIFIC_DEST_VERSION = "SPECIFIC_DEST_VERSION"
PROP_CAN_REUSE_DEST_VERSION = "CAN_REUSE_DEST_VERSION"
PROP_REUSE_DEST_VERSION = "REUSE_DEST_VERSION"
PROP_MERGE_MAIN_MODE = "MERGE_MAIN_MODE"
PROP_CAN_REUSE_SRC_VERSION = "CAN_REUSE_SRC_VERSION"
PROP_REUSE_SRC_VERSION = "REUSE_SRC_VERSION"


class MergeMode(Enum):
    MERGE = "MERGE"
    MERGE_EXCLUDE_VERSION_CHANGING_COMMITS = "MERGE_EXCLUDE_VERSION_CHANGING_COMMITS"
    MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS = (
        "MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS"
    )
    SRC_VALIDATE_NO_DIVERGING_COMMITS = "SRC_VALIDATE_NO_DIVERGING_COMMITS"

    @property
    def excludes_version_changing_commits(self) -> bool:
        return self in (
            MergeMode.MERGE_EXCLUDE_VERSION_CHANGING_COMMITS,
            MergeMode.MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS,
        )

    @property
    def validates_no_diverging_commits(self) -> bool:
        return self in (
            MergeMode.MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS,
            MergeMode.SRC_VALIDATE_NO_DIVERGING_COMMITS,
        )


class MergeJob(RootModuleVersionJob):
    """Destination workspaces, the merge itself and the end-of-run summary."""

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
    ):
        super().__init__(context, roots, matcher)
        self.conflicted_destinations: Set[ModuleVersion] = set()
        self.merged: List[str] = []
        self.nothing_to_merge: List[str] = []
        self.conflicts: List[str] = []
        self.skipped: List[str] = []

    @contextmanager
    def destination_workspace(self, module: Module, dest: ModuleVersion) -> Iterator[Tuple[Path, bool]]:
        """Yield the user workspace of *dest* and whether it was checked out for this merge.

        A workspace checked out here is deleted afterwards unless *dest* was left with conflicts.
        """
        workspace = self.context.workspace
        created = False
        if workspace.exists(dest):
            path = workspace.acquire(dest, WorkspaceMode.USER)
        else:
            other = workspace.conflict(dest)
            if other is not None:
                raise UserError(f"A user workspace already exists for {other}; cannot check out {dest}.")
            path = workspace.acquire(dest, WorkspaceMode.USER)
            created = True
            try:
                module.scm.checkout(dest.version, path)
            except (BackendError, UserError):
                workspace.release(path)
                workspace.delete(dest)
                raise

        try:
            yield path, created
        finally:
            workspace.release(path)

        if created and dest not in self.conflicted_destinations:
            workspace.delete(dest)

    def perform_merge(
        self,
        module: Module,
        path: Path,
        source: ModuleVersion,
        dest: ModuleVersion,
        diverging: List[Commit],
        excluded: List[str],
        created: bool,
    ) -> Optional[MergeResult]:
        """Merge *source* into the workspace of *dest*. None if the operator declined."""
        scm = module.scm
        label = f"{source} -> {dest.version}"
        self.ui.inform(
            f"{len(diverging) - len(excluded)} commit(s) of {source} will be merged into {dest.version} in {path}."
        )
        if excluded:
            self.ui.inform(f"{len(excluded)} version-changing commit(s) will be excluded.")
        if not confirm_continue(self.context, CONTEXT_MERGE):
            return None

        try:
            result = scm.merge(path, source.version, excluded)
        except UpdateNeededError:
            if not created:
                raise
            logger.info("Updating new workspace %s before retrying the merge", path)
            if scm.update(path):
                raise BackendError(f"Conflicts while updating the new workspace {path}")
            result = scm.merge(path, source.version, excluded)

        if result is MergeResult.MERGED:
            self.merged.append(label)
            self.actions.add(f"{source} merged into {dest.version}.")
        elif result is MergeResult.NOTHING_TO_MERGE:
            self.report_nothing_to_merge(source, dest)
        else:
            self.conflicted_destinations.add(dest)
            self.actions.add(f"Merge of {source} into {dest.version} left conflicts in {path}.")
            self.report_conflict(
                module,
                label,
                f"Merge of {source} into {dest.version} has conflicts. Resolve them in {path} and commit.",
            )
        return result

    def report_nothing_to_merge(self, source: ModuleVersion, dest: ModuleVersion) -> None:
        self.ui.inform(f"Nothing to merge from {source} into {dest.version}.")
        self.nothing_to_merge.append(f"{source} -> {dest.version}")

    def report_conflict(self, module: Module, label: str, message: str) -> None:
        """Apply the merge-conflicts policy: abort the run or inform and ask to continue."""
        self.conflicts.append(label)
        if not continue_after_exceptional_condition(self.context, COND_MERGE_CONFLICTS, module.node_path):
            raise AbortError(message)
        self.ui.inform(message)
        confirm_continue(self.context, CONTEXT_MERGE_CONFLICTS)

    def after_iterate(self) -> None:
        for title, entries in (
            ("Merged", self.merged),
            ("Nothing to merge", self.nothing_to_merge),
            ("Conflicts", self.conflicts),
            ("Skipped", self.skipped),
        ):
            if entries:
                with self.ui.bracket(f"{title}:"):
                    for entry in sorted(entries):
                        self.ui.inform(entry)
        super().after_iterate()


class MergeMain(MergeJob):
    """Merge each matched static source version into a destination dynamic version.

    Destinations that end up with conflicts keep their workspace and receive no further
    merge in the run.
    """

    title = "merge main"
    handle_dynamic_versions = False

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
        dest_version: Optional[Version] = None,
    ):
        super().__init__(context, roots, matcher)
        self.dest_version = dest_version

    # ------------------------------------------------------------------
    # Destination and mode
    # ------------------------------------------------------------------

    def _merge_mode(self, module: Module) -> MergeMode:
        value = self.properties.get(PROP_MERGE_MAIN_MODE, module.node_path)
        if value is None:
            return MergeMode.MERGE_EXCLUDE_VERSION_CHANGING_COMMITS
        try:
            return MergeMode(value.strip().upper())
        except ValueError:
            raise UserError(f"Invalid merge mode {value!r} for {module.node_path}") from None

    def _validate_destination(self, module: Module, version: Version) -> Version:
        if not version.is_dynamic:
            raise UserError(f"Destination version {version} of {module.node_path} must be dynamic.")
        if not module.scm.version_exists(version):
            raise UserError(f"Destination version {version} of {module.node_path} does not exist.")
        return version

    def resolve_dest_version(self, module: Module, source: ModuleVersion) -> Version:
        if self.dest_version is not None:
            return self._validate_destination(module, self.dest_version)

        node_path = module.node_path
        specific = self.properties.get(PROP_SPECIFIC_DEST_VERSION, node_path)
        if specific:
            return self._validate_destination(module, _parse_version(specific))

        policy = get_always_never_ask(self.context, PROP_CAN_REUSE_DEST_VERSION, node_path)
        reuse = self.properties.get(PROP_REUSE_DEST_VERSION, node_path)
        if reuse and policy is AlwaysNeverAsk.ALWAYS:
            self.ui.inform(f"Reusing destination version {reuse} for {source}.")
            return self._validate_destination(module, _parse_version(reuse))

        default = reuse or str(module.scm.default_version())
        answer = self.ui.ask(f"Destination dynamic version for merging {source}?", default)
        version = self._validate_destination(module, _parse_version(answer))
        self.properties.set(PROP_REUSE_DEST_VERSION, str(version))
        if policy is AlwaysNeverAsk.ASK and self.ui.confirm(
            "Automatically reuse this destination version for the remaining modules?", default=False
        ):
            self.properties.set(PROP_CAN_REUSE_DEST_VERSION, AlwaysNeverAsk.ALWAYS.value)
        return version

    # ------------------------------------------------------------------
    # Visit
    # ------------------------------------------------------------------

    def visit_matched_module_version(self, reference: Reference) -> bool:
        source = reference.module_version
        module = self.context.model.require_module(source.node_path)
        dest = ModuleVersion(source.node_path, self.resolve_dest_version(module, source))

        if dest in self.conflicted_destinations:
            self.ui.inform(f"{dest} has unresolved merge conflicts; {source} is not merged into it.")
            self.skipped.append(f"{source} -> {dest.version}")
            return True

        with self.destination_workspace(module, dest) as (path, created):
            with self.ui.bracket(f"Merging {source} into {dest.version}"):
                if not created:
                    self.require_synchronized(module, path, dest)
                self._merge(module, path, source, dest, created)
        return True

    def _merge(
        self, module: Module, path: Path, source: ModuleVersion, dest: ModuleVersion, created: bool
    ) -> Optional[MergeResult]:
        scm = module.scm
        mode = self._merge_mode(module)

        diverging = scm.list_commits_diverging(source.version, dest.version)
        excluded: List[str] = []
        if mode.excludes_version_changing_commits:
            excluded = [commit.id for commit in diverging if commit.is_version_change]
        if len(excluded) == len(diverging):
            self.report_nothing_to_merge(source, dest)
            return MergeResult.NOTHING_TO_MERGE

        if mode.validates_no_diverging_commits:
            dest_only = scm.list_commits_diverging(dest.version, source.version)
            if mode is MergeMode.MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS:
                dest_only = [commit for commit in dest_only if not commit.is_version_change]
            if dest_only:
                self.ui.inform(
                    f"{dest.version} has {len(dest_only)} commit(s) not in {source.version}; "
                    "merge refused."
                )
                self.skipped.append(f"{source} -> {dest.version}")
                return None

        return self.perform_merge(module, path, source, dest, diverging, excluded, created)


class MergeReferenceGraph(MergeJob):
    """Merge a source reference graph into the graph rooted at each matched dynamic version.

    The source version is given for the root module of the path that leads to the matched
    destination. The source of any other destination is found by following the same modules
    through the source graph, ignoring versions. After a module is merged, its references are
    paired with the source's by module:

    - static on both sides: the destination takes the source version when only the source
      graph diverges; both graphs diverging is a conflict;
    - dynamic source, static destination: when the source graph diverges, the destination
      reference is first switched to a dynamic version;
    - dynamic destination: the pair is merged recursively.

    Commits that only change the artifact version or reference versions are neither merged
    nor counted as divergence.
    """

    title = "merge reference graph"
    handle_static_versions = False

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
        src_version: Optional[Version] = None,
    ):
        super().__init__(context, roots, matcher)
        self.src_version = src_version
        self.performed: Set[Tuple[ModuleVersion, Version]] = set()

    def _validate_source(self, module: Module, version: Version) -> Version:
        if not module.scm.version_exists(version):
            raise UserError(f"Source version {version} of {module.node_path} does not exist.")
        return version

    def resolve_src_version(self, module: Module, dest: ModuleVersion) -> Version:
        if self.src_version is not None:
            return self._validate_source(module, self.src_version)

        node_path = module.node_path
        policy = get_always_never_ask(self.context, PROP_CAN_REUSE_SRC_VERSION, node_path)
        reuse = self.properties.get(PROP_REUSE_SRC_VERSION, node_path)
        if reuse and policy is AlwaysNeverAsk.ALWAYS:
            self.ui.inform(f"Reusing source version {reuse} for {dest}.")
            return self._validate_source(module, _parse_version(reuse))

        answer = self.ui.ask(f"Source version to merge into {dest}?", reuse)
        version = self._validate_source(module, _parse_version(answer))
        self.properties.set(PROP_REUSE_SRC_VERSION, str(version))
        if policy is AlwaysNeverAsk.ASK and self.ui.confirm(
            "Automatically reuse this source version for the remaining modules?", default=False
        ):
            self.properties.set(PROP_CAN_REUSE_SRC_VERSION, AlwaysNeverAsk.ALWAYS.value)
        return version

    # ------------------------------------------------------------------
    # Visit
    # ------------------------------------------------------------------

    def visit_matched_module_version(self, reference: Reference) -> bool:
        root = self.reference_path[0].module_version
        root_module = self.context.model.require_module(root.node_path)
        source = self._locate_source(ModuleVersion(root.node_path, self.resolve_src_version(root_module, root)))
        if source is not None:
            module = self.context.model.require_module(reference.module_version.node_path)
            self._merge_graph(module, source, reference.module_version)
        return False

    def _locate_source(self, source: ModuleVersion) -> Optional[ModuleVersion]:
        """Follow the current path from the source root, ignoring versions."""
        for dest_reference in list(self.reference_path)[1:]:
            module = self.context.model.require_module(source.node_path)
            counterpart = next(
                (
                    ref
                    for ref in self.list_child_references(module, source.version)
                    if ref.module_version is not None and ref.equals_ignoring_version(dest_reference)
                ),
                None,
            )
            if counterpart is None:
                self.ui.inform(f"{source} has no reference corresponding to {dest_reference}; nothing to merge.")
                return None
            source = counterpart.module_version
        return source

    def _merge_graph(self, module: Module, source: ModuleVersion, dest: ModuleVersion) -> bool:
        """Merge *source* into *dest*, the leaf of the current path, then their references.

        Returns True when the whole merge must stop.
        """
        if (dest, source.version) in self.performed:
            self.ui.inform(f"{source} was already merged into {dest.version}.")
            return False
        self.performed.add((dest, source.version))

        with self.destination_workspace(module, dest) as (path, created):
            with self.ui.bracket(f"Merging {source} into {dest.version}"):
                if not created:
                    self.require_synchronized(module, path, dest)
                diverging = module.scm.list_commits_diverging(source.version, dest.version)
                excluded = [commit.id for commit in diverging if _is_bookkeeping(commit)]
                if len(excluded) == len(diverging):
                    self.report_nothing_to_merge(source, dest)
                else:
                    result = self.perform_merge(module, path, source, dest, diverging, excluded, created)
                    if result is None or result is MergeResult.CONFLICTS or self.cancelled:
                        return True
                return self._merge_references(module, path, source, dest)

    def _merge_references(self, module: Module, path: Path, source: ModuleVersion, dest: ModuleVersion) -> bool:
        pairing = reconcile_references(
            self.list_references(module, path),
            self.list_child_references(module, source.version),
            {},
            _no_selection,
        )
        with self.reference_updates(module, path, dest) as updates:
            for difference in pairing.differences:
                if difference.kind is DifferenceKind.REMOVED:
                    logger.info("%s has no counterpart in %s; reference skipped", difference.original, source)
                    continue
                if difference.kind is DifferenceKind.ADDED:
                    continue
                child = self._align_reference(module, path, dest, difference.original, difference.new, updates)
                if child is None or self.cancelled:
                    updates.aborted = True
                    return True
                if not child.module_version.version.is_dynamic:
                    continue
                child_module = self.context.model.require_module(child.module_version.node_path)
                with self.reference_path.entered(child):
                    if self._merge_graph(child_module, difference.new.module_version, child.module_version):
                        updates.aborted = True
                        return True
        return False

    def _align_reference(
        self,
        module: Module,
        path: Path,
        dest: ModuleVersion,
        dest_child: Reference,
        source_child: Reference,
        updates: ReferenceUpdates,
    ) -> Optional[Reference]:
        """Bring a static destination reference in line with its source counterpart.

        Returns the destination reference to continue with, None when the merge must stop.
        """
        dest_version = dest_child.module_version.version
        source_version = source_child.module_version.version
        if dest_version.is_dynamic:
            return dest_child

        node_path = dest_child.module_version.node_path
        source_diverges = self.diverges(node_path, source_version, dest_version)
        dest_diverges = self.diverges(node_path, dest_version, source_version)

        if source_version.is_static:
            if source_diverges and dest_diverges:
                self.report_conflict(
                    module,
                    f"{source_child.module_version} -> {dest_version}",
                    f"Both {source_child} and {dest_child} in {dest} have diverging commits; "
                    "the references cannot be merged.",
                )
                return None
            if not source_diverges:
                return dest_child
            self.ui.inform(f"Only {source_child} has diverging commits; {dest} takes its version.")
            return self._update(module, path, dest, dest_child, source_version, updates)

        if not source_diverges:
            return dest_child
        if dest_diverges:
            self.ui.inform(
                f"{dest_child} also has commits not in {source_child}. Expect them in the dynamic "
                "version it is switched to."
            )
        switched = self._switch_to_dynamic(dest_child.module_version)
        if switched is None:
            self.report_conflict(
                module,
                f"{source_child.module_version} -> {dest_version}",
                f"{dest_child.module_version} was not switched to a dynamic version; "
                f"{source_child} cannot be merged into it.",
            )
            return None
        if self.diverges(node_path, dest_version, switched):
            self.ui.inform(f"{switched} does not include every commit of {dest_version}; they may be lost.")
            if not confirm_continue(self.context, CONTEXT_MAY_LOSE_COMMITS):
                return None
        return self._update(module, path, dest, dest_child, switched, updates)

    def _update(
        self,
        module: Module,
        path: Path,
        dest: ModuleVersion,
        dest_child: Reference,
        version: Version,
        updates: ReferenceUpdates,
    ) -> Optional[Reference]:
        if not updates.record(self.update_reference(module, path, dest, dest_child, version)):
            return None
        return dest_child.with_version(version)

    def _switch_to_dynamic(self, module_version: ModuleVersion) -> Optional[Version]:
        job = SwitchToDynamicVersion(self.context, [module_version], NodePathMatcher([module_version.node_path]))
        job.run()
        if self.cancelled or not job.roots_changed:
            return None
        switched = job.roots[0].version
        self.actions.add(f"{module_version} switched to {switched} to receive the merge.")
        return switched

    def diverges(self, node_path: NodePath, version: Version, other: Version) -> bool:
        """True if *version* of a module, or a version it references, has commits missing
        from *other*.

        References are paired with those of *other* by module. Modules outside the model
        never diverge.
        """
        module = self.context.model.get_module(node_path)
        if module is None:
            return False
        commits = module.scm.list_commits_diverging(version, other)
        if any(not _is_bookkeeping(commit) for commit in commits):
            logger.info("%s of %s has commits not in %s", version, node_path, other)
            return True
        pairing = reconcile_references(
            self.list_child_references(module, other),
            self.list_child_references(module, version),
            {},
            _no_selection,
        )
        return any(
            difference.kind is DifferenceKind.VERSION_CHANGED
            and self.diverges(
                difference.new.module_version.node_path,
                difference.new.module_version.version,
                difference.original.module_version.version,
            )
            for difference in pairing.differences
        )


def _is_bookkeeping(commit: Commit) -> bool:
    return commit.is_version_change or commit.is_reference_change


def _no_selection(node_path: NodePath) -> Optional[Version]:
    return None


def _parse_version(text: str) -> Version:
    try:
        return Version.parse(text)
    except ValueError as exc:
        raise UserError(str(exc)) from None
