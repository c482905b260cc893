"""Promotion of dynamic module versions to static versions.

Two jobs share the algorithm and differ only in how the target static version is chosen:

- :class:`CreateStaticVersion` asks the version policy for the next static version.
- :class:`Release` lets the policy select it, possibly reusing an existing static version,
  and aborts the run when no version is selected.

A matched dynamic node is promoted together with the whole closure of dynamic modules it
references, children first, rewriting each parent reference to the child's new static
version before the parent itself is promoted.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from .context import ExecContext
from .errors import AbortError, BuildFailedError, InvariantViolation, UserError
from .interaction import (
    CONTEXT_CREATE_STATIC_VERSION,
    confirm_continue,
    decide_always_never_yes_no_ask,
)
from .matchers import ReferencePathMatcher
from .models import (
    COMMIT_ATTR_EQUIVALENT_STATIC_VERSION,
    COMMIT_ATTR_VERSION_CHANGE,
    ArtifactVersion,
    ModuleVersion,
    Reference,
    Version,
    WorkspaceMode,
)
from .modules import Module
from .registry import TransitionRegistry
from .traversal import RECOVERABLE_ERRORS, RootModuleVersionJob, VisitOutcome

logger = logging.getLogger(__name__)

PROP_NO_VALIDATION_BUILD = "IND_NO_PRE_CREATE_STATIC_VERSION_VALIDATION_BUILD"
PROP_BUILD_CONTEXT = "CREATE_STATIC_VERSION_BUILD_CONTEXT"
PROP_REVERT_ARTIFACT_VERSION = "REVERT_ARTIFACT_VERSION"


class PromotionJob(RootModuleVersionJob):
    """Shared traversal and transition protocol of the promotion jobs."""

    title = "promotion"
    handle_static_versions = False

    def __init__(
        self,
        context: ExecContext,
        roots: Sequence[ModuleVersion],
        matcher: Optional[ReferencePathMatcher] = None,
    ):
        super().__init__(context, roots, matcher)
        self.registry: TransitionRegistry[ModuleVersion] = TransitionRegistry()

    def resolve_static_version(self, module: Module, module_version: ModuleVersion) -> Optional[Version]:
        """Return the static version to promote *module_version* to, None to abort."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def visit_module_version(self, reference: Reference) -> VisitOutcome:
        module_version = reference.module_version
        with self.reference_path.entered(reference), self.ui.bracket(
            f"Visiting {self.reference_path}"
        ):
            if not module_version.version.is_dynamic:
                logger.debug("%s is static, nothing to promote", module_version)
                return VisitOutcome.none()

            established = self.registry.get(module_version)
            if established is not None:
                self.ui.inform(f"Static version {established} already established for {module_version}.")
                return VisitOutcome.changed(established)

            module = self.context.model.require_module(module_version.node_path)

            if self.matcher.matches(self.reference_path):
                self.ui.inform(f"{module_version} matched, promoting it with its dynamic references.")
                static_version = self.promote(reference)
                if static_version is None:
                    self.context.cancellation.cancel(f"promotion of {module_version} did not complete")
                    return VisitOutcome.none()
                return VisitOutcome.changed(static_version)

            if self.matcher.can_match_children(self.reference_path):
                self._visit_children(module, module_version)

        return VisitOutcome.none()

    def _visit_children(self, module: Module, module_version: ModuleVersion) -> None:
        """Visit the children of an unmatched node and propagate the ones that changed."""
        with self.checked_out(module, module_version.version) as path:
            self.require_synchronized(module, path, module_version)
            with self.reference_updates(module, path, module_version) as updates:
                for child in self.list_references(module, path):
                    if child.module_version is None:
                        logger.debug("Skipping external reference %s", child)
                        continue
                    try:
                        outcome = self.visit_module_version(child)
                    except AbortError:
                        raise
                    except RECOVERABLE_ERRORS as exc:
                        self.handle_visit_error(child.module_version, exc)
                        outcome = VisitOutcome.none()
                    if outcome.is_changed and outcome.version != child.module_version.version:
                        result = self.update_reference(module, path, module_version, child, outcome.version)
                        if not updates.record(result):
                            break
                    if self.cancelled:
                        updates.aborted = True
                        break

    # ------------------------------------------------------------------
    # Promotion closure
    # ------------------------------------------------------------------

    def promote(self, reference: Reference) -> Optional[Version]:
        """Promote the node at the end of the current path, dynamic references first.

        Ignores the matcher: once a promotion starts, every dynamic module reachable from
        the node must end up static. The caller has already pushed *reference*.
        """
        module_version = reference.module_version
        if not module_version.version.is_dynamic:
            raise InvariantViolation(f"Cannot promote static version {module_version}")

        established = self.registry.get(module_version)
        if established is not None:
            self.ui.inform(f"Static version {established} already established for {module_version}.")
            return established

        module = self.context.model.require_module(module_version.node_path)
        with self.checked_out(module, module_version.version) as path:
            self.require_synchronized(module, path, module_version)
            with self.reference_updates(module, path, module_version) as updates:
                for child in self.list_references(module, path):
                    if not self._needs_promotion(child, module_version):
                        continue
                    with self.reference_path.entered(child), self.ui.bracket(
                        f"Promoting {child.module_version}"
                    ):
                        child_version = self.promote(child)
                    if child_version is None or self.cancelled:
                        updates.aborted = True
                        break
                    result = self.update_reference(module, path, module_version, child, child_version)
                    if not updates.record(result):
                        break
            if updates.aborted or self.cancelled:
                return None

        return self.create_static_version(module, module_version)

    def _needs_promotion(self, child: Reference, parent: ModuleVersion) -> bool:
        if child.module_version is None:
            if child.artifact_version is not None and child.artifact_version.is_dynamic:
                raise UserError(
                    f"{parent} references {child}, a dynamic version of a module outside the "
                    "model. It cannot be promoted."
                )
            return False
        return child.module_version.version.is_dynamic

    # ------------------------------------------------------------------
    # Transition protocol
    # ------------------------------------------------------------------

    def create_static_version(self, module: Module, module_version: ModuleVersion) -> Optional[Version]:
        """Create the static version of one module whose references are all static."""
        target = self.resolve_static_version(module, module_version)
        if target is None:
            return None
        if not target.is_static:
            raise InvariantViolation(f"Version policy returned {target}, which is not static")

        if module.scm.version_exists(target):
            self.ui.inform(f"Static version {target} of {module.node_path} already exists and is reused.")
            logger.info("Reusing existing static version %s for %s", target, module_version)
            return self.registry.record(module_version, target)

        workspace = self.context.workspace
        in_user_workspace = workspace.exists(module_version)
        if in_user_workspace:
            path = workspace.acquire(module_version, WorkspaceMode.USER)
        else:
            path = module.scm.checkout_for_inspection(module_version.version)
        try:
            with self.ui.bracket(f"Creating static version {target} of {module_version}"):
                if in_user_workspace:
                    self.ui.inform(f"Using the user workspace {path}.")
                self.require_synchronized(module, path, module_version)
                if not confirm_continue(self.context, CONTEXT_CREATE_STATIC_VERSION):
                    return None
                self._cut_static_version(module, module_version, path, target)
        finally:
            workspace.release(path)

        self.actions.add(f"Static version {target} created for {module_version}.")
        return self.registry.record(module_version, target)

    def _cut_static_version(
        self, module: Module, module_version: ModuleVersion, path: Path, target: Version
    ) -> None:
        scm = module.scm
        manager = module.artifact_version_manager
        mapper = module.artifact_version_mapper
        build_required = self._validation_build_required(module, module_version)
        artifact_version = None
        previous = None
        commit_required = False

        if manager is not None and mapper is not None:
            artifact_version = mapper.map_version(target)
            # read only when a failed build may have to restore it
            if build_required:
                previous = manager.get(path)
            commit_required = manager.set(path, artifact_version)
            if commit_required:
                self.ui.inform(f"Artifact version set to {artifact_version}.")

        if build_required:
            self._validation_build(module, module_version, path, previous if commit_required else None)

        if commit_required:
            scm.commit(
                path,
                f"Artifact version set to {artifact_version} for static version {target}.",
                {COMMIT_ATTR_VERSION_CHANGE: "true"},
            )
            self.actions.add(f"Artifact version change for {target} committed in {module_version}.")

        scm.create_version(path, target, switch_to_it=False)
        self.ui.inform(f"Static version {target} created.")

        if artifact_version is not None:
            self._revert_artifact_version(module, module_version, path, target, artifact_version)

    def _validation_build_required(self, module: Module, module_version: ModuleVersion) -> bool:
        if module.builder is None:
            return False
        if self.properties.get_bool(PROP_NO_VALIDATION_BUILD, module.node_path):
            logger.info("Validation build skipped for %s", module_version)
            return False
        return True

    def _validation_build(
        self, module: Module, module_version: ModuleVersion, path: Path, rollback_to
    ) -> None:
        build_context = self.properties.get(PROP_BUILD_CONTEXT, module.node_path)
        with self.ui.log_sink(f"Validation build of {module_version}") as sink:
            succeeded = module.builder.build(path, build_context, sink)
        if succeeded:
            return
        if rollback_to is not None:
            module.artifact_version_manager.set(path, rollback_to)
            self.ui.inform(f"Artifact version restored to {rollback_to}.")
        raise BuildFailedError(f"Validation build of {module_version} in {path} failed.")

    def _revert_artifact_version(
        self,
        module: Module,
        module_version: ModuleVersion,
        path: Path,
        target: Version,
        current: ArtifactVersion,
    ) -> None:
        manager = module.artifact_version_manager
        original = module.artifact_version_mapper.map_version(module_version.version)
        if current == original:
            return
        revert = decide_always_never_yes_no_ask(
            self.context,
            PROP_REVERT_ARTIFACT_VERSION,
            f"Revert the artifact version of {module_version} from {current} to {original}?",
            module.node_path,
        )
        if not revert:
            return
        if manager.set(path, original):
            module.scm.commit(
                path,
                f"Artifact version reverted to {original} after creating static version {target}.",
                {
                    COMMIT_ATTR_EQUIVALENT_STATIC_VERSION: str(target),
                    COMMIT_ATTR_VERSION_CHANGE: "true",
                },
            )
            self.actions.add(f"Artifact version of {module_version} reverted to {original}.")


class CreateStaticVersion(PromotionJob):
    title = "create static version"

    def resolve_static_version(self, module: Module, module_version: ModuleVersion) -> Optional[Version]:
        return module.require_version_policy().next_static_version(module_version.version)


class Release(PromotionJob):
    title = "release"

    def resolve_static_version(self, module: Module, module_version: ModuleVersion) -> Optional[Version]:
        selected = module.require_version_policy().select_static_version(module_version.version)
        if selected is None:
            self.ui.inform(f"No static version selected for {module_version}.")
        return selected
