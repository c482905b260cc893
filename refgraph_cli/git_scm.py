"""Git implementation of the source-control capability.

Dynamic versions ``D/<name>`` are branches and static versions ``S/<name>`` annotated tags.
Commit attributes travel in the commit message as a ``refgraph-attributes:`` JSON line.
Version attributes of a static version are stored the same way in its tag message; those of
a dynamic version in an annotated tag ``refgraph-attributes/<branch>``.

Read-only queries (versions, commits) run against a bare mirror kept under
``REFGRAPH_HOME/mirrors``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from . import config
from .errors import BackendError, UpdateNeededError
from .models import Commit, MergeResult, ModuleVersion, NodePath, SyncScope, Version, VersionType, WorkspaceMode
from .plugins import Scm, WorkspaceAllocator

logger = logging.getLogger(__name__)

ATTRIBUTES_PREFIX = "refgraph-attributes:"
VERSION_ATTRIBUTES_TAG_PREFIX = "refgraph-attributes/"
_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first")


# ---------------------------------------------------------------------
# Core git runner
# ---------------------------------------------------------------------

def _run_git(repo_path: Path, args: List[str]) -> Tuple[int, str, str]:
    logger.debug("git %s (in %s)", " ".join(args), repo_path)
    p = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=str(repo_path),
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        env={**os.environ, "GIT_PAGER": "cat", "PAGER": "cat", "GIT_TERMINAL_PROMPT": "0"},
    )
    return p.returncode, (p.stdout or "").strip(), (p.stderr or "").strip()


def _git(repo_path: Path, args: List[str]) -> str:
    rc, out, err = _run_git(repo_path, args)
    if rc != 0:
        raise BackendError(f"git {' '.join(args)} failed: {err or out}", returncode=rc, stderr=err)
    return out


def format_message(message: str, attributes: Optional[Dict[str, str]]) -> str:
    if not attributes:
        return message
    return f"{message}\n\n{ATTRIBUTES_PREFIX} {json.dumps(attributes, sort_keys=True)}"


def parse_attributes(message: str) -> Dict[str, str]:
    for line in message.splitlines():
        if line.startswith(ATTRIBUTES_PREFIX):
            try:
                return {str(k): str(v) for k, v in json.loads(line[len(ATTRIBUTES_PREFIX):]).items()}
            except ValueError:
                logger.warning("Ignoring malformed attributes line: %s", line)
    return {}


class GitScm(Scm):
    def __init__(
        self,
        node_path: NodePath,
        url: str,
        workspace: WorkspaceAllocator,
        mirror_dir: Optional[Path] = None,
    ):
        self.node_path = node_path
        self.url = url
        self.workspace = workspace
        self.mirror_dir = mirror_dir or (config.BASE_DIR / "mirrors")
        self._mirror_fresh = False

    # ------------------------------------------------------------------
    # Mirror
    # ------------------------------------------------------------------

    def _mirror(self) -> Path:
        path = self.mirror_dir / re.sub(r"[^A-Za-z0-9._-]+", "_", str(self.node_path))
        if not (path / "HEAD").exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            _git(path.parent, ["clone", "--mirror", self.url, str(path)])
            self._mirror_fresh = True
        elif not self._mirror_fresh:
            _git(path, ["remote", "update", "--prune"])
            self._mirror_fresh = True
        return path

    def _published(self) -> None:
        self._mirror_fresh = False

    @staticmethod
    def _ref(version: Version) -> str:
        if version.is_dynamic:
            return f"refs/heads/{version.name}"
        return f"refs/tags/{version.name}"

    @staticmethod
    def _workspace_rev(version: Version) -> str:
        if version.is_dynamic:
            return f"origin/{version.name}"
        return f"refs/tags/{version.name}"

    def _parse_log(self, mirror: Path, output: str) -> List[Commit]:
        commits = []
        for record in output.split("\x1e"):
            record = record.strip("\n")
            if not record:
                continue
            sha, _, message = record.partition("\x1f")
            sha = sha.strip()
            tags = _git(mirror, ["tag", "--points-at", sha])
            static_versions = [
                Version.static(tag)
                for tag in tags.splitlines()
                if tag and not tag.startswith(VERSION_ATTRIBUTES_TAG_PREFIX)
            ]
            commits.append(Commit(sha, message.strip(), parse_attributes(message), static_versions))
        return commits

    # ------------------------------------------------------------------
    # Checkouts
    # ------------------------------------------------------------------

    def checkout_for_inspection(self, version: Version) -> Path:
        path = self.workspace.acquire(ModuleVersion(self.node_path, version), WorkspaceMode.SYSTEM)
        if self.workspace.is_user_workspace(path):
            return path
        try:
            if not (path / ".git").exists():
                _git(path, ["clone", self.url, "."])
            _git(path, ["fetch", "--prune", "--tags", "--force", "origin"])
            if version.is_dynamic:
                _git(path, ["checkout", "-B", version.name, f"origin/{version.name}"])
            else:
                _git(path, ["checkout", "--detach", f"refs/tags/{version.name}"])
            _git(path, ["reset", "--hard"])
            _git(path, ["clean", "-fd"])
        except BackendError:
            self.workspace.release(path)
            raise
        return path

    def checkout(self, version: Version, path: Path) -> None:
        _git(path, ["clone", self.url, "."])
        if version.is_dynamic:
            _git(path, ["checkout", version.name])
        else:
            _git(path, ["checkout", "--detach", f"refs/tags/{version.name}"])

    def is_synchronized(self, path: Path, scope: SyncScope = SyncScope.ALL) -> bool:
        if scope in (SyncScope.LOCAL, SyncScope.ALL):
            if _git(path, ["status", "--porcelain"]):
                return False
        if scope in (SyncScope.REMOTE, SyncScope.ALL):
            _git(path, ["fetch", "--prune", "origin"])
            rc, _, _ = _run_git(path, ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"])
            if rc != 0:
                # Detached on a tag or no upstream: nothing to pull or push.
                return True
            counts = _git(path, ["rev-list", "--left-right", "--count", "HEAD...@{u}"]).split()
            if counts != ["0", "0"]:
                return False
        return True

    def update(self, path: Path) -> bool:
        rc, out, err = _run_git(path, ["pull", "--no-rebase", "--no-edit"])
        if rc == 0:
            return False
        if _git(path, ["diff", "--name-only", "--diff-filter=U"]):
            return True
        raise BackendError(f"git pull failed in {path}: {err or out}", returncode=rc, stderr=err)

    def switch_version(self, path: Path, version: Version) -> None:
        _git(path, ["fetch", "--prune", "--tags", "origin"])
        if version.is_dynamic:
            _git(path, ["checkout", version.name])
        else:
            _git(path, ["checkout", "--detach", f"refs/tags/{version.name}"])
        self.workspace.retarget(path, ModuleVersion(self.node_path, version))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _push(self, path: Path, refspec: List[str]) -> None:
        rc, out, err = _run_git(path, ["push", "origin", *refspec])
        if rc != 0:
            if any(marker in err for marker in _REJECTED_MARKERS):
                raise UpdateNeededError(f"Push from {path} rejected: the workspace must be updated first")
            raise BackendError(f"git push failed in {path}: {err or out}", returncode=rc, stderr=err)
        self._published()

    def create_version(
        self,
        path: Path,
        new_version: Version,
        switch_to_it: bool = False,
        attributes: Optional[Dict[str, str]] = None,
    ) -> None:
        if new_version.is_dynamic:
            _git(path, ["branch", new_version.name])
            self._push(path, [f"refs/heads/{new_version.name}:refs/heads/{new_version.name}"])
            if attributes:
                tag = f"{VERSION_ATTRIBUTES_TAG_PREFIX}{new_version.name}"
                _git(path, ["tag", "-a", tag, "-m", format_message(f"Attributes of {new_version}", attributes)])
                self._push(path, [f"refs/tags/{tag}"])
            if switch_to_it:
                _git(path, ["checkout", new_version.name])
                _git(path, ["branch", "--set-upstream-to", f"origin/{new_version.name}"])
        else:
            message = format_message(f"Static version {new_version}", attributes)
            _git(path, ["tag", "-a", new_version.name, "-m", message])
            self._push(path, [f"refs/tags/{new_version.name}"])
            if switch_to_it:
                _git(path, ["checkout", "--detach", f"refs/tags/{new_version.name}"])
        if switch_to_it:
            self.workspace.retarget(path, ModuleVersion(self.node_path, new_version))
        logger.info("Created %s of %s from %s", new_version, self.node_path, path)

    def commit(self, path: Path, message: str, attributes: Optional[Dict[str, str]] = None) -> None:
        _git(path, ["add", "-A"])
        _git(path, ["commit", "-m", format_message(message, attributes)])
        branch = _git(path, ["rev-parse", "--abbrev-ref", "HEAD"])
        if branch == "HEAD":
            raise BackendError(f"Cannot publish a commit made on a detached HEAD in {path}")
        self._push(path, [f"HEAD:refs/heads/{branch}"])

    def merge(
        self, path: Path, source_version: Version, excluded_commit_ids: Sequence[str] = ()
    ) -> MergeResult:
        _git(path, ["fetch", "--prune", "--tags", "origin"])
        source = self._workspace_rev(source_version)
        head_before = _git(path, ["rev-parse", "HEAD"])
        excluded = set(excluded_commit_ids)

        steps: List[Tuple[str, bool]] = []
        if excluded:
            for sha in _git(path, ["rev-list", "--reverse", f"HEAD..{source}"]).splitlines():
                if sha in excluded:
                    steps.append((f"{sha}^", False))
                    steps.append((sha, True))
        steps.append((source, False))

        for rev, ours in steps:
            args = ["merge", "--no-edit"]
            if ours:
                args += ["-s", "ours", "-m", f"Exclude version-changing commit {rev[:12]}"]
            rc, out, err = _run_git(path, args + [rev])
            if rc != 0:
                if _git(path, ["diff", "--name-only", "--diff-filter=U"]):
                    logger.info("Merge of %s into %s has conflicts", rev, path)
                    return MergeResult.CONFLICTS
                raise BackendError(f"git merge {rev} failed in {path}: {err or out}", returncode=rc, stderr=err)

        if _git(path, ["rev-parse", "HEAD"]) == head_before:
            return MergeResult.NOTHING_TO_MERGE
        branch = _git(path, ["rev-parse", "--abbrev-ref", "HEAD"])
        self._push(path, [f"HEAD:refs/heads/{branch}"])
        return MergeResult.MERGED

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_commits_diverging(self, version: Version, other: Version) -> List[Commit]:
        mirror = self._mirror()
        output = _git(
            mirror,
            ["log", "--reverse", "--format=%H%x1f%B%x1e", f"{self._ref(other)}..{self._ref(version)}"],
        )
        return self._parse_log(mirror, output)

    def list_commits(self, version: Version, limit: int = 1) -> List[Commit]:
        mirror = self._mirror()
        output = _git(mirror, ["log", f"-n{limit}", "--format=%H%x1f%B%x1e", self._ref(version)])
        return self._parse_log(mirror, output)

    def version_exists(self, version: Version) -> bool:
        rc, _, _ = _run_git(self._mirror(), ["show-ref", "--verify", "--quiet", self._ref(version)])
        return rc == 0

    def list_versions(self, version_type: VersionType) -> List[Version]:
        prefix = "refs/heads" if version_type is VersionType.DYNAMIC else "refs/tags"
        output = _git(self._mirror(), ["for-each-ref", "--format=%(refname:lstrip=2)", prefix])
        return [
            Version(version_type, name)
            for name in output.splitlines()
            if name and not name.startswith(VERSION_ATTRIBUTES_TAG_PREFIX)
        ]

    def default_version(self) -> Version:
        head = _git(self._mirror(), ["symbolic-ref", "HEAD"])
        return Version.dynamic(head.replace("refs/heads/", "", 1))

    def get_version_attributes(self, version: Version) -> Dict[str, str]:
        if version.is_static:
            ref = self._ref(version)
        else:
            ref = f"refs/tags/{VERSION_ATTRIBUTES_TAG_PREFIX}{version.name}"
        output = _git(self._mirror(), ["for-each-ref", "--format=%(contents)", ref])
        return parse_attributes(output)
