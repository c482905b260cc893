"""Tests for the git source-control adapter.

Integration tests run git against a local bare repository and are skipped when git is
not installed.
"""

import shutil
import subprocess

import pytest

from refgraph_cli.git_scm import GitScm, format_message, parse_attributes
from refgraph_cli.models import ModuleVersion, NodePath, SyncScope, Version, VersionType, WorkspaceMode
from refgraph_cli.workspace import DirectoryWorkspaceAllocator

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

MANIFEST = 'artifact_version = "main-SNAPSHOT"\n'


def git(cwd, *args):
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True)


@pytest.fixture
def origin(temp_dir, monkeypatch):
    """Bare repository with a ``main`` branch holding a manifest."""
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test User")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@example.com")

    seed = temp_dir / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "checkout", "-b", "main")
    (seed / "refgraph.toml").write_text(MANIFEST)
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "Initial commit")

    bare = temp_dir / "origin.git"
    git(temp_dir, "init", "--bare", str(bare))
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")
    git(seed, "push", str(bare), "main")
    return bare


@pytest.fixture
def scm(origin, temp_dir):
    workspace = DirectoryWorkspaceAllocator(temp_dir / "ws", temp_dir / "system")
    return GitScm(NodePath.parse("Lib"), str(origin), workspace, temp_dir / "mirrors")


class TestAttributes:
    """Test attribute encoding in commit and tag messages."""

    def test_round_trip(self):
        message = format_message("Set version", {"version-change": "true"})
        assert message.startswith("Set version\n\n")
        assert parse_attributes(message) == {"version-change": "true"}

    def test_no_attributes(self):
        assert format_message("Plain", None) == "Plain"
        assert parse_attributes("Plain\n\nbody") == {}

    def test_malformed_attributes_ignored(self):
        assert parse_attributes("msg\nrefgraph-attributes: {not json") == {}


@requires_git
class TestGitScm:
    """Test the adapter against a local repository."""

    def test_queries(self, scm):
        assert scm.default_version() == Version.dynamic("main")
        assert scm.version_exists(Version.dynamic("main"))
        assert not scm.version_exists(Version.static("1.0"))
        assert scm.list_versions(VersionType.DYNAMIC) == [Version.dynamic("main")]

    def test_checkout_for_inspection(self, scm):
        path = scm.checkout_for_inspection(Version.dynamic("main"))
        try:
            assert (path / "refgraph.toml").read_text() == MANIFEST
            assert scm.is_synchronized(path, SyncScope.ALL)
            (path / "scratch.txt").write_text("x")
            assert not scm.is_synchronized(path, SyncScope.LOCAL)
        finally:
            scm.workspace.release(path)

    def test_commit_and_static_version(self, scm):
        main = Version.dynamic("main")
        path = scm.checkout_for_inspection(main)
        try:
            (path / "refgraph.toml").write_text('artifact_version = "1.0"\n')
            scm.commit(path, "Artifact version set to 1.0.", {"version-change": "true"})
            scm.create_version(path, Version.static("1.0"))
        finally:
            scm.workspace.release(path)

        latest = scm.list_commits(main, limit=1)[0]
        assert latest.is_version_change
        assert latest.static_versions == [Version.static("1.0")]
        assert scm.list_versions(VersionType.STATIC) == [Version.static("1.0")]

    def test_dynamic_version_attributes(self, scm):
        path = scm.checkout_for_inspection(Version.dynamic("main"))
        try:
            scm.create_version(path, Version.dynamic("develop"), switch_to_it=True, attributes={"project-code": "PRJ1"})
        finally:
            scm.workspace.release(path)

        assert scm.version_exists(Version.dynamic("develop"))
        assert scm.get_version_attributes(Version.dynamic("develop")) == {"project-code": "PRJ1"}
        assert scm.get_version_attributes(Version.dynamic("main")) == {}
        assert Version.dynamic("develop") in scm.list_versions(VersionType.DYNAMIC)
        assert scm.list_versions(VersionType.STATIC) == []

    def test_merge_excludes_commits(self, scm, temp_dir):
        main = Version.dynamic("main")
        develop = Version.dynamic("develop")
        path = scm.checkout_for_inspection(main)
        try:
            scm.create_version(path, develop)
        finally:
            scm.workspace.release(path)

        path = scm.checkout_for_inspection(develop)
        try:
            (path / "feature.txt").write_text("feature\n")
            scm.commit(path, "Add feature.")
            (path / "refgraph.toml").write_text('artifact_version = "develop-SNAPSHOT"\n')
            scm.commit(path, "Artifact version set.", {"version-change": "true"})
        finally:
            scm.workspace.release(path)

        diverging = scm.list_commits_diverging(develop, main)
        assert [c.is_version_change for c in diverging] == [False, True]

        dest = ModuleVersion(NodePath.parse("Lib"), main)
        ws = scm.workspace.acquire(dest, WorkspaceMode.USER)
        try:
            scm.checkout(main, ws)
            result = scm.merge(ws, develop, [diverging[1].id])
        finally:
            scm.workspace.release(ws)

        assert result.value == "merged"
        assert (ws / "feature.txt").exists()
        assert (ws / "refgraph.toml").read_text() == MANIFEST
        assert scm.list_commits_diverging(develop, main) == []
