"""Pytest configuration and fixtures for refgraph tests.

The ``world`` fixture builds an in-memory module graph. Each module version holds its
references, artifact version and commits; fake collaborators read and write that state
directly and record every backend call so tests can assert on them.
"""

import copy
import io
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Generator, List, Optional, Sequence, Set, Tuple

import pytest

from refgraph_cli.context import ExecContext
from refgraph_cli.errors import BackendError, InvariantViolation
from refgraph_cli.manifest import RegexArtifactVersionMapper
from refgraph_cli.models import (
    ArtifactCoordinates,
    ArtifactVersion,
    Commit,
    MergeResult,
    ModuleVersion,
    NodePath,
    Reference,
    SyncScope,
    Version,
    WorkspaceMode,
)
from refgraph_cli.modules import Model, Module
from refgraph_cli.plugins import (
    ArtifactVersionManager,
    Builder,
    ReferenceManager,
    Scm,
    UserInteraction,
    VersionPolicy,
    WorkspaceAllocator,
)
from refgraph_cli.properties import RuntimeProperties


# ===================================================================
# In-memory backend
# ===================================================================

@dataclass
class VersionState:
    references: List[Reference] = field(default_factory=list)
    artifact_version: Optional[str] = None
    commits: List[Commit] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)


class FakeWorkspace(WorkspaceAllocator):
    def __init__(self):
        self.paths: Dict[PurePosixPath, ModuleVersion] = {}
        self.user: Set[ModuleVersion] = set()
        self.acquired: Dict[PurePosixPath, int] = {}
        self.deleted: List[ModuleVersion] = []

    def _user_path(self, module_version: ModuleVersion) -> PurePosixPath:
        return PurePosixPath("/user") / str(module_version.node_path)

    def acquire(self, module_version, mode):
        if mode is WorkspaceMode.USER or module_version in self.user:
            path = self._user_path(module_version)
            self.user.add(module_version)
        else:
            path = PurePosixPath("/system") / str(module_version.node_path) / str(module_version.version)
        self.paths[path] = module_version
        self.acquired[path] = self.acquired.get(path, 0) + 1
        return path

    def release(self, path):
        if self.acquired.get(path, 0) <= 0:
            raise InvariantViolation(f"{path} released but not acquired")
        self.acquired[path] -= 1

    def exists(self, module_version):
        return module_version in self.user

    def conflict(self, module_version):
        for existing in self.user:
            if existing.node_path == module_version.node_path and existing != module_version:
                return existing
        return None

    def is_user_workspace(self, path):
        return str(path).startswith("/user/")

    def retarget(self, path, module_version):
        previous = self.paths.get(path)
        self.paths[path] = module_version
        if self.is_user_workspace(path):
            self.user.discard(previous)
            self.user.add(module_version)

    def delete(self, module_version):
        self.user.discard(module_version)
        self.deleted.append(module_version)

    def list_user_workspaces(self):
        return list(self.user)

    @property
    def all_released(self) -> bool:
        return all(count == 0 for count in self.acquired.values())


class FakeScm(Scm):
    def __init__(self, node_path: NodePath, world: "FakeWorld"):
        self.node_path = node_path
        self.world = world
        self.versions: Dict[Version, VersionState] = {}
        self.unsynchronized: Set[PurePosixPath] = set()
        self.merge_result = MergeResult.MERGED
        self.diverging: Dict[Tuple[Version, Version], List[Commit]] = {}
        self.merges: List[Tuple[Version, Tuple[str, ...]]] = []

    def state(self, path) -> VersionState:
        return self.versions[self.world.workspace.paths[path].version]

    def _record(self, *call):
        self.world.calls.append((str(self.node_path),) + call)

    def checkout_for_inspection(self, version):
        if version not in self.versions:
            raise BackendError(f"{self.node_path} has no version {version}")
        return self.world.workspace.acquire(ModuleVersion(self.node_path, version), WorkspaceMode.SYSTEM)

    def checkout(self, version, path):
        self._record("checkout", version)
        self.world.workspace.paths[path] = ModuleVersion(self.node_path, version)

    def is_synchronized(self, path, scope=SyncScope.ALL):
        return path not in self.unsynchronized

    def update(self, path):
        self._record("update", path)
        return False

    def switch_version(self, path, version):
        self._record("switch_version", version)
        self.world.workspace.retarget(path, ModuleVersion(self.node_path, version))

    def create_version(self, path, new_version, switch_to_it=False, attributes=None):
        self._record("create_version", new_version, switch_to_it)
        state = copy.deepcopy(self.state(path))
        state.attributes = dict(attributes or {})
        self.versions[new_version] = state
        source_commits = self.state(path).commits
        if new_version.is_static and source_commits:
            source_commits[-1].static_versions.append(new_version)
        if switch_to_it:
            self.world.workspace.retarget(path, ModuleVersion(self.node_path, new_version))

    def commit(self, path, message, attributes=None):
        version = self.world.workspace.paths[path].version
        self._record("commit", version, dict(attributes or {}))
        state = self.versions[version]
        state.commits.append(Commit(f"c{len(self.world.calls)}", message, dict(attributes or {})))

    def merge(self, path, source_version, excluded_commit_ids=()):
        self._record("merge", source_version, tuple(excluded_commit_ids))
        self.merges.append((source_version, tuple(excluded_commit_ids)))
        return self.merge_result

    def list_commits_diverging(self, version, other):
        return list(self.diverging.get((version, other), []))

    def list_commits(self, version, limit=1):
        return list(reversed(self.versions[version].commits))[:limit]

    def version_exists(self, version):
        return version in self.versions

    def list_versions(self, version_type):
        return [v for v in self.versions if v.type is version_type]

    def default_version(self):
        return Version.dynamic("main")

    def get_version_attributes(self, version):
        return dict(self.versions[version].attributes)


class FakeReferenceManager(ReferenceManager):
    def __init__(self, scm: FakeScm):
        self.scm = scm

    def list_references(self, path):
        return list(self.scm.state(path).references)

    def update_reference_version(self, path, reference, new_version):
        state = self.scm.state(path)
        for index, existing in enumerate(state.references):
            if existing.equals_ignoring_version(reference):
                if existing.module_version.version == new_version:
                    return False
                state.references[index] = existing.with_version(new_version)
                return True
        return False


class FakeArtifactVersionManager(ArtifactVersionManager):
    def __init__(self, scm: FakeScm):
        self.scm = scm

    def get(self, path):
        return ArtifactVersion(self.scm.state(path).artifact_version)

    def set(self, path, artifact_version):
        state = self.scm.state(path)
        if state.artifact_version == str(artifact_version):
            return False
        state.artifact_version = str(artifact_version)
        return True


class FakeBuilder(Builder):
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.builds: List[Tuple[PurePosixPath, Optional[str]]] = []

    def build(self, path, context, log_sink):
        self.builds.append((path, context))
        log_sink.write("building\n")
        return self.succeed


class FakeVersionPolicy(VersionPolicy):
    def __init__(
        self,
        static_version: str = "1.0",
        dynamic_version: Optional[str] = None,
        select: Optional[str] = "",
    ):
        self.static_version = Version.static(static_version)
        self.dynamic_version = Version.parse(dynamic_version) if dynamic_version else None
        self.select = select

    def next_static_version(self, current):
        return self.static_version

    def next_dynamic_version(self, current):
        if self.dynamic_version is None:
            return None
        return self.dynamic_version, current

    def select_static_version(self, current):
        if self.select is None:
            return None
        return Version.static(self.select) if self.select else self.static_version


class ScriptedUI(UserInteraction):
    """Answers prompts from a script; unscripted prompts get their default."""

    def __init__(self):
        self.answers: List[str] = []
        self.messages: List[str] = []
        self.prompts: List[str] = []
        self.choices: List[List[str]] = []
        self.logs = io.StringIO()

    def inform(self, message):
        self.messages.append(message)

    def ask(self, prompt, default=None):
        self.prompts.append(prompt)
        if self.answers:
            return self.answers.pop(0)
        return default or ""

    def choose(self, prompt, choices, default=None):
        self.prompts.append(prompt)
        self.choices.append(list(choices))
        if self.answers:
            answer = self.answers.pop(0)
            assert answer in choices, f"{answer!r} not in {choices}"
            return answer
        return default

    @contextmanager
    def log_sink(self, title):
        yield self.logs

    def saw(self, fragment: str) -> bool:
        return any(fragment in message for message in self.messages)


# ===================================================================
# World
# ===================================================================

class FakeWorld:
    def __init__(self):
        self.calls: List[tuple] = []
        self.workspace = FakeWorkspace()
        self.model = Model()
        self.ui = ScriptedUI()
        self.properties = RuntimeProperties()
        self.scms: Dict[str, FakeScm] = {}
        self.builders: Dict[str, FakeBuilder] = {}

    def add_module(
        self,
        name: str,
        policy: Optional[VersionPolicy] = None,
        builder: Optional[FakeBuilder] = None,
    ) -> FakeScm:
        node_path = NodePath.parse(name)
        scm = FakeScm(node_path, self)
        self.builders[name] = builder or FakeBuilder()
        self.model.add(
            Module(
                node_path=node_path,
                scm=scm,
                reference_manager=FakeReferenceManager(scm),
                artifact_version_manager=FakeArtifactVersionManager(scm),
                artifact_version_mapper=RegexArtifactVersionMapper(),
                builder=self.builders[name],
                version_policy=policy or FakeVersionPolicy(),
            )
        )
        self.scms[name] = scm
        return scm

    def add_version(
        self,
        name: str,
        version: str,
        references: Sequence[Reference] = (),
        artifact_version: Optional[str] = None,
        **attributes: str,
    ) -> VersionState:
        parsed = Version.parse(version)
        if artifact_version is None:
            artifact_version = str(RegexArtifactVersionMapper().map_version(parsed))
        state = VersionState(list(references), artifact_version, [Commit("init", "initial")], dict(attributes))
        self.scms[name].versions[parsed] = state
        return state

    def state(self, name: str, version: str) -> VersionState:
        return self.scms[name].versions[Version.parse(version)]

    def context(self) -> ExecContext:
        return ExecContext(model=self.model, workspace=self.workspace, ui=self.ui, properties=self.properties)

    def calls_of(self, kind: str, name: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[1] == kind and (name is None or c[0] == name)]

    @staticmethod
    def ref(name: str, version: str, artifact: Optional[str] = None) -> Reference:
        coordinates = ArtifactCoordinates.parse(artifact or f"org.acme:{name.lower().replace('/', '-')}")
        return Reference(ModuleVersion(NodePath.parse(name), Version.parse(version)), coordinates)

    @staticmethod
    def mv(text: str) -> ModuleVersion:
        return ModuleVersion.parse(text)


@pytest.fixture
def world() -> FakeWorld:
    """Empty in-memory world; confirmations are skipped unless a test re-enables them."""
    w = FakeWorld()
    w.properties.set("IND_NO_CONFIRM", "true")
    w.properties.set("REVERT_ARTIFACT_VERSION", "NEVER")
    return w


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def temp_config(temp_dir: Path, monkeypatch) -> Path:
    """Point the persisted configuration at a temporary file."""
    config_file = temp_dir / "home" / "config.toml"
    monkeypatch.setattr("refgraph_cli.config.BASE_DIR", temp_dir / "home")
    monkeypatch.setattr("refgraph_cli.config.CONFIG_FILE", config_file)
    monkeypatch.setattr("refgraph_cli.config.SYSTEM_WORKSPACE_DIR", temp_dir / "home" / "system")
    return config_file
