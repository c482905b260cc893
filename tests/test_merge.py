"""Tests for the merge jobs."""

from pathlib import PurePosixPath

import pytest

from refgraph_cli.context import ExitStatus
from refgraph_cli.errors import AbortError
from refgraph_cli.matchers import PathPatternMatcher
from refgraph_cli.merge import MergeMain, MergeMode, MergeReferenceGraph
from refgraph_cli.models import Commit, MergeResult, Version

from conftest import FakeVersionPolicy

MAIN = Version.dynamic("main")


def add_lib(world, name="Lib", source="S/1.0", diverging=None, dest_only=None):
    if name not in world.scms:
        world.add_module(name)
        world.add_version(name, "D/main")
    world.add_version(name, source)
    scm = world.scms[name]
    scm.diverging[(Version.parse(source), MAIN)] = diverging if diverging is not None else [Commit("c1", "fix")]
    scm.diverging[(MAIN, Version.parse(source))] = dest_only or []
    return scm


class TestMergeMain:
    """Test merging static versions into a dynamic destination."""

    def test_merge_excludes_version_changing_commits(self, world):
        scm = add_lib(
            world,
            diverging=[Commit("c1", "fix"), Commit("c2", "artifact version", {"version-change": "true"})],
        )

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN)
        job.run()

        assert scm.merges == [(Version.static("1.0"), ("c2",))]
        assert job.merged == ["Lib:S/1.0 -> D/main"]
        assert world.calls_of("checkout", "Lib") == [("Lib", "checkout", MAIN)]
        assert world.workspace.deleted == [world.mv("Lib:D/main")]
        assert world.workspace.all_released

    def test_plain_merge_mode_keeps_every_commit(self, world):
        scm = add_lib(
            world,
            diverging=[Commit("c1", "fix"), Commit("c2", "artifact version", {"version-change": "true"})],
        )
        world.properties.set("MERGE_MAIN_MODE", MergeMode.MERGE.value)

        MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN).run()

        assert scm.merges == [(Version.static("1.0"), ())]

    def test_nothing_to_merge(self, world):
        scm = add_lib(world, diverging=[Commit("c2", "artifact version", {"version-change": "true"})])

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN)
        job.run()

        assert scm.merges == []
        assert job.nothing_to_merge == ["Lib:S/1.0 -> D/main"]
        assert world.workspace.deleted == [world.mv("Lib:D/main")]

    def test_conflicts_keep_workspace_and_block_destination(self, world):
        scm = add_lib(world)
        add_lib(world, source="S/1.1")
        scm.merge_result = MergeResult.CONFLICTS

        job = MergeMain(
            world.context(), [world.mv("Lib:S/1.0"), world.mv("Lib:S/1.1")], dest_version=MAIN
        )
        job.run()

        assert len(scm.merges) == 1
        assert job.conflicts == ["Lib:S/1.0 -> D/main"]
        assert job.skipped == ["Lib:S/1.1 -> D/main"]
        assert world.workspace.deleted == []
        assert world.workspace.exists(world.mv("Lib:D/main"))

    def test_conflicts_with_error_status_abort(self, world):
        scm = add_lib(world)
        scm.merge_result = MergeResult.CONFLICTS
        world.properties.set("EXCEPTIONAL_COND.MERGE_CONFLICTS.EXIT_STATUS", "ERROR")

        with pytest.raises(AbortError):
            MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN).run()
        assert world.workspace.all_released

    def test_validate_no_diverging_commits_refuses(self, world):
        scm = add_lib(world, dest_only=[Commit("d1", "work on main")])
        world.properties.set("MERGE_MAIN_MODE", "SRC_VALIDATE_NO_DIVERGING_COMMITS")

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN)
        job.run()

        assert scm.merges == []
        assert job.skipped == ["Lib:S/1.0 -> D/main"]

    def test_version_changes_on_destination_tolerated(self, world):
        scm = add_lib(world, dest_only=[Commit("d1", "snapshot", {"version-change": "true"})])
        world.properties.set(
            "MERGE_MAIN_MODE", "MERGE_EXCLUDE_VERSION_CHANGING_COMMITS_NO_DIVERGING_COMMITS"
        )

        MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN).run()

        assert len(scm.merges) == 1

    def test_existing_user_workspace_must_be_synchronized(self, world):
        scm = add_lib(world)
        world.workspace.user.add(world.mv("Lib:D/main"))
        scm.unsynchronized.add(PurePosixPath("/user/Lib"))

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=MAIN)
        job.run()

        assert scm.merges == []
        assert "not synchronized" in job.visit_errors[0]
        assert world.workspace.deleted == []

    def test_dynamic_roots_are_not_merged(self, world):
        scm = add_lib(world)

        MergeMain(world.context(), [world.mv("Lib:D/main")], dest_version=MAIN).run()

        assert scm.merges == []

    def test_only_matched_children_merged(self, world):
        lib = add_lib(world)
        app = add_lib(world, name="App")
        world.state("App", "S/1.0").references.append(world.ref("Lib", "S/1.0"))

        MergeMain(
            world.context(), [world.mv("App:S/1.0")], PathPatternMatcher("**->Lib"), dest_version=MAIN
        ).run()

        assert app.merges == []
        assert len(lib.merges) == 1


class TestDestinationVersion:
    """Test resolution of the destination dynamic version."""

    def test_specific_dest_version_property(self, world):
        scm = add_lib(world)
        world.add_version("Lib", "D/release")
        scm.diverging[(Version.static("1.0"), Version.dynamic("release"))] = [Commit("c1", "fix")]
        world.properties.set("SPECIFIC_DEST_VERSION", "D/release")

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")])
        job.run()

        assert job.merged == ["Lib:S/1.0 -> D/release"]

    def test_static_destination_rejected(self, world):
        scm = add_lib(world)

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0")], dest_version=Version.static("1.0"))
        job.run()

        assert scm.merges == []
        assert "must be dynamic" in job.visit_errors[0]

    def test_prompted_destination_reused(self, world):
        add_lib(world)
        add_lib(world, name="Other")
        world.ui.answers = ["D/main", "yes"]

        job = MergeMain(world.context(), [world.mv("Lib:S/1.0"), world.mv("Other:S/1.0")])
        job.run()

        assert sorted(job.merged) == ["Lib:S/1.0 -> D/main", "Other:S/1.0 -> D/main"]
        assert len(world.ui.prompts) == 2
        assert world.ui.saw("Reusing destination version D/main")


DEVELOP = Version.dynamic("develop")


def add_graphs(world, source_lib="S/1.1", dest_lib="S/1.0"):
    """App:D/main (source) and App:D/develop (destination), each referencing a version of Lib."""
    for name in ("App", "Lib"):
        world.add_module(name, policy=FakeVersionPolicy(dynamic_version="D/develop"))
    world.add_version("App", "D/main", [world.ref("Lib", source_lib)])
    world.add_version("App", "D/develop", [world.ref("Lib", dest_lib)])
    world.add_version("Lib", source_lib)
    world.add_version("Lib", dest_lib)
    world.scms["App"].diverging[(MAIN, DEVELOP)] = [Commit("a1", "feature")]


def reference_commits(world, name):
    return [c for c in world.calls_of("commit", name) if c[3].get("reference-version-change") == "true"]


class TestMergeReferenceGraph:
    """Test merging a source reference graph into a destination graph."""

    def test_source_only_divergence_takes_source_reference(self, world):
        add_graphs(world)
        world.scms["Lib"].diverging[(Version.static("1.1"), Version.static("1.0"))] = [Commit("l1", "fix")]

        job = MergeReferenceGraph(world.context(), [world.mv("App:D/develop")], src_version=MAIN)
        job.run()

        assert world.scms["App"].merges == [(MAIN, ())]
        assert world.state("App", "D/develop").references == [world.ref("Lib", "S/1.1")]
        assert len(reference_commits(world, "App")) == 1
        assert job.merged == ["App:D/main -> D/develop"]
        assert world.workspace.deleted == [world.mv("App:D/develop")]
        assert world.workspace.all_released

    def test_destination_only_divergence_keeps_reference(self, world):
        add_graphs(world)
        world.scms["Lib"].diverging[(Version.static("1.0"), Version.static("1.1"))] = [Commit("l1", "fix")]

        MergeReferenceGraph(world.context(), [world.mv("App:D/develop")], src_version=MAIN).run()

        assert world.state("App", "D/develop").references == [world.ref("Lib", "S/1.0")]
        assert reference_commits(world, "App") == []

    def test_both_diverging_is_a_conflict(self, world):
        add_graphs(world)
        lib = world.scms["Lib"]
        lib.diverging[(Version.static("1.1"), Version.static("1.0"))] = [Commit("l1", "fix")]
        lib.diverging[(Version.static("1.0"), Version.static("1.1"))] = [Commit("l2", "other fix")]
        context = world.context()

        job = MergeReferenceGraph(context, [world.mv("App:D/develop")], src_version=MAIN)
        job.run()

        assert job.conflicts == ["Lib:S/1.1 -> S/1.0"]
        assert world.state("App", "D/develop").references == [world.ref("Lib", "S/1.0")]
        assert context.exit_status is ExitStatus.WARNING

    def test_bookkeeping_commits_are_excluded(self, world):
        add_graphs(world)
        world.scms["App"].diverging[(MAIN, DEVELOP)] = [
            Commit("a1", "feature"),
            Commit("a2", "artifact version", {"version-change": "true"}),
            Commit("a3", "references", {"reference-version-change": "true"}),
        ]

        MergeReferenceGraph(world.context(), [world.mv("App:D/develop")], src_version=MAIN).run()

        assert world.scms["App"].merges == [(MAIN, ("a2", "a3"))]

    def test_static_destination_switched_then_merged(self, world):
        add_graphs(world, source_lib="D/main", dest_lib="S/1.0")
        lib = world.scms["Lib"]
        lib.diverging[(MAIN, Version.static("1.0"))] = [Commit("l1", "fix")]
        lib.diverging[(MAIN, DEVELOP)] = [Commit("l1", "fix")]

        job = MergeReferenceGraph(world.context(), [world.mv("App:D/develop")], src_version=MAIN)
        job.run()

        assert DEVELOP in lib.versions
        assert world.state("App", "D/develop").references == [world.ref("Lib", "D/develop")]
        assert lib.merges == [(MAIN, ())]
        assert sorted(job.merged) == ["App:D/main -> D/develop", "Lib:D/main -> D/develop"]
        assert any("to receive the merge" in action for action in job.actions)
        assert world.workspace.all_released

    def test_source_followed_along_path(self, world):
        add_graphs(world, source_lib="D/main", dest_lib="D/develop")
        world.scms["Lib"].diverging[(MAIN, DEVELOP)] = [Commit("l1", "fix")]

        job = MergeReferenceGraph(
            world.context(), [world.mv("App:D/develop")], PathPatternMatcher("**->Lib"), src_version=MAIN
        )
        job.run()

        assert world.scms["App"].merges == []
        assert world.scms["Lib"].merges == [(MAIN, ())]
        assert job.merged == ["Lib:D/main -> D/develop"]

    def test_divergence_found_in_referenced_modules(self, world):
        add_graphs(world)
        world.add_module("Core")
        world.add_version("Core", "S/2.0")
        world.add_version("Core", "S/1.0")
        world.state("Lib", "S/1.1").references.append(world.ref("Core", "S/2.0"))
        world.state("Lib", "S/1.0").references.append(world.ref("Core", "S/1.0"))
        world.scms["Lib"].diverging[(Version.static("1.1"), Version.static("1.0"))] = [
            Commit("l1", "artifact version", {"version-change": "true"})
        ]
        world.scms["Core"].diverging[(Version.static("2.0"), Version.static("1.0"))] = [Commit("c1", "fix")]
        job = MergeReferenceGraph(world.context(), [world.mv("App:D/develop")], src_version=MAIN)
        lib = world.mv("Lib:S/1.0").node_path

        assert job.diverges(lib, Version.static("1.1"), Version.static("1.0"))
        assert not job.diverges(lib, Version.static("1.0"), Version.static("1.1"))
        assert world.workspace.all_released

    def test_reused_source_version(self, world):
        add_graphs(world)
        world.properties.set("REUSE_SRC_VERSION", "D/main")
        world.properties.set("CAN_REUSE_SRC_VERSION", "ALWAYS")

        job = MergeReferenceGraph(world.context(), [world.mv("App:D/develop")])
        job.run()

        assert world.ui.prompts == []
        assert world.ui.saw("Reusing source version D/main")
        assert job.merged == ["App:D/main -> D/develop"]

    def test_static_roots_are_not_merged(self, world):
        add_graphs(world)

        MergeReferenceGraph(world.context(), [world.mv("Lib:S/1.0")], src_version=MAIN).run()

        assert world.calls_of("merge") == []
