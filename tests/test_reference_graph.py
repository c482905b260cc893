"""Tests for the reference graph job and its export helpers."""

import pytest
from rich.console import Console

from refgraph_cli.errors import UserError
from refgraph_cli.graph_export import export_dot, render_tree
from refgraph_cli.matchers import PathPatternMatcher
from refgraph_cli.reference_graph import BuildReferenceGraph


def diamond(world):
    for name in ("App", "Lib1", "Lib2", "Core"):
        world.add_module(name)
    world.add_version("App", "D/main", [world.ref("Lib1", "D/main"), world.ref("Lib2", "S/1.0")])
    world.add_version("Lib1", "D/main", [world.ref("Core", "S/2.0")])
    world.add_version("Lib2", "S/1.0", [world.ref("Core", "S/2.0")])
    world.add_version("Core", "S/2.0")


class TestBuildReferenceGraph:
    """Test read-only enumeration of the reference graph."""

    def test_records_every_path(self, world):
        diamond(world)

        job = BuildReferenceGraph(world.context(), [world.mv("App:D/main")])
        job.run()
        graph = job.graph

        assert graph.roots == [world.mv("App:D/main")]
        assert set(graph.module_versions) == {
            world.mv("App:D/main"),
            world.mv("Lib1:D/main"),
            world.mv("Lib2:S/1.0"),
            world.mv("Core:S/2.0"),
        }
        assert graph.referrers_of(world.mv("Core:S/2.0")) == [world.mv("Lib1:D/main"), world.mv("Lib2:S/1.0")]
        assert [(d, str(mv)) for d, mv in graph.walk()] == [
            (0, "App:D/main"),
            (1, "Lib1:D/main"),
            (2, "Core:S/2.0"),
            (1, "Lib2:S/1.0"),
            (2, "Core:S/2.0"),
        ]
        assert world.calls == []
        assert world.workspace.all_released

    def test_matcher_limits_matched_nodes(self, world):
        diamond(world)

        job = BuildReferenceGraph(world.context(), [world.mv("App:D/main")], PathPatternMatcher("**->Core"))
        job.run()

        assert job.graph.matched == {world.mv("Core:S/2.0")}
        assert job.graph.references_from(world.mv("App:D/main"))[0][1] == world.mv("Lib1:D/main")

    def test_cycle_reported(self, world):
        world.add_module("App")
        world.add_module("Lib")
        world.add_version("App", "D/main", [world.ref("Lib", "D/main")])
        world.add_version("Lib", "D/main", [world.ref("App", "D/main")])

        job = BuildReferenceGraph(world.context(), [world.mv("App:D/main")])
        job.run()

        assert any("Cyclic reference" in error for error in job.visit_errors)

    def test_root_without_version_uses_default(self, world):
        world.add_module("App")
        world.add_version("App", "D/main")

        job = BuildReferenceGraph(world.context(), [world.mv("App")])
        job.run()

        assert job.roots == [world.mv("App:D/main")]

    def test_root_without_version_uses_user_workspace(self, world):
        world.add_module("App")
        world.add_version("App", "D/main")
        world.add_version("App", "D/feature")
        world.workspace.user.add(world.mv("App:D/feature"))

        job = BuildReferenceGraph(world.context(), [world.mv("App")])
        job.run()

        assert job.roots == [world.mv("App:D/feature")]

    def test_unknown_root_version(self, world):
        world.add_module("App")
        world.add_version("App", "D/main")

        job = BuildReferenceGraph(world.context(), [world.mv("App:D/missing")])
        with pytest.raises(UserError, match="does not exist"):
            job.run()


class TestGraphExport:
    def test_export_dot(self, world, temp_dir):
        diamond(world)
        job = BuildReferenceGraph(world.context(), [world.mv("App:D/main")])
        job.run()

        output = temp_dir / "graph.dot"
        export_dot(job.graph, output)
        content = output.read_text()

        assert content.startswith("digraph ReferenceGraph {")
        assert '"App:D/main" -> "Lib1:D/main" [label="org.acme:lib1"];' in content
        assert '"Core:S/2.0" [label="Core\\nS/2.0", style=bold];' in content

    def test_render_tree(self, world):
        diamond(world)
        job = BuildReferenceGraph(world.context(), [world.mv("App:D/main")])
        job.run()

        console = Console(record=True, width=120)
        console.print(render_tree(job.graph))
        text = console.export_text()

        assert "App:D/main" in text
        assert text.count("Core:S/2.0") == 2
