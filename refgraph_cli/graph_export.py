"""Reference graph export helpers for DOT output and rich tree rendering."""

from __future__ import annotations

from pathlib import Path

from rich.tree import Tree

from .reference_graph import ReferenceGraph


def export_dot(graph: ReferenceGraph, output_file: Path) -> None:
    lines = ["digraph ReferenceGraph {"]
    lines.append("  rankdir=LR;")

    for module_version in graph.module_versions:
        node_id = str(module_version)
        attributes = f'label="{_esc(str(module_version.node_path))}\\n{_esc(str(module_version.version))}"'
        if graph.is_matched(module_version):
            attributes += ", style=bold"
        lines.append(f'  "{_esc(node_id)}" [{attributes}];')

    for module_version in graph.module_versions:
        for reference, child in graph.references_from(module_version):
            label = str(reference.artifact_coordinates) if reference.artifact_coordinates else ""
            lines.append(f'  "{_esc(str(module_version))}" -> "{_esc(str(child))}" [label="{_esc(label)}"];')

    lines.append("}")
    output_file.write_text("\n".join(lines), encoding="utf-8")


def render_tree(graph: ReferenceGraph, title: str = "Reference graph") -> Tree:
    tree = Tree(f"[bold]{title}[/bold]")
    stack = [(-1, tree)]
    for depth, module_version in graph.walk():
        while stack[-1][0] >= depth:
            stack.pop()
        label = str(module_version)
        if graph.is_matched(module_version):
            label = f"[green]{label}[/green]"
        node = stack[-1][1].add(label)
        stack.append((depth, node))
    return tree


def _esc(value: str) -> str:
    return value.replace('"', '\\"')
