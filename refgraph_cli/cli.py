"""Typer-based CLI for refgraph version orchestration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, config, config_manager
from .console import RichUserInteraction
from .context import ExecContext, ExitStatus
from .errors import AbortError, InvariantViolation, RefgraphError
from .graph_export import export_dot, render_tree
from .interaction import PROP_IND_NO_CONFIRM
from .matchers import matcher_from_patterns
from .merge import MergeMain, MergeReferenceGraph
from .model_config import load_model
from .models import ModuleVersion, NodePath, Version
from .promote import CreateStaticVersion, Release
from .reference_graph import BuildReferenceGraph
from .switch_dynamic import SwitchToDynamicVersion
from .traversal import PROP_PROJECT_CODE, RootModuleVersionJob
from .workspace import DirectoryWorkspaceAllocator

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    help="Refgraph CLI: version orchestration across interdependent modules.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = typer.Typer(
    help="Persisted runtime properties.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"Refgraph CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log backend commands."),
):
    """Refgraph CLI: walk module references and transition their versions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ------------------------------------------------------------------
# Shared option handling
# ------------------------------------------------------------------

MODEL_OPTION = typer.Option(Path(config.DEFAULT_MODEL_FILE), "--model", "-m", help="Model file.")
WORKSPACE_OPTION = typer.Option(config.DEFAULT_WORKSPACE_DIR, "--workspace", "-w", help="User workspace directory.")
MATCH_OPTION = typer.Option(None, "--match", help="Path pattern selecting modules (repeatable).")
PROJECT_CODE_OPTION = typer.Option(None, "--project-code", help="Only match versions of this project.")
YES_OPTION = typer.Option(False, "--yes", "-y", help="Do not ask for confirmations.")
SET_OPTION = typer.Option(None, "--set", help="Runtime property KEY=VALUE (repeatable).")


def _parse_roots(roots: List[str]) -> List[ModuleVersion]:
    try:
        return [ModuleVersion.parse(root) for root in roots]
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None


def build_context(
    model_file: Path,
    workspace_dir: Path,
    yes: bool,
    project_code: Optional[str],
    settings: Optional[List[str]],
) -> ExecContext:
    """Compose the execution context of one CLI run."""
    config.ensure_base_dirs()
    properties = config_manager.load_properties()
    for setting in settings or []:
        name, sep, value = setting.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {setting!r}")
        properties.set(name.strip(), value.strip())
    if yes:
        properties.set(PROP_IND_NO_CONFIRM, "true")
    if project_code:
        properties.set(PROP_PROJECT_CODE, project_code)

    ui = RichUserInteraction(console)
    workspace = DirectoryWorkspaceAllocator(workspace_dir)
    model = load_model(model_file, workspace, ui)
    return ExecContext(model=model, workspace=workspace, ui=ui, properties=properties)


def _run(job: RootModuleVersionJob) -> None:
    try:
        job.run()
    except AbortError as exc:
        console.print(f"[red]Aborted: {exc}[/red]")
        raise typer.Exit(code=1)
    except InvariantViolation:
        raise
    except RefgraphError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    if job.roots_changed:
        console.print("Root module versions are now:")
        for root in job.roots:
            console.print(f"  {root}")
    if job.context.exit_status is ExitStatus.ERROR:
        raise typer.Exit(code=1)


def _job_context(model, workspace, yes, project_code, settings) -> ExecContext:
    try:
        return build_context(model, workspace, yes, project_code, settings)
    except RefgraphError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


# ------------------------------------------------------------------
# Jobs
# ------------------------------------------------------------------

@app.command("create-static-version")
def create_static_version(
    roots: List[str] = typer.Argument(..., help="Root modules, node/path or node/path:D/main."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    yes: bool = YES_OPTION,
    settings: Optional[List[str]] = SET_OPTION,
):
    """Promote matched dynamic versions, and their dynamic references, to static versions."""
    context = _job_context(model, workspace, yes, project_code, settings)
    _run(CreateStaticVersion(context, _parse_roots(roots), matcher_from_patterns(match or [])))


@app.command("release")
def release(
    roots: List[str] = typer.Argument(..., help="Root modules, node/path or node/path:D/main."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    yes: bool = YES_OPTION,
    settings: Optional[List[str]] = SET_OPTION,
):
    """Release matched dynamic versions, reusing static versions already released."""
    context = _job_context(model, workspace, yes, project_code, settings)
    _run(Release(context, _parse_roots(roots), matcher_from_patterns(match or [])))


@app.command("switch-to-dynamic-version")
def switch_to_dynamic_version(
    roots: List[str] = typer.Argument(..., help="Root modules, node/path or node/path:S/1.0.0."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    yes: bool = YES_OPTION,
    settings: Optional[List[str]] = SET_OPTION,
):
    """Switch matched modules, and the parents referencing them, to dynamic versions."""
    context = _job_context(model, workspace, yes, project_code, settings)
    _run(SwitchToDynamicVersion(context, _parse_roots(roots), matcher_from_patterns(match or [])))


@app.command("merge-main")
def merge_main(
    roots: List[str] = typer.Argument(..., help="Root modules, node/path:S/1.0.0."),
    dest: Optional[str] = typer.Option(None, "--dest", help="Destination dynamic version, e.g. D/main."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    yes: bool = YES_OPTION,
    settings: Optional[List[str]] = SET_OPTION,
):
    """Merge matched static versions into a destination dynamic version."""
    try:
        dest_version = Version.parse(dest) if dest else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None
    context = _job_context(model, workspace, yes, project_code, settings)
    job = MergeMain(context, _parse_roots(roots), matcher_from_patterns(match or []), dest_version)
    _run(job)
    if job.conflicts:
        raise typer.Exit(code=1)


@app.command("merge-reference-graph")
def merge_reference_graph(
    roots: List[str] = typer.Argument(..., help="Destination root modules, node/path:D/develop."),
    src: Optional[str] = typer.Option(None, "--src", help="Source version of the root modules, e.g. D/main."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    yes: bool = YES_OPTION,
    settings: Optional[List[str]] = SET_OPTION,
):
    """Merge a source reference graph into the matched destination dynamic versions."""
    try:
        src_version = Version.parse(src) if src else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None
    context = _job_context(model, workspace, yes, project_code, settings)
    job = MergeReferenceGraph(context, _parse_roots(roots), matcher_from_patterns(match or []), src_version)
    _run(job)
    if job.conflicts:
        raise typer.Exit(code=1)


@app.command("graph")
def graph(
    roots: List[str] = typer.Argument(..., help="Root modules, node/path or node/path:D/main."),
    model: Path = MODEL_OPTION,
    workspace: Path = WORKSPACE_OPTION,
    match: Optional[List[str]] = MATCH_OPTION,
    project_code: Optional[str] = PROJECT_CODE_OPTION,
    dot: Optional[Path] = typer.Option(None, "--dot", help="Write the graph as Graphviz DOT."),
    settings: Optional[List[str]] = SET_OPTION,
):
    """Show the reference graph reachable from the roots."""
    context = _job_context(model, workspace, True, project_code, settings)
    job = BuildReferenceGraph(context, _parse_roots(roots), matcher_from_patterns(match or []))
    _run(job)
    if dot is not None:
        export_dot(job.graph, dot)
        console.print(f"Graph written to {dot}.")
    else:
        console.print(render_tree(job.graph))


# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------

def _node_path_option(module: Optional[str]) -> Optional[NodePath]:
    if module is None:
        return None
    try:
        return NodePath.parse(module)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None


@config_app.command("show")
def config_show():
    """Show persisted runtime properties."""
    data = config_manager.load_full_config()
    table = Table(title=f"Properties ({config.CONFIG_FILE})")
    table.add_column("Scope")
    table.add_column("Property")
    table.add_column("Value")
    for name, value in sorted(data.get("properties", {}).items()):
        table.add_row("global", name, str(value))
    for scope, values in sorted(data.get("modules", {}).items()):
        for name, value in sorted(values.items()):
            table.add_row(scope, name, str(value))
    if table.row_count == 0:
        console.print("No properties set.")
        return
    console.print(table)


@config_app.command("set")
def config_set(
    name: str = typer.Argument(..., help="Property name."),
    value: str = typer.Argument(..., help="Property value."),
    module: Optional[str] = typer.Option(None, "--module", help="Node path scope."),
):
    """Persist a runtime property, globally or for a node path."""
    config_manager.set_property(name, value, _node_path_option(module))
    console.print(f"Set {name}={value}" + (f" for {module}" if module else ""))


@config_app.command("unset")
def config_unset(
    name: str = typer.Argument(..., help="Property name."),
    module: Optional[str] = typer.Option(None, "--module", help="Node path scope."),
):
    """Remove a persisted runtime property."""
    config_manager.set_property(name, None, _node_path_option(module))
    console.print(f"Unset {name}" + (f" for {module}" if module else ""))


if __name__ == "__main__":
    app()
