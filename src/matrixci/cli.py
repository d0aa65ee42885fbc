# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from matrixci.errors import DefinitionError
from matrixci.loader import load_workflow
from matrixci.model import WorkflowDefinition
from matrixci.runner import build_plans, run_workflow
from matrixci.triggers import detect_event, should_run
from matrixci.ui.console import Console, get_console, set_console

DEFINITION_ERROR_EXIT = 2
INTERRUPTED_EXIT = 130


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    """
    Find workflow files under `root`.

    Looks at .github/workflows/*.yml|yaml, matrixci.yml|yaml and
    matrixci_workflow.py.
    """
    found: List[Path] = []
    wf_dir = root / ".github" / "workflows"
    if wf_dir.is_dir():
        found.extend(p for p in wf_dir.iterdir() if p.suffix in (".yml", ".yaml"))
    for candidate in ("matrixci.yml", "matrixci.yaml", "matrixci_workflow.py"):
        path = root / candidate
        if path.exists():
            found.append(path)
    return sorted(found)


def discover_workflow(workflow_arg: Optional[str]) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify an existing file:\n  matrixci run --workflow .github/workflows/ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .github/workflows/*.yml",
                "  matrixci.yml",
                "  matrixci_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow path/to/workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_matrix_filter(values: Tuple[str, ...]) -> Dict[str, List[str]]:
    """`("os=ubuntu-latest", "os=macos-latest")` -> {"os": [...]}"""
    only: Dict[str, List[str]] = {}
    for item in values:
        axis, sep, value = item.partition("=")
        if not sep or not axis.strip():
            raise click.BadParameter(f"expected AXIS=VALUE, got {item!r}", param_hint="--matrix")
        only.setdefault(axis.strip(), []).append(value.strip())
    return only


def _announce_filter(only: Dict[str, List[str]]) -> None:
    if only:
        shown = ", ".join(f"{axis}={'|'.join(values)}" for axis, values in only.items())
        get_console().print_info(f"Matrix filter: {shown} (other entries are not planned)")


def _load_or_exit(ctx: click.Context, workflow: Optional[str]) -> WorkflowDefinition:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
    except DefinitionError as e:
        console.print_error("Invalid workflow", f"{workflow_path}", details=str(e).splitlines())
        sys.exit(DEFINITION_ERROR_EXIT)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)
    console.print_debug(f"loaded {workflow_path} ({len(wf.jobs)} job(s))")
    return wf


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the summary")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci - run matrix CI workflows locally."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml or .py)")
@click.option("--event", default="push", show_default=True, envvar="MATRIXCI_EVENT", help="Triggering event name")
@click.option("--workers", default=None, type=click.IntRange(min=1), envvar="MATRIXCI_WORKERS", help="Number of parallel jobs")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Override every job's strategy.fail-fast")
@click.option("--matrix", "matrix_filter", multiple=True, metavar="AXIS=VALUE", help="Only run matrix entries with this value (repeatable)")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref used to compute changed files for path filters")
@click.option("--dry-run", is_flag=True, default=False, help="Print the plans without running anything")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the pipeline result as JSON")
@click.pass_context
def run(ctx, workflow, event, workers, fail_fast, matrix_filter, compare_ref, dry_run, as_json):
    """Run a workflow for one triggering event."""
    console = get_console()
    wf = _load_or_exit(ctx, workflow)
    only = parse_matrix_filter(matrix_filter)
    _announce_filter(only)

    needs_changes = any(t.paths for t in wf.triggers)
    run_event = detect_event(event, workspace=".", compare_ref=compare_ref, with_changes=needs_changes)
    triggered, why = should_run(wf, run_event)
    if not triggered:
        console.print_info(f"Workflow '{wf.name}' not triggered: {why}")
        return

    try:
        if dry_run:
            plans = build_plans(wf, event=run_event, only=only or None, fail_fast=fail_fast)
            console.print_plan(plans)
            return

        result = run_workflow(
            wf,
            event=run_event,
            workspace=".",
            max_workers=workers,
            fail_fast=fail_fast,
            only=only or None,
        )
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(DEFINITION_ERROR_EXIT)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(INTERRUPTED_EXIT)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml or .py)")
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--matrix", "matrix_filter", multiple=True, metavar="AXIS=VALUE", help="Only show matrix entries with this value")
@click.pass_context
def plan(ctx, workflow, event, matrix_filter):
    """Show the job plans (with run/skip per step) without running them."""
    console = get_console()
    wf = _load_or_exit(ctx, workflow)
    try:
        only = parse_matrix_filter(matrix_filter)
        _announce_filter(only)
        plans = build_plans(wf, event=detect_event(event), only=only or None)
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(DEFINITION_ERROR_EXIT)
    console.print_header(f"Plans for '{wf.name}' ({len(plans)})")
    console.print_plan(plans)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml or .py)")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow for definition errors."""
    wf = _load_or_exit(ctx, workflow)
    get_console().print_info(f"OK: '{wf.name}' ({len(wf.jobs)} job(s), events: {', '.join(wf.events)})")


if __name__ == "__main__":
    cli()
