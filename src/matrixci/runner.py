# runner.py
from __future__ import annotations

from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from .actions import ActionRegistry
from .aggregate import aggregate
from .executor import CommandRunner, JobExecutor
from .loader import validate_workflow
from .matrix import plan_workflow
from .model import JobPlan, PipelineResult, WorkflowDefinition
from .scheduler import Scheduler
from .triggers import RunEvent
from .ui.console import Console, get_console


def build_plans(
    workflow: WorkflowDefinition,
    *,
    event: Optional[RunEvent] = None,
    actions: Optional[ActionRegistry] = None,
    only: Optional[Mapping[str, Sequence[str]]] = None,
    fail_fast: Optional[bool] = None,
) -> List[JobPlan]:
    """Materialize every plan up front; a DefinitionError here aborts the run."""
    validate_workflow(workflow, actions=actions)
    return plan_workflow(workflow, event=event, actions=actions, only=only, fail_fast=fail_fast)


def run_plans(
    plans: Sequence[JobPlan],
    *,
    runner: Optional[CommandRunner] = None,
    workspace: str | Path = ".",
    max_workers: Optional[int] = None,
    console: Optional[Console] = None,
) -> PipelineResult:
    executor = JobExecutor(runner, workspace=workspace, console=console)
    scheduler = Scheduler(executor, max_workers=max_workers, console=console)
    results = scheduler.run(plans)
    return aggregate(results, expected=[p.plan_id for p in plans])


def run_workflow(
    workflow: WorkflowDefinition,
    *,
    event: Optional[RunEvent] = None,
    runner: Optional[CommandRunner] = None,
    workspace: str | Path = ".",
    max_workers: Optional[int] = None,
    fail_fast: Optional[bool] = None,
    only: Optional[Mapping[str, Sequence[str]]] = None,
    actions: Optional[ActionRegistry] = None,
    console: Optional[Console] = None,
) -> PipelineResult:
    """
    Plan and run a workflow for one triggering event.

    Returns the aggregated PipelineResult; `result.exit_code` is non-zero
    iff some job Failed.
    """
    console = console or get_console()
    event = event or RunEvent(workspace=str(Path(workspace).resolve()))

    plans = build_plans(workflow, event=event, actions=actions, only=only, fail_fast=fail_fast)
    console.print_run_started(workflow=workflow.name, event=event.name, plan_count=len(plans))
    for plan in plans:
        console.print_debug(f"{plan.plan_id}: env layers {sorted(set(plan.env.origin(k) or '' for k in plan.env))}")

    result = run_plans(
        plans,
        runner=runner,
        workspace=workspace,
        max_workers=max_workers,
        console=console,
    )
    console.print_results(result)
    return result
