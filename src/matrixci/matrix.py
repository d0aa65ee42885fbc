# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .actions import ActionRegistry, default_registry
from .context import EnvContext
from .errors import DefinitionError, EmptyAxisError
from .expressions import compile_predicate, interpolate
from .model import Job, JobPlan, MatrixEntry, PlannedStep, Step, WorkflowDefinition, scalar_text
from .triggers import RunEvent

Axes = Union[Mapping[str, Sequence[Any]], Sequence[Tuple[str, Sequence[Any]]]]


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def expand(axes: Axes, *, job: Optional[str] = None) -> List[MatrixEntry]:
    """
    Cartesian product of the axis values, in declared order.

    The first axis varies slowest. No axes yields a single empty entry
    (the job still runs once). An empty axis, or an axis repeating a
    value (`[1, '1']` counts as a repeat), is a definition error.
    """
    items = list(axes.items()) if isinstance(axes, Mapping) else list(axes)
    for axis, values in items:
        if len(values) == 0:
            raise EmptyAxisError(f"Matrix axis '{axis}' has no values", job=job, axis=axis)
        seen = set()
        for value in values:
            text = scalar_text(value)
            if text in seen:
                raise DefinitionError(
                    f"Matrix axis '{axis}' repeats the value '{text}'",
                    job=job,
                    details={"values": [scalar_text(v) for v in values]},
                )
            seen.add(text)

    names = [axis for axis, _ in items]
    entries = [
        MatrixEntry(tuple(zip(names, combo)))
        for combo in product(*(tuple(values) for _, values in items))
    ]
    labels = set()
    for entry in entries:
        # e.g. ("a, b", "c") and ("a", "b, c") share a label
        if entry.label in labels:
            raise DefinitionError(f"Matrix entries share the label '{entry.label}'", job=job)
        labels.add(entry.label)
    return entries


# ---------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------

def _scope(
    *,
    entry: MatrixEntry,
    env: EnvContext,
    job: Job,
    event: RunEvent,
    runner: str = "",
    runner_os: str = "",
) -> Dict[str, Any]:
    ci = event.context()
    return {
        "matrix": entry.as_dict(),
        "env": env.as_dict(),
        "runner": {"os": runner_os, "label": runner, "name": runner},
        "job": {"id": job.id, "name": job.display_name},
        "strategy": {"fail-fast": job.fail_fast, "max-parallel": job.max_parallel},
        "ci": ci,
        "github": ci,
    }


def _interpolate_map(values: Mapping[str, Any], scope: Mapping[str, Any]) -> Dict[str, str]:
    return {k: interpolate(v, scope) for k, v in values.items()}


def _global_env(workflow: WorkflowDefinition, event: RunEvent) -> EnvContext:
    base = EnvContext(event.env(), layer="event")
    scope = {"ci": event.context(), "github": event.context(), "env": base.as_dict()}
    return base.merge(_interpolate_map(workflow.env, scope), layer="global")


def _plan_step(
    index: int,
    step: Step,
    *,
    job: Job,
    plan_env: EnvContext,
    scope: Mapping[str, Any],
    actions: ActionRegistry,
) -> PlannedStep:
    try:
        predicate = compile_predicate(step.if_)
    except DefinitionError as e:
        e.job, e.step = job.id, step.name
        raise

    # resolved exactly once, before anything runs
    if not predicate(scope):
        return PlannedStep(index=index, name=step.name, skipped=True)

    overrides = _interpolate_map(step.env, scope)
    step_scope = dict(scope)
    step_scope["env"] = plan_env.merge(overrides, layer="step").as_dict()

    shell = step.shell
    if step.uses:
        inputs = _interpolate_map(step.with_, step_scope)
        action = actions.resolve(step.uses, inputs, job=job.id, step=step.name)
        command = action.command
        shell = shell or action.shell
    else:
        command = interpolate(step.body, step_scope)

    timeout = step.timeout_minutes * 60 if step.timeout_minutes else None
    wd = interpolate(step.working_directory, step_scope) if step.working_directory else None
    return PlannedStep(
        index=index,
        name=step.name,
        skipped=False,
        command=command,
        overrides=overrides,
        shell=shell,
        working_directory=wd,
        timeout=timeout,
    )


def materialize(
    workflow: WorkflowDefinition,
    job: Job,
    entry: MatrixEntry,
    *,
    event: Optional[RunEvent] = None,
    actions: Optional[ActionRegistry] = None,
    fail_fast: Optional[bool] = None,
) -> JobPlan:
    """
    Bind a job template to one matrix entry.

    Env layering: global < job < matrix-derived. Step predicates are
    evaluated here against that env and the entry, never again.
    """
    event = event or RunEvent()
    actions = actions or default_registry()

    global_env = _global_env(workflow, event)
    pre_scope = _scope(entry=entry, env=global_env, job=job, event=event)
    runner = interpolate(job.runs_on, pre_scope).strip()
    if not runner:
        raise DefinitionError("runs-on resolved to an empty runner label", job=job.id)

    job_env = global_env.merge(_interpolate_map(job.env, pre_scope), layer="job")
    plan_env = job_env.with_os_derived(entry, runner)
    runner_os = plan_env.resolve("RUNNER_OS") or runner
    scope = _scope(entry=entry, env=plan_env, job=job, event=event, runner=runner, runner_os=runner_os)

    steps = tuple(
        _plan_step(i, step, job=job, plan_env=plan_env, scope=scope, actions=actions)
        for i, step in enumerate(job.steps)
    )
    return JobPlan(
        job_id=job.id,
        entry=entry,
        runner=runner,
        runner_os=runner_os,
        env=plan_env,
        steps=steps,
        fail_fast=job.fail_fast if fail_fast is None else fail_fast,
        max_parallel=job.max_parallel,
        needs=job.needs,
    )


def _matches_filter(entry: MatrixEntry, only: Mapping[str, Sequence[str]]) -> bool:
    for axis, allowed in only.items():
        if axis not in entry.as_dict():
            continue
        if str(entry.get(axis)) not in {str(a) for a in allowed}:
            return False
    return True


def plan_job(
    workflow: WorkflowDefinition,
    job: Job,
    *,
    event: Optional[RunEvent] = None,
    actions: Optional[ActionRegistry] = None,
    only: Optional[Mapping[str, Sequence[str]]] = None,
    fail_fast: Optional[bool] = None,
) -> List[JobPlan]:
    entries = expand(job.matrix, job=job.id)
    if only:
        entries = [e for e in entries if _matches_filter(e, only)]
        if not entries:
            raise DefinitionError(
                "Matrix filter excludes every entry of this job",
                job=job.id,
                details={"filter": dict(only)},
            )
    return [
        materialize(workflow, job, e, event=event, actions=actions, fail_fast=fail_fast)
        for e in entries
    ]


def plan_workflow(
    workflow: WorkflowDefinition,
    *,
    event: Optional[RunEvent] = None,
    actions: Optional[ActionRegistry] = None,
    only: Optional[Mapping[str, Sequence[str]]] = None,
    fail_fast: Optional[bool] = None,
) -> List[JobPlan]:
    """One JobPlan per (job, matrix entry), jobs in declared order."""
    if only:
        declared = {axis for job in workflow.jobs for axis, _ in job.matrix}
        unknown = sorted(axis for axis in only if axis not in declared)
        if unknown:
            raise DefinitionError(
                f"Matrix filter names an axis no job declares: {', '.join(unknown)}",
                details={"declared": ", ".join(sorted(declared)) or "(none)"},
            )

    plans: List[JobPlan] = []
    for job in workflow.jobs:
        plans.extend(plan_job(workflow, job, event=event, actions=actions, only=only, fail_fast=fail_fast))
    check_unique_plan_ids(plans)
    return plans


def check_unique_plan_ids(plans: Sequence[JobPlan]) -> None:
    seen = set()
    for plan in plans:
        if plan.plan_id in seen:
            raise DefinitionError(f"Two plans share the id '{plan.plan_id}'", job=plan.job_id)
        seen.add(plan.plan_id)
