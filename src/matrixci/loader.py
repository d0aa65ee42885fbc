# loader.py
"""
Workflow loading and validation.

A workflow is either a YAML document (the usual CI shape: `on`, `env`,
`jobs.<id>.strategy.matrix`, `runs-on`, `steps`) or a Python file built
with the DSL that defines `workflow()` or `WORKFLOW`.

Every structural problem is reported as a DefinitionError before any
job starts.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from .actions import ActionRegistry, default_registry
from .dag import validate_needs
from .errors import DefinitionError
from .expressions import check_references, check_template, compile_predicate, to_text
from .matrix import expand
from .model import Job, Step, Trigger, WorkflowDefinition

YAML_SUFFIXES = (".yml", ".yaml")

# keys that would change execution semantics we do not implement
UNSUPPORTED_JOB_KEYS = ("if", "container", "services", "uses")
UNSUPPORTED_STEP_KEYS = ("continue-on-error",)
UNSUPPORTED_MATRIX_KEYS = ("include", "exclude")


# ----------------------------------------------------------------------
# Small typed readers
# ----------------------------------------------------------------------

def _str_list(value: Any, what: str, *, job: Optional[str] = None, step: Optional[str] = None) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return tuple(to_text(v) for v in value)
    raise DefinitionError(f"'{what}' must be a string or a list of strings", job=job, step=step)


def _str_map(value: Any, what: str, *, job: Optional[str] = None, step: Optional[str] = None) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DefinitionError(f"'{what}' must be a mapping", job=job, step=step)
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, (Mapping, list)):
            raise DefinitionError(f"'{what}.{k}' must be a scalar", job=job, step=step)
        out[str(k)] = to_text(v)
    return out


def _positive_number(value: Any, what: str, *, job: Optional[str] = None, step: Optional[str] = None) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise DefinitionError(f"'{what}' must be a positive number", job=job, step=step)
    return float(value)


# ----------------------------------------------------------------------
# Document -> model
# ----------------------------------------------------------------------

def _parse_triggers(raw: Any) -> Tuple[Trigger, ...]:
    if isinstance(raw, str):
        return (Trigger(raw),)
    if isinstance(raw, list):
        return tuple(Trigger(event) for event in _str_list(raw, "on"))
    if isinstance(raw, Mapping):
        triggers: List[Trigger] = []
        for event, cfg in raw.items():
            if cfg is None:
                triggers.append(Trigger(str(event)))
                continue
            if not isinstance(cfg, Mapping):
                raise DefinitionError(f"'on.{event}' must be a mapping")
            triggers.append(Trigger(
                str(event),
                branches=_str_list(cfg.get("branches"), f"on.{event}.branches"),
                paths=_str_list(cfg.get("paths"), f"on.{event}.paths"),
            ))
        return tuple(triggers)
    raise DefinitionError("'on' must be an event name, a list of events or a mapping")


def _parse_step(job_id: str, index: int, raw: Any) -> Step:
    where = f"#{index + 1}"
    if not isinstance(raw, Mapping):
        raise DefinitionError("Step must be a mapping", job=job_id, step=where)

    name = raw.get("name")
    where = str(name) if name else where
    for key in UNSUPPORTED_STEP_KEYS:
        if key in raw:
            raise DefinitionError(f"Step key '{key}' is not supported", job=job_id, step=where)

    run, uses = raw.get("run"), raw.get("uses")
    if (run is None) == (uses is None):
        raise DefinitionError("Step needs exactly one of 'run' or 'uses'", job=job_id, step=where)

    if run is not None:
        if isinstance(run, list):
            run = _str_list(run, "run", job=job_id, step=where)
        elif not isinstance(run, str):
            run = to_text(run)
    if uses is not None and not isinstance(uses, str):
        raise DefinitionError("'uses' must be a string", job=job_id, step=where)

    if not name:
        if uses:
            name = f"Run {uses}"
        else:
            lines = (run if isinstance(run, str) else "\n".join(run)).strip().splitlines()
            name = f"Run {lines[0]}" if lines else "Run"

    cond = raw.get("if")

    shell = raw.get("shell")
    wd = raw.get("working-directory")
    step_id = raw.get("id")
    return Step(
        name=str(name),
        run=run,
        uses=uses,
        with_=_str_map(raw.get("with"), "with", job=job_id, step=where),
        if_=to_text(cond) if cond is not None else None,
        env=_str_map(raw.get("env"), "env", job=job_id, step=where),
        shell=str(shell) if shell is not None else None,
        working_directory=str(wd) if wd is not None else None,
        timeout_minutes=_positive_number(raw.get("timeout-minutes"), "timeout-minutes", job=job_id, step=where),
        id=str(step_id) if step_id is not None else None,
    )


def _parse_matrix(job_id: str, raw: Any) -> Tuple[Tuple[str, Tuple[Any, ...]], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        raise DefinitionError("'strategy.matrix' must be a mapping of axis -> values", job=job_id)
    axes: List[Tuple[str, Tuple[Any, ...]]] = []
    for axis, values in raw.items():
        if axis in UNSUPPORTED_MATRIX_KEYS:
            raise DefinitionError(f"Matrix '{axis}' is not supported", job=job_id)
        if not isinstance(values, list):
            raise DefinitionError(f"Matrix axis '{axis}' must be a list", job=job_id)
        for v in values:
            if isinstance(v, (Mapping, list)):
                raise DefinitionError(f"Matrix axis '{axis}' values must be scalars", job=job_id)
        axes.append((str(axis), tuple(values)))
    return tuple(axes)


def _parse_job(job_id: str, raw: Any) -> Job:
    if not isinstance(raw, Mapping):
        raise DefinitionError("Job must be a mapping", job=job_id)
    for key in UNSUPPORTED_JOB_KEYS:
        if key in raw:
            raise DefinitionError(f"Job key '{key}' is not supported", job=job_id)

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list) and runs_on:
        runs_on = runs_on[0]
    if not isinstance(runs_on, str) or not runs_on.strip():
        raise DefinitionError("'runs-on' is required", job=job_id)

    strategy = raw.get("strategy") or {}
    if not isinstance(strategy, Mapping):
        raise DefinitionError("'strategy' must be a mapping", job=job_id)
    fail_fast = strategy.get("fail-fast", True)
    if not isinstance(fail_fast, bool):
        raise DefinitionError("'strategy.fail-fast' must be true or false", job=job_id)
    max_parallel = strategy.get("max-parallel")
    if max_parallel is not None and (isinstance(max_parallel, bool) or not isinstance(max_parallel, int) or max_parallel < 1):
        raise DefinitionError("'strategy.max-parallel' must be a positive integer", job=job_id)

    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise DefinitionError("Job must have at least one step", job=job_id)

    name = raw.get("name")
    return Job(
        id=job_id,
        name=str(name) if name is not None else None,
        runs_on=runs_on,
        matrix=_parse_matrix(job_id, strategy.get("matrix")),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        env=_str_map(raw.get("env"), "env", job=job_id),
        needs=_str_list(raw.get("needs"), "needs", job=job_id),
        steps=tuple(_parse_step(job_id, i, s) for i, s in enumerate(steps_raw)),
    )


def workflow_from_dict(
    data: Any,
    *,
    default_name: str = "workflow",
    actions: Optional[ActionRegistry] = None,
) -> WorkflowDefinition:
    if not isinstance(data, Mapping):
        raise DefinitionError("Workflow document must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    raw_on = data.get("on", data.get(True))
    if raw_on is None:
        raise DefinitionError("Workflow is missing 'on' (trigger events)")

    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise DefinitionError("Workflow must define at least one job under 'jobs'")

    wf = WorkflowDefinition(
        name=str(data.get("name") or default_name),
        triggers=_parse_triggers(raw_on),
        env=_str_map(data.get("env"), "env"),
        jobs=tuple(_parse_job(str(job_id), raw) for job_id, raw in jobs_raw.items()),
    )
    validate_workflow(wf, actions=actions)
    return wf


def parse_workflow(text: str, *, default_name: str = "workflow", actions: Optional[ActionRegistry] = None) -> WorkflowDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError("Workflow is not valid YAML", details={"error": str(e)}) from e
    return workflow_from_dict(data, default_name=default_name, actions=actions)


# ----------------------------------------------------------------------
# Validation (shared by YAML and DSL workflows)
# ----------------------------------------------------------------------

# properties each plan-time context exposes; env and ci are open-ended
_FIXED_PROPERTIES: Dict[str, FrozenSet[str]] = {
    "runner": frozenset({"os", "label", "name"}),
    "job": frozenset({"id", "name"}),
    "strategy": frozenset({"fail-fast", "max-parallel"}),
}


def _known_properties(job: Job) -> Dict[str, FrozenSet[str]]:
    known = dict(_FIXED_PROPERTIES)
    known["matrix"] = frozenset(axis.lower() for axis, _ in job.matrix)
    return known


def _validate_step(job: Job, step: Step, actions: ActionRegistry, known: Mapping[str, FrozenSet[str]]) -> None:
    if (step.run is None) == (step.uses is None):
        raise DefinitionError("Step needs exactly one of 'run' or 'uses'", job=job.id, step=step.name)
    try:
        compile_predicate(step.if_)
        if isinstance(step.if_, str) and step.if_.strip():
            check_references(step.if_, known)
        for value in (step.body, step.working_directory, *step.env.values(), *step.with_.values()):
            if value:
                check_template(value, known)
    except DefinitionError as e:
        e.job, e.step = job.id, step.name
        raise
    if step.uses and not actions.has(step.uses):
        raise DefinitionError(
            f"Unknown action '{step.uses}'",
            job=job.id,
            step=step.name,
            details={"known": ", ".join(actions.names())},
        )


def validate_workflow(workflow: WorkflowDefinition, *, actions: Optional[ActionRegistry] = None) -> None:
    """Raise DefinitionError for anything that would fail at plan time."""
    actions = actions or default_registry()
    if not workflow.jobs:
        raise DefinitionError("Workflow must define at least one job")

    seen = set()
    for job in workflow.jobs:
        if job.id in seen:
            raise DefinitionError("Duplicate job id", job=job.id)
        seen.add(job.id)

    validate_needs({job.id: job.needs for job in workflow.jobs})

    for value in workflow.env.values():
        check_template(value)
    for job in workflow.jobs:
        if not job.steps:
            raise DefinitionError("Job must have at least one step", job=job.id)
        expand(job.matrix, job=job.id)
        known = _known_properties(job)
        try:
            check_template(job.runs_on, known)
            for value in job.env.values():
                check_template(value, known)
        except DefinitionError as e:
            e.job = job.id
            raise
        for step in job.steps:
            _validate_step(job, step, actions, known)


# ----------------------------------------------------------------------
# Files
# ----------------------------------------------------------------------

def _load_python_workflow(path: Path) -> WorkflowDefinition:
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        wf = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, WorkflowDefinition):
        raise DefinitionError(
            "Python workflow must define workflow() -> WorkflowDefinition or WORKFLOW = wf(...)",
            details={"file": str(path)},
        )
    return wf


def load_workflow(path: str | Path, *, actions: Optional[ActionRegistry] = None) -> WorkflowDefinition:
    """
    Load a workflow from a file.

    `.yml` / `.yaml` files are parsed as workflow documents; `.py` files
    must define `workflow()` or `WORKFLOW` built with `matrixci.dsl`.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        text = wf_path.read_text(encoding="utf-8")
        return parse_workflow(text, default_name=wf_path.stem, actions=actions)
    if wf_path.suffix == ".py":
        wf = _load_python_workflow(wf_path)
        validate_workflow(wf, actions=actions)
        return wf
    raise DefinitionError(f"Unsupported workflow file type: {wf_path.name}")
