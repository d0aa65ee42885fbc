# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .model import Job, Step, Trigger, WorkflowDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: Union[str, Sequence[str]],
    *,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    shell: Optional[str] = None,
    cwd: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    run = cmd if isinstance(cmd, str) else tuple(cmd)
    return Step(
        name=name,
        run=run,
        if_=if_,
        env={k: str(v) for k, v in (env or {}).items()},
        shell=shell,
        working_directory=cwd,
        timeout_minutes=timeout_minutes,
    )


def uses(
    ref: str,
    *,
    name: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create an action step, e.g. uses("actions/checkout@v2")."""
    return Step(
        name=name or f"Run {ref}",
        uses=ref,
        with_={k: str(v) for k, v in (with_ or {}).items()},
        if_=if_,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Ordered matrix axes.

    Example:
        matrix("os", ["windows-latest", "ubuntu-latest"]).axis("rust", ["stable"])
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.axes: List[Tuple[str, Tuple[Any, ...]]] = [(key, tuple(values))]

    def axis(self, key: str, values: Iterable[Any]) -> "Matrix":
        self.axes.append((key, tuple(values)))
        return self

    def as_axes(self) -> Tuple[Tuple[str, Tuple[Any, ...]], ...]:
        return tuple(self.axes)


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


MatrixSpec = Union[Matrix, Mapping[str, Iterable[Any]], None]


def _axes(spec: MatrixSpec) -> Tuple[Tuple[str, Tuple[Any, ...]], ...]:
    if spec is None:
        return ()
    if isinstance(spec, Matrix):
        return spec.as_axes()
    return tuple((k, tuple(v)) for k, v in spec.items())


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    job_id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: Optional[str] = None,
    runs_on: str = "ubuntu-latest",
    matrix: MatrixSpec = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    env: Optional[Dict[str, Any]] = None,
    needs: Optional[List[str]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({job_id!r}) must have at least one step")

    return Job(
        id=job_id,
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on,
        matrix=_axes(matrix),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        env={k: str(v) for k, v in (env or {}).items()},
        needs=tuple(needs or ()),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self._name: Optional[str] = None
        self._runs_on = "ubuntu-latest"
        self._axes: List[Tuple[str, Tuple[Any, ...]]] = []
        self._fail_fast = True
        self._max_parallel: Optional[int] = None
        self._needs: List[str] = []
        self._steps: List[Step] = []
        self._env: Dict[str, str] = {}

    def named(self, name: str):
        self._name = name
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def with_matrix(self, key: str, *values: Any):
        self._axes.append((key, tuple(values)))
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def max_parallel(self, n: int):
        self._max_parallel = n
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, *, if_: Optional[str] = None, **env: Any):
        self._steps.append(sh(name, run, if_=if_, env=env or None))
        return self

    def use(self, ref: str, **with_: Any):
        self._steps.append(uses(ref, with_=with_))
        return self

    def with_env(self, **env: Any):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.job_id}' has no steps")
        return Job(
            id=self.job_id,
            name=self._name,
            steps=tuple(self._steps),
            runs_on=self._runs_on,
            matrix=tuple(self._axes),
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            env=dict(self._env),
            needs=tuple(self._needs),
        )


def build(job_id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(job_id)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    on: Union[str, Sequence[str]] = ("push",),
    env: Optional[Dict[str, Any]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper.

        from matrixci.dsl import wf, job, sh, matrix

        def workflow():
            return wf(
                job("build", sh("Test", "cargo test"),
                    runs_on="${{ matrix.os }}",
                    matrix=matrix("os", ["ubuntu-latest", "macos-latest"])),
            )
    """
    events = [on] if isinstance(on, str) else list(on)
    return WorkflowDefinition(
        name=name,
        jobs=tuple(jobs),
        triggers=tuple(Trigger(e) for e in events),
        env={k: str(v) for k, v in (env or {}).items()},
    )
