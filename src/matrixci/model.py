# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .context import EnvContext

Command = Union[str, Tuple[str, ...]]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class PipelineStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


# ---------------------------------------------------------------------
# Workflow definition (templates, immutable after parsing)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step template inside a job.

    Exactly one of `run` (opaque shell body, or a sequence of lines) and
    `uses` (an action reference resolved by the action registry) is set.
    """
    name: str
    run: Optional[Command] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None
    id: Optional[str] = None

    @property
    def body(self) -> str:
        if self.run is None:
            return ""
        if isinstance(self.run, str):
            return self.run
        return "\n".join(self.run)


@dataclass(frozen=True)
class Trigger:
    event: str
    branches: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    A job template: materialized once per matrix entry.

    `matrix` is an ordered tuple of (axis, values) so declared order
    survives all the way to the plan ids.
    """
    id: str
    steps: Tuple[Step, ...]
    name: Optional[str] = None
    runs_on: str = "ubuntu-latest"
    matrix: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    env: Dict[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class WorkflowDefinition:
    jobs: Tuple[Job, ...]
    name: str = "workflow"
    triggers: Tuple[Trigger, ...] = (Trigger("push"),)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def events(self) -> List[str]:
        return [t.event for t in self.triggers]


# ---------------------------------------------------------------------
# Plans (materialized per run, discarded afterwards)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixEntry:
    """One concrete assignment of values to matrix axes."""
    pairs: Tuple[Tuple[str, Any], ...] = ()

    @property
    def values(self) -> Tuple[Any, ...]:
        return tuple(v for _, v in self.pairs)

    def get(self, axis: str, default: Any = None) -> Any:
        for k, v in self.pairs:
            if k == axis:
                return v
        return default

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.pairs)

    @property
    def label(self) -> str:
        return ", ".join(scalar_text(v) for v in self.values)

    def __iter__(self) -> Iterator[Tuple[str, Any]]:
        return iter(self.pairs)


def scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class PlannedStep:
    index: int
    name: str
    skipped: bool
    command: str = ""
    overrides: Dict[str, str] = field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    timeout: Optional[float] = None  # seconds


@dataclass(frozen=True)
class JobPlan:
    job_id: str
    entry: MatrixEntry
    runner: str
    runner_os: str
    env: EnvContext
    steps: Tuple[PlannedStep, ...]
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    needs: Tuple[str, ...] = ()

    @property
    def plan_id(self) -> str:
        if not self.entry.pairs:
            return self.job_id
        return f"{self.job_id} ({self.entry.label})"

    @property
    def applicable_steps(self) -> List[PlannedStep]:
        return [s for s in self.steps if not s.skipped]


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    step: str
    index: int
    exit_code: int
    output: str = ""
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "index": self.index,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "output": self.output,
        }


@dataclass(frozen=True)
class JobResult:
    plan_id: str
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    skipped_steps: Tuple[str, ...] = ()
    failed_index: Optional[int] = None
    duration: float = 0.0
    reason: Optional[str] = None

    @property
    def failed_step(self) -> Optional[StepResult]:
        if self.failed_index is None:
            return None
        return self.steps[self.failed_index]

    def ran(self, step_name: str) -> bool:
        return any(r.step == step_name for r in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "skipped_steps": list(self.skipped_steps),
            "failed_index": self.failed_index,
            "duration": round(self.duration, 3),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PipelineResult:
    jobs: Dict[str, JobResult]
    status: PipelineStatus
    missing: Tuple[str, ...] = ()

    @property
    def exit_code(self) -> int:
        return 1 if self.status is PipelineStatus.FAILED else 0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready summary (used by `matrixci run --json`)."""
        return {
            "status": self.status.value,
            "jobs": {pid: r.to_dict() for pid, r in self.jobs.items()},
            "missing": list(self.missing),
        }

    def with_status(self, status: JobStatus) -> List[str]:
        return [pid for pid, r in self.jobs.items() if r.status is status]

    @property
    def failed(self) -> List[str]:
        return self.with_status(JobStatus.FAILED)

    @property
    def cancelled(self) -> List[str]:
        return self.with_status(JobStatus.CANCELLED)

    @property
    def skipped(self) -> List[str]:
        return self.with_status(JobStatus.SKIPPED)

    @property
    def passed(self) -> List[str]:
        return self.with_status(JobStatus.PASSED)
