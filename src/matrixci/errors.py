# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


class MatrixCIError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Definition errors (abort the whole run before any job starts)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class DefinitionError(MatrixCIError):
    """
    Malformed workflow document.

    Carries enough location info to point at the offending job/step
    without a traceback.
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        where = []
        if self.job:
            where.append(f"job={self.job}")
        if self.step:
            where.append(f"step={self.step}")
        head = f"{self.message} ({', '.join(where)})" if where else self.message
        lines = [head]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class EmptyAxisError(DefinitionError):
    axis: str = ""


@dataclass(eq=False)
class ExpressionError(DefinitionError):
    expression: str = ""


# ----------------------------------------------------------------------
# Runtime errors (local to one job)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class StepFailure(MatrixCIError):
    job: str
    step: str
    exit_code: int
    command: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


@dataclass(eq=False)
class CancellationError(MatrixCIError):
    job: str
    reason: str = "cancelled"

    def __str__(self) -> str:
        return f"[{self.job}] cancelled: {self.reason}"
