"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from matrixci.model import JobPlan, JobResult, PipelineResult, StepResult

OUTPUT_TAIL_LINES = 40


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print failures and the final summary
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, event: str, plan_count: int) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {plan_count}",
            "",
        )

    def print_plan(self, plans: Iterable["JobPlan"]) -> None:
        """Print materialized plans with their run/skip decisions."""
        for plan in plans:
            lines = [f"{plan.plan_id}  [runs-on: {plan.runner}, os: {plan.runner_os}]"]
            for step in plan.steps:
                marker = "skip" if step.skipped else "run "
                lines.append(f"  {marker} {step.name}")
            self._emit(*lines)

    def print_job_start(self, plan_id: str, runner: str) -> None:
        if not self.quiet:
            self._emit(f"\nJOB STARTED: {plan_id} ({runner})")

    def print_step(self, plan_id: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._emit(f"[{plan_id}] STEP: {name}")

    def print_step_skipped(self, plan_id: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"[{plan_id}] SKIP: {name} (condition is false)")

    def print_step_failure(self, plan_id: str, result: "StepResult") -> None:
        """
        Print a failed step with its exit code and the tail of its output.

        The whole output is printed in debug mode.
        """
        lines = [f"[{plan_id}] STEP FAILED: {result.step}", f"Exit code: {result.exit_code}"]
        output = result.output.rstrip()
        if output:
            out_lines = output.splitlines()
            if not self.debug and len(out_lines) > OUTPUT_TAIL_LINES:
                lines.append(f"... ({len(out_lines) - OUTPUT_TAIL_LINES} earlier lines hidden)")
                out_lines = out_lines[-OUTPUT_TAIL_LINES:]
            lines.extend(f"  | {line}" for line in out_lines)
        self._emit(*lines)

    def print_job_finished(self, result: "JobResult") -> None:
        line = f"JOB {result.status.value.upper()}: {result.plan_id} ({result.duration:.1f}s)"
        if result.reason:
            line += f" - {result.reason}"
        self._emit(line)

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for plan_id, job in result.jobs.items():
            status = job.status.value.upper()
            detail = ""
            step = job.failed_step
            if step is not None:
                detail = f" (step '{step.step}' exit={step.exit_code})"
            elif job.reason:
                detail = f" ({job.reason})"
            lines.append(f"  {plan_id}: {status}{detail}")
        for plan_id in result.missing:
            lines.append(f"  {plan_id}: UNKNOWN (no result recorded)")
        lines.append("-" * 40)
        lines.append(f"PIPELINE: {result.status.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
