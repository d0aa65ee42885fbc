# executor.py
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import CancellationError, StepFailure
from .model import JobPlan, JobResult, JobStatus, PlannedStep, StepResult
from .ui.console import Console, get_console

# Name of the file a step can append KEY=VALUE lines to; later steps of
# the same job see those keys. GITHUB_ENV is exported too so existing
# scripts keep working.
ENV_FILE_VARS = ("MATRIXCI_ENV", "GITHUB_ENV")

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancellationToken:
    """
    Cooperative cancellation flag shared by the matrix siblings of a job.

    Observed between steps only: a step that is already running is
    allowed to finish.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ----------------------------------------------------------------------
# Command runners
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int
    output: str = ""


class CommandRunner(Protocol):
    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: str,
        shell: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        ...


SHELLS: Dict[str, Tuple[List[str], str]] = {
    # name -> (argv template, script suffix)
    "bash": (["bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"], ".sh"),
    "sh": (["sh", "-e", "{0}"], ".sh"),
    "python": ([sys.executable, "{0}"], ".py"),
    "pwsh": (["pwsh", "-command", ". '{0}'"], ".ps1"),
    "powershell": (["powershell", "-command", ". '{0}'"], ".ps1"),
    "cmd": (["cmd", "/D", "/E:ON", "/V:OFF", "/S", "/C", 'CALL "{0}"'], ".cmd"),
}


def default_shell() -> str:
    if os.name == "nt":
        return "pwsh" if shutil.which("pwsh") else "cmd"
    return "bash" if shutil.which("bash") else "sh"


def shell_argv(shell: Optional[str], script: str) -> Tuple[List[str], str]:
    """
    Build the argv for running `script` with `shell`.

    `shell` is a known name (bash, sh, python, pwsh, powershell, cmd) or a
    custom template containing `{0}`, e.g. `perl {0}`.
    """
    name = shell or default_shell()
    if name in SHELLS:
        template, _ = SHELLS[name]
        return [part.replace("{0}", script) for part in template], name
    if "{0}" not in name:
        raise ValueError(f"Unknown shell {name!r} (custom shells must contain '{{0}}')")
    return [part.replace("{0}", script) for part in shlex.split(name)], name


def script_suffix(shell: Optional[str]) -> str:
    name = shell or default_shell()
    if name in SHELLS:
        return SHELLS[name][1]
    return ".sh"


def _decode(data: object) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


class SubprocessRunner:
    """
    Runs a step body as a script file through its shell.

    The body is written to a temp file (like a CI runner does) so that
    multi-line `run:` blocks stop at the first failing line under
    `bash -e` / `sh -e`. stdout and stderr are merged.
    """

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: str,
        shell: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        with tempfile.TemporaryDirectory(prefix="matrixci-step-") as tmp:
            script = Path(tmp) / f"step{script_suffix(shell)}"
            script.write_text(command if command.endswith("\n") else command + "\n", encoding="utf-8")
            try:
                argv, _ = shell_argv(shell, str(script))
            except ValueError as e:
                return CommandOutcome(exit_code=NOT_FOUND_EXIT_CODE, output=str(e))

            try:
                proc = subprocess.run(
                    argv,
                    cwd=cwd,
                    env=dict(env),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as e:
                output = _decode(e.output)
                return CommandOutcome(
                    exit_code=TIMEOUT_EXIT_CODE,
                    output=f"{output}\nstep timed out after {timeout:g}s".lstrip("\n"),
                )
            except FileNotFoundError:
                return CommandOutcome(
                    exit_code=NOT_FOUND_EXIT_CODE,
                    output=f"shell not found: {argv[0]}",
                )

            return CommandOutcome(exit_code=proc.returncode, output=_decode(proc.stdout))


# ----------------------------------------------------------------------
# Env file exports
# ----------------------------------------------------------------------

def parse_env_file(text: str) -> Dict[str, str]:
    """
    Parse the exports a step appended to its env file.

    Supports `KEY=VALUE` lines and multi-line values:

        KEY<<EOF
        line 1
        line 2
        EOF
    """
    values: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue

        heredoc = "<<" in line and ("=" not in line or line.index("<<") < line.index("="))
        if heredoc:
            key, delimiter = (part.strip() for part in line.split("<<", 1))
            body: List[str] = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"env file: missing delimiter {delimiter!r} for {key!r}")
            i += 1
            value = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            key = key.strip()
        else:
            raise ValueError(f"env file: invalid line {line!r}")

        if not key:
            raise ValueError(f"env file: empty variable name in {line!r}")
        values[key] = value
    return values


# ----------------------------------------------------------------------
# Job executor
# ----------------------------------------------------------------------

class JobExecutor:
    """
    Runs the steps of one JobPlan strictly in order.

    Pending -> Running -> Passed | Failed, or Cancelled when the token is
    seen between steps. The first non-zero exit stops the job; no step is
    ever retried.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        workspace: str | Path = ".",
        console: Optional[Console] = None,
        inherit_env: bool = True,
    ):
        self.runner: CommandRunner = runner or SubprocessRunner()
        self.workspace = Path(workspace).resolve()
        self._console = console
        self.inherit_env = inherit_env

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def execute(self, plan: JobPlan, token: Optional[CancellationToken] = None) -> JobResult:
        skipped = tuple(s.name for s in plan.steps if s.skipped)
        console = self.console
        if token is not None and token.cancelled:
            result = JobResult(
                plan_id=plan.plan_id,
                status=JobStatus.CANCELLED,
                skipped_steps=skipped,
                reason=token.reason,
            )
            console.print_job_finished(result)
            return result

        console.print_job_start(plan.plan_id, plan.runner)
        started = time.monotonic()
        results: List[StepResult] = []
        failed_index: Optional[int] = None
        reason: Optional[str] = None

        try:
            with tempfile.TemporaryDirectory(prefix="matrixci-job-") as scratch:
                self._run_steps(plan, token, Path(scratch), results)
            status = JobStatus.PASSED
        except StepFailure as e:
            status = JobStatus.FAILED
            failed_index = len(results) - 1
            reason = str(e)
        except CancellationError as e:
            status = JobStatus.CANCELLED
            reason = e.reason

        result = JobResult(
            plan_id=plan.plan_id,
            status=status,
            steps=tuple(results),
            skipped_steps=skipped,
            failed_index=failed_index,
            duration=time.monotonic() - started,
            reason=reason,
        )
        console.print_job_finished(result)
        return result

    def _run_steps(
        self,
        plan: JobPlan,
        token: Optional[CancellationToken],
        scratch: Path,
        results: List[StepResult],
    ) -> None:
        exports: Dict[str, str] = {}
        for step in plan.steps:
            if step.skipped:
                self.console.print_step_skipped(plan.plan_id, step.name)
                continue

            if token is not None and token.cancelled:
                raise CancellationError(job=plan.plan_id, reason=token.reason or "cancelled")

            self.console.print_step(plan.plan_id, step.name)
            result, new_exports = self._run_step(plan, step, exports, scratch)
            results.append(result)

            if not result.passed:
                self.console.print_step_failure(plan.plan_id, result)
                raise StepFailure(
                    job=plan.plan_id,
                    step=step.name,
                    exit_code=result.exit_code,
                    command=step.command,
                )
            exports = {**exports, **new_exports}

    def _step_env(self, plan: JobPlan, step: PlannedStep, exports: Mapping[str, str], env_file: Path) -> Dict[str, str]:
        ctx = plan.env.merge(exports, layer="export").merge(step.overrides, layer="step")
        env = dict(os.environ) if self.inherit_env else {}
        env.update(ctx.as_dict())
        for name in ENV_FILE_VARS:
            env[name] = str(env_file)
        return env

    def _run_step(
        self,
        plan: JobPlan,
        step: PlannedStep,
        exports: Mapping[str, str],
        scratch: Path,
    ) -> Tuple[StepResult, Dict[str, str]]:
        cwd = (self.workspace / (step.working_directory or ".")).resolve()
        if not cwd.is_dir():
            return StepResult(
                step=step.name,
                index=step.index,
                exit_code=1,
                output=f"working-directory not found: {cwd}",
            ), {}

        env_file = scratch / f"env-{step.index}"
        env_file.write_text("", encoding="utf-8")
        env = self._step_env(plan, step, exports, env_file)

        started = time.monotonic()
        outcome = self.runner.run(
            step.command,
            env=env,
            cwd=str(cwd),
            shell=step.shell,
            timeout=step.timeout,
        )
        duration = time.monotonic() - started

        new_exports: Dict[str, str] = {}
        exit_code, output = outcome.exit_code, outcome.output
        if exit_code == 0:
            try:
                new_exports = parse_env_file(env_file.read_text(encoding="utf-8"))
            except ValueError as e:
                exit_code, output = 1, f"{output}\n{e}".lstrip("\n")

        return StepResult(
            step=step.name,
            index=step.index,
            exit_code=exit_code,
            output=output,
            duration=duration,
        ), new_exports
