from __future__ import annotations

import shutil
import sys

import pytest

from matrixci.context import EnvContext
from matrixci.executor import (
    CancellationToken,
    JobExecutor,
    SubprocessRunner,
    TIMEOUT_EXIT_CODE,
    parse_env_file,
    shell_argv,
)
from matrixci.model import JobPlan, JobStatus, MatrixEntry, PlannedStep

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


def make_plan(*steps: PlannedStep, env=None, job_id="build") -> JobPlan:
    return JobPlan(
        job_id=job_id,
        entry=MatrixEntry((("os", "ubuntu-latest"),)),
        runner="ubuntu-latest",
        runner_os="Linux",
        env=EnvContext({"RUNNER_OS": "Linux", **(env or {})}, layer="job"),
        steps=tuple(steps),
    )


def step(index: int, name: str, command: str = "", *, skipped=False, **kw) -> PlannedStep:
    return PlannedStep(index=index, name=name, skipped=skipped, command=command or name, **kw)


def test_all_steps_pass(executor, fake_runner):
    result = executor.execute(make_plan(step(0, "one"), step(1, "two")))
    assert result.status is JobStatus.PASSED
    assert [r.step for r in result.steps] == ["one", "two"]
    assert fake_runner.commands() == ["one", "two"]


def test_first_failure_short_circuits(executor, fake_runner):
    fake_runner.fail("lint", exit_code=3)
    result = executor.execute(make_plan(step(0, "checkout"), step(1, "lint"), step(2, "test")))

    assert result.status is JobStatus.FAILED
    assert result.failed_index == 1
    assert result.failed_step.step == "lint"
    assert result.failed_step.exit_code == 3
    assert not result.ran("test")
    assert fake_runner.commands() == ["checkout", "lint"]


def test_skipped_steps_are_reported_not_run(executor, fake_runner):
    result = executor.execute(make_plan(step(0, "build"), step(1, "android", skipped=True)))
    assert result.status is JobStatus.PASSED
    assert result.skipped_steps == ("android",)
    assert fake_runner.commands() == ["build"]


def test_job_with_only_skipped_steps_passes(executor, fake_runner):
    result = executor.execute(make_plan(step(0, "android", skipped=True)))
    assert result.status is JobStatus.PASSED
    assert result.steps == ()
    assert fake_runner.calls == []


def test_step_env_layers(executor, fake_runner):
    plan = make_plan(
        step(0, "first", overrides={"LEVEL": "step"}),
        step(1, "second"),
        env={"LEVEL": "job"},
    )
    executor.execute(plan)
    first, second = fake_runner.calls
    assert first.env["LEVEL"] == "step"
    assert second.env["LEVEL"] == "job"
    assert first.env["RUNNER_OS"] == "Linux"
    assert first.env["MATRIXCI_ENV"] == first.env["GITHUB_ENV"]


def test_env_file_exports_reach_later_steps(executor, fake_runner):
    fake_runner.export("setup-ndk", "ANDROID_NDK_HOME=/opt/ndk\n")
    executor.execute(make_plan(step(0, "setup-ndk"), step(1, "build")))
    setup, build = fake_runner.calls
    assert "ANDROID_NDK_HOME" not in setup.env
    assert build.env["ANDROID_NDK_HOME"] == "/opt/ndk"


def test_step_override_beats_export(executor, fake_runner):
    fake_runner.export("first", "LEVEL=export\n")
    executor.execute(make_plan(step(0, "first"), step(1, "second", overrides={"LEVEL": "step"})))
    assert fake_runner.calls[1].env["LEVEL"] == "step"


def test_invalid_env_file_fails_the_step(executor, fake_runner):
    fake_runner.export("first", "not a valid line\n")
    result = executor.execute(make_plan(step(0, "first"), step(1, "second")))
    assert result.status is JobStatus.FAILED
    assert result.failed_step.exit_code == 1
    assert "invalid line" in result.failed_step.output


def test_missing_working_directory_fails_the_step(executor, fake_runner):
    result = executor.execute(make_plan(step(0, "build", working_directory="does/not/exist")))
    assert result.status is JobStatus.FAILED
    assert "working-directory not found" in result.steps[0].output
    assert fake_runner.calls == []


def test_working_directory_is_relative_to_workspace(executor, fake_runner, tmp_path):
    (tmp_path / "crate").mkdir()
    executor.execute(make_plan(step(0, "build", working_directory="crate")))
    assert fake_runner.calls[0].cwd == str((tmp_path / "crate").resolve())


def test_cancelled_token_before_start(executor, fake_runner):
    token = CancellationToken()
    token.cancel("fail-fast: sibling failed")
    result = executor.execute(make_plan(step(0, "build")), token)
    assert result.status is JobStatus.CANCELLED
    assert result.reason == "fail-fast: sibling failed"
    assert fake_runner.calls == []


def test_cancellation_is_observed_between_steps(executor, fake_runner):
    token = CancellationToken()
    fake_runner.on_run = lambda call: token.cancel("stop") if call.command == "first" else None
    result = executor.execute(make_plan(step(0, "first"), step(1, "second")), token)
    assert result.status is JobStatus.CANCELLED
    assert fake_runner.commands() == ["first"]
    assert [r.step for r in result.steps] == ["first"]


def test_failure_wins_over_cancellation_for_the_running_step(executor, fake_runner):
    token = CancellationToken()
    fake_runner.fail("first")
    fake_runner.on_run = lambda call: token.cancel("stop")
    result = executor.execute(make_plan(step(0, "first"), step(1, "second")), token)
    assert result.status is JobStatus.FAILED


# ----------------------------------------------------------------------
# parse_env_file
# ----------------------------------------------------------------------

def test_parse_env_file_simple_and_heredoc():
    text = "A=1\nB=x=y\n\nNOTES<<EOF\nline 1\nline 2\nEOF\n"
    assert parse_env_file(text) == {"A": "1", "B": "x=y", "NOTES": "line 1\nline 2"}


@pytest.mark.parametrize("text", ["JUSTAKEY\n", "=value\n", "X<<EOF\nnever closed\n"])
def test_parse_env_file_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_env_file(text)


# ----------------------------------------------------------------------
# SubprocessRunner
# ----------------------------------------------------------------------

def test_shell_argv_templates():
    argv, name = shell_argv("bash", "/tmp/step.sh")
    assert name == "bash"
    assert argv[-1] == "/tmp/step.sh"
    assert "pipefail" in argv

    argv, _ = shell_argv("perl {0}", "/tmp/step.sh")
    assert argv == ["perl", "/tmp/step.sh"]

    with pytest.raises(ValueError):
        shell_argv("fish", "/tmp/step.sh")


@posix_only
def test_subprocess_runner_stops_at_first_failing_line(tmp_path):
    outcome = SubprocessRunner().run(
        "echo before\nfalse\necho after",
        env={"PATH": "/usr/bin:/bin"},
        cwd=str(tmp_path),
        shell="sh",
    )
    assert outcome.exit_code != 0
    assert "before" in outcome.output
    assert "after" not in outcome.output


@posix_only
def test_subprocess_runner_sees_env_and_cwd(tmp_path):
    outcome = SubprocessRunner().run(
        'echo "$GREETING from $(pwd)"',
        env={"PATH": "/usr/bin:/bin", "GREETING": "hello"},
        cwd=str(tmp_path),
        shell="sh",
    )
    assert outcome.exit_code == 0
    assert "hello from" in outcome.output


@posix_only
def test_subprocess_runner_timeout(tmp_path):
    outcome = SubprocessRunner().run(
        "sleep 5",
        env={"PATH": "/usr/bin:/bin"},
        cwd=str(tmp_path),
        shell="sh",
        timeout=0.2,
    )
    assert outcome.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in outcome.output


@posix_only
def test_subprocess_runner_python_shell(tmp_path):
    outcome = SubprocessRunner().run("print('hi from python')", env={}, cwd=str(tmp_path), shell="python")
    assert outcome.exit_code == 0
    assert "hi from python" in outcome.output


@posix_only
@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
def test_env_file_export_end_to_end(tmp_path, quiet_console):
    executor = JobExecutor(workspace=tmp_path, console=quiet_console)
    plan = make_plan(
        step(0, "export", 'echo "ANDROID_NDK_HOME=/opt/ndk" >> "$GITHUB_ENV"', shell="bash"),
        step(1, "check", 'test "$ANDROID_NDK_HOME" = /opt/ndk', shell="bash"),
    )
    result = executor.execute(plan)
    assert result.status is JobStatus.PASSED, result.to_dict()
