from __future__ import annotations

import pytest

from matrixci.dsl import job, matrix, sh, uses, wf
from matrixci.errors import DefinitionError, EmptyAxisError
from matrixci.matrix import expand, materialize, plan_workflow
from matrixci.model import MatrixEntry


def test_expand_preserves_declared_order():
    entries = expand({"os": ["windows-latest", "ubuntu-latest", "macos-latest"]})
    assert [e.get("os") for e in entries] == ["windows-latest", "ubuntu-latest", "macos-latest"]


def test_expand_is_cartesian_first_axis_slowest():
    entries = expand([("os", ["linux", "mac"]), ("rust", ["stable", "nightly", "beta"])])
    assert len(entries) == 6
    assert [e.values for e in entries] == [
        ("linux", "stable"), ("linux", "nightly"), ("linux", "beta"),
        ("mac", "stable"), ("mac", "nightly"), ("mac", "beta"),
    ]


def test_expand_without_axes_yields_one_empty_entry():
    assert expand(()) == [MatrixEntry(())]


def test_expand_rejects_empty_axis():
    with pytest.raises(EmptyAxisError) as exc:
        expand({"os": ["linux"], "rust": []}, job="build")
    assert exc.value.axis == "rust"
    assert exc.value.job == "build"


def _os_workflow(*steps, fail_fast=True):
    return wf(
        job(
            "build",
            *steps,
            runs_on="${{ matrix.os }}",
            matrix=matrix("os", ["windows-latest", "ubuntu-latest", "macos-latest"]),
            fail_fast=fail_fast,
            env={"RUST_BACKTRACE": 1},
        ),
        env={"CARGO_TERM_COLOR": "always"},
    )


def test_plan_per_entry_with_runner_interpolated():
    plans = plan_workflow(_os_workflow(sh("Test", "cargo test")))
    assert [p.plan_id for p in plans] == [
        "build (windows-latest)",
        "build (ubuntu-latest)",
        "build (macos-latest)",
    ]
    assert [p.runner for p in plans] == ["windows-latest", "ubuntu-latest", "macos-latest"]
    assert [p.runner_os for p in plans] == ["Windows", "Linux", "macOS"]


def test_platform_predicate_is_resolved_at_plan_time():
    plans = plan_workflow(_os_workflow(
        sh("Test", "cargo test"),
        sh("Android", "cargo build --target aarch64-linux-android", if_="runner.os == 'Linux'"),
    ))
    skipped = {p.runner: [s.name for s in p.steps if s.skipped] for p in plans}
    assert skipped == {
        "windows-latest": ["Android"],
        "ubuntu-latest": [],
        "macos-latest": ["Android"],
    }


def test_predicate_comparison_ignores_case():
    plans = plan_workflow(_os_workflow(sh("Deps", "apt-get install", if_="runner.os == 'linux'")))
    applies = [p.runner for p in plans if p.applicable_steps]
    assert applies == ["ubuntu-latest"]


def test_plan_env_layers():
    plan = plan_workflow(_os_workflow(sh("Test", "cargo test")))[1]
    assert plan.env["CARGO_TERM_COLOR"] == "always"
    assert plan.env.origin("CARGO_TERM_COLOR") == "global"
    assert plan.env["RUST_BACKTRACE"] == "1"
    assert plan.env.origin("RUST_BACKTRACE") == "job"
    assert plan.env["RUNNER_OS"] == "Linux"
    assert plan.env["MATRIX_OS"] == "ubuntu-latest"
    assert plan.env.origin("MATRIX_OS") == "matrix"


def test_step_body_and_env_are_interpolated():
    step = sh("Echo", "echo ${{ matrix.os }} ${{ env.RUST_BACKTRACE }}", env={"TARGET": "${{ runner.os }}"})
    plan = plan_workflow(_os_workflow(step))[0]
    planned = plan.steps[0]
    assert planned.command == "echo windows-latest 1"
    assert planned.overrides == {"TARGET": "Windows"}


def test_uses_step_is_resolved_to_a_command():
    plan = plan_workflow(_os_workflow(uses("actions-rs/toolchain@v1", with_={"toolchain": "stable"})))[0]
    assert plan.steps[0].command.startswith("rustup toolchain install stable")


def test_empty_runner_label_is_a_definition_error():
    definition = wf(job("build", sh("Test", "true"), runs_on="${{ matrix.missing }}"))
    with pytest.raises(DefinitionError):
        plan_workflow(definition)


def test_fail_fast_override_applies_to_every_plan():
    plans = plan_workflow(_os_workflow(sh("Test", "true"), fail_fast=True), fail_fast=False)
    assert all(p.fail_fast is False for p in plans)


def test_matrix_filter_selects_entries():
    plans = plan_workflow(_os_workflow(sh("Test", "true")), only={"os": ["ubuntu-latest"]})
    assert [p.plan_id for p in plans] == ["build (ubuntu-latest)"]


def test_matrix_filter_that_excludes_everything_is_rejected():
    with pytest.raises(DefinitionError):
        plan_workflow(_os_workflow(sh("Test", "true")), only={"os": ["solaris"]})


def test_materialize_single_entry():
    definition = _os_workflow(sh("Test", "true"))
    plan = materialize(definition, definition.jobs[0], MatrixEntry((("os", "macos-14"),)))
    assert plan.runner_os == "macOS"
    assert plan.plan_id == "build (macos-14)"


@pytest.mark.parametrize("values", [["a", "a"], [1, "1"], [True, "true"]])
def test_repeated_axis_value_is_rejected(values):
    with pytest.raises(DefinitionError, match="repeats"):
        expand({"v": values})


def test_entries_with_the_same_label_are_rejected():
    with pytest.raises(DefinitionError, match="share the label"):
        expand([("a", ["x, y", "x"]), ("b", ["z", "y, z"])])


def test_matrix_filter_on_undeclared_axis_is_rejected():
    with pytest.raises(DefinitionError, match="oss"):
        plan_workflow(_os_workflow(sh("Test", "true")), only={"oss": ["ubuntu-latest"]})


def test_plan_ids_must_be_unique_across_jobs():
    definition = wf(
        job("ci", sh("Test", "true"), matrix=matrix("os", ["a"])),
        job("ci (a)", sh("Test", "true")),
    )
    with pytest.raises(DefinitionError, match="share the id"):
        plan_workflow(definition)
