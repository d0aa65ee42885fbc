from __future__ import annotations

import textwrap

import pytest

from matrixci.errors import DefinitionError, EmptyAxisError, ExpressionError
from matrixci.loader import load_workflow, parse_workflow, workflow_from_dict
from matrixci.matrix import plan_workflow


def _doc(body: str) -> str:
    return textwrap.dedent(body)


def test_parses_the_rust_android_workflow(rust_android_yaml):
    wf = parse_workflow(rust_android_yaml)
    assert wf.name == "Rust Build and Android Build"
    assert wf.events == ["push"]

    build = wf.job("build")
    assert build.fail_fast is False
    assert build.runs_on == "${{ matrix.os }}"
    assert build.matrix == (("os", ("windows-latest", "ubuntu-latest", "macos-latest")),)
    assert build.env == {"RUST_BACKTRACE": "1"}
    assert build.steps[0].name == "Run actions/checkout@v2"
    assert build.steps[2].with_ == {"toolchain": "stable"}
    assert build.steps[1].if_ == "runner.os == 'linux'"


def test_rust_android_plans(rust_android_yaml):
    plans = plan_workflow(parse_workflow(rust_android_yaml))
    assert len(plans) == 3

    by_os = {p.runner_os: [s.name for s in p.applicable_steps] for p in plans}
    linux_only = ["Install Dependencies", "Set up Android NDK (Linux only)", "Build for Android"]
    for name in linux_only:
        assert name in by_os["Linux"]
        assert name not in by_os["Windows"]
        assert name not in by_os["macOS"]
    assert "Build & run tests" in by_os["Windows"]


def test_trigger_mapping_with_filters():
    wf = parse_workflow(_doc("""
        on:
          push:
            branches: [main, "release/*"]
            paths: ["src/**"]
          pull_request:
        jobs:
          t:
            runs-on: ubuntu-latest
            steps:
              - run: echo hi
    """))
    push, pr = wf.triggers
    assert push.branches == ("main", "release/*")
    assert push.paths == ("src/**",)
    assert pr.event == "pull_request"
    assert wf.job("t").steps[0].name == "Run echo hi"


def test_strategy_defaults():
    wf = parse_workflow(_doc("""
        on: push
        jobs:
          t:
            runs-on: [ubuntu-latest, self-hosted]
            steps:
              - run: echo hi
    """))
    job = wf.job("t")
    assert job.fail_fast is True
    assert job.max_parallel is None
    assert job.runs_on == "ubuntu-latest"


@pytest.mark.parametrize(
    "body, message",
    [
        ("jobs:\n  t:\n    runs-on: x\n    steps: [{run: a}]\n", "missing 'on'"),
        ("on: push\njobs: {}\n", "at least one job"),
        ("on: push\njobs:\n  t:\n    steps: [{run: a}]\n", "runs-on"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: []\n", "at least one step"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: [{name: a}]\n", "exactly one of"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: [{run: a, uses: actions/checkout@v2}]\n", "exactly one of"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    if: true\n    steps: [{run: a}]\n", "not supported"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: [{run: a, continue-on-error: true}]\n", "not supported"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    strategy: {fail-fast: maybe}\n    steps: [{run: a}]\n", "fail-fast"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    strategy: {max-parallel: 0}\n    steps: [{run: a}]\n", "max-parallel"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    strategy: {matrix: {include: [{os: a}]}}\n    steps: [{run: a}]\n", "not supported"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    strategy: {matrix: {os: linux}}\n    steps: [{run: a}]\n", "must be a list"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    strategy: {matrix: {v: [1, '1']}}\n    steps: [{run: a}]\n", "repeats"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    needs: nope\n    steps: [{run: a}]\n", "missing job"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: [{uses: someone/unknown@v1}]\n", "Unknown action"),
        ("on: push\njobs:\n  t:\n    runs-on: x\n    steps: [{run: a, timeout-minutes: -1}]\n", "timeout-minutes"),
        ("on: [push\n", "not valid YAML"),
        ("- just\n- a list\n", "must be a mapping"),
    ],
)
def test_definition_errors(body, message):
    with pytest.raises(DefinitionError) as exc:
        parse_workflow(body)
    assert message in str(exc.value)


def test_empty_matrix_axis_is_reported():
    with pytest.raises(EmptyAxisError):
        parse_workflow(_doc("""
            on: push
            jobs:
              t:
                runs-on: x
                strategy:
                  matrix:
                    os: []
                steps:
                  - run: a
        """))


def test_bad_predicate_points_at_the_step():
    with pytest.raises(ExpressionError) as exc:
        parse_workflow(_doc("""
            on: push
            jobs:
              t:
                runs-on: x
                steps:
                  - name: Deploy
                    run: ./deploy
                    if: steps.build.outcome == 'success'
        """))
    assert exc.value.job == "t"
    assert exc.value.step == "Deploy"


def test_dependency_cycle_is_reported():
    with pytest.raises(DefinitionError, match="cycle"):
        parse_workflow(_doc("""
            on: push
            jobs:
              a:
                runs-on: x
                needs: b
                steps: [{run: a}]
              b:
                runs-on: x
                needs: a
                steps: [{run: b}]
        """))


def test_load_yaml_file(tmp_path, rust_android_yaml):
    path = tmp_path / "quickstart.yml"
    path.write_text(rust_android_yaml, encoding="utf-8")
    assert load_workflow(path).job("build").steps


def test_load_python_workflow(tmp_path):
    path = tmp_path / "matrixci_workflow.py"
    path.write_text(textwrap.dedent("""
        from matrixci.dsl import job, sh, wf

        def workflow():
            return wf(job("hello", sh("Say hi", "echo hi")), name="py")
    """), encoding="utf-8")
    wf = load_workflow(path)
    assert wf.name == "py"
    assert wf.job("hello").steps[0].run == "echo hi"


def test_python_workflow_without_entry_point(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("X = 1\n", encoding="utf-8")
    with pytest.raises(DefinitionError):
        load_workflow(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.yml")


def test_unsupported_suffix(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(DefinitionError):
        load_workflow(path)


def test_misspelled_matrix_axis_in_predicate_points_at_the_step():
    with pytest.raises(ExpressionError) as exc:
        parse_workflow(_doc("""
            on: push
            jobs:
              t:
                runs-on: x
                strategy:
                  matrix:
                    platform: [A, B]
                steps:
                  - name: Only A
                    run: echo a
                    if: matrix.platfrom == 'A'
        """))
    assert exc.value.job == "t"
    assert exc.value.step == "Only A"
    assert "platfrom" in str(exc.value)


@pytest.mark.parametrize(
    "step",
    [
        {"run": "echo hi", "if": "runner.arch == 'x64'"},
        {"run": "echo hi", "if": "strategy.fail_fast"},
        {"run": "echo ${{ matrix.rust }}"},
        {"run": "echo ${{ job.title }}"},
        {"uses": "actions-rs/toolchain@v1", "with": {"toolchain": "${{ matrix.toolchain }}"}},
    ],
)
def test_unresolvable_references_are_definition_errors(step):
    document = {
        "on": "push",
        "jobs": {"t": {"runs-on": "x", "strategy": {"matrix": {"os": ["a"]}}, "steps": [step]}},
    }
    with pytest.raises(DefinitionError, match="does not resolve"):
        workflow_from_dict(document)


def test_declared_references_resolve_in_any_case():
    wf = parse_workflow(_doc("""
        on: push
        jobs:
          t:
            runs-on: ${{ matrix.OS }}
            strategy:
              matrix:
                os: [ubuntu-latest]
            steps:
              - run: echo ${{ job.id }} ${{ env.ANYTHING }} ${{ github.sha }}
                if: runner.OS == 'linux' && strategy.fail-fast
    """))
    assert len(plan_workflow(wf)) == 1
