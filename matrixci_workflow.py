# matrixci_workflow.py
# Workflow for checking matrixci itself: lint, then tests across Python versions
from __future__ import annotations

from matrixci.dsl import job, matrix, sh, wf


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),
        job(
            "test",
            sh("Install package", "pip install -e .[test]"),
            sh("Run pytest", "pytest -q"),
            sh(
                "Smoke test the example",
                "matrixci plan --workflow examples/rust_android.yml",
                if_="runner.os == 'linux'",
            ),
            runs_on="${{ matrix.os }}",
            matrix=matrix("os", ["ubuntu-latest", "macos-latest"]).axis("python", ["3.10", "3.12"]),
            fail_fast=False,
            needs=["lint"],
        ),
        name="matrixci",
        on=("push", "pull_request"),
    )
