# tests/conftest.py
"""
Shared fixtures.

FakeRunner stands in for SubprocessRunner so scheduling and executor
tests never spawn a shell: it records every command with the env it
got and returns scripted exit codes.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from matrixci.executor import CommandOutcome, JobExecutor
from matrixci.ui.console import Console

# (command substring, RUNNER_OS or None for any) -> exit code
Rule = Tuple[str, Optional[str], int]


@dataclass
class Call:
    command: str
    env: Dict[str, str]
    cwd: str
    shell: Optional[str]
    timeout: Optional[float]

    @property
    def runner_os(self) -> str:
        return self.env.get("RUNNER_OS", "")


@dataclass
class FakeRunner:
    rules: List[Rule] = field(default_factory=list)
    exports: Dict[str, str] = field(default_factory=dict)
    on_run: Optional[Callable[[Call], None]] = None
    calls: List[Call] = field(default_factory=list)

    def __post_init__(self):
        self._lock = threading.Lock()

    def fail(self, needle: str, *, runner_os: Optional[str] = None, exit_code: int = 1) -> "FakeRunner":
        self.rules.append((needle, runner_os, exit_code))
        return self

    def export(self, needle: str, text: str) -> "FakeRunner":
        """Append `text` to the env file when a command containing `needle` runs."""
        self.exports[needle] = text
        return self

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: str,
        shell: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        call = Call(command=command, env=dict(env), cwd=cwd, shell=shell, timeout=timeout)
        with self._lock:
            self.calls.append(call)
        if self.on_run is not None:
            self.on_run(call)

        for needle, text in self.exports.items():
            if needle in command:
                with open(env["MATRIXCI_ENV"], "a", encoding="utf-8") as fh:
                    fh.write(text)

        for needle, runner_os, exit_code in self.rules:
            if needle in command and (runner_os is None or runner_os == call.runner_os):
                return CommandOutcome(exit_code=exit_code, output=f"{command}: failed")
        return CommandOutcome(exit_code=0, output=f"{command}: ok")

    def commands(self, runner_os: Optional[str] = None) -> List[str]:
        with self._lock:
            return [c.command for c in self.calls if runner_os is None or c.runner_os == runner_os]


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def executor(fake_runner, quiet_console, tmp_path) -> JobExecutor:
    return JobExecutor(fake_runner, workspace=tmp_path, console=quiet_console, inherit_env=False)


@pytest.fixture
def rust_android_yaml() -> str:
    return """\
name: Rust Build and Android Build

on: [push]

jobs:
  build:
    strategy:
      fail-fast: false
      matrix:
        os: [windows-latest, ubuntu-latest, macos-latest]
    runs-on: ${{ matrix.os }}
    env:
      RUST_BACKTRACE: 1

    steps:
      - uses: actions/checkout@v2

      - name: Install Dependencies
        run: |
          sudo apt-get update
          sudo apt-get install --no-install-recommends pkg-config libgtk-3-dev
        if: runner.os == 'linux'

      - name: Set up Rust toolchain
        uses: actions-rs/toolchain@v1
        with:
          toolchain: stable

      - name: Install Rust components
        run: rustup component add clippy rustfmt

      - name: Build & run tests
        run: |
          cargo fmt --all -- --check
          cargo clippy --all -- -Dwarnings
          cargo test --all --

      - name: Set up Android NDK (Linux only)
        if: runner.os == 'Linux'
        run: |
          echo "ANDROID_NDK_HOME=$(pwd)/android-ndk-r23b" >> $GITHUB_ENV

      - name: Build for Android
        if: runner.os == 'Linux'
        run: |
          rustup target add aarch64-linux-android
          cargo build --target aarch64-linux-android --release
"""
