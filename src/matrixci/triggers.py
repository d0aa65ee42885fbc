# triggers.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .git_facts.git import current_ref, git_available, head_sha, pushed_files
from .model import Trigger, WorkflowDefinition


@dataclass(frozen=True)
class RunEvent:
    """The event that started this run (one per push)."""
    name: str = "push"
    ref: Optional[str] = None
    sha: Optional[str] = None
    workspace: Optional[str] = None
    changed_files: Optional[Tuple[str, ...]] = None

    @property
    def branch(self) -> Optional[str]:
        if self.ref and self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return self.ref

    def env(self) -> Dict[str, str]:
        """Well-known keys every step sees, below the workflow's own env."""
        keys = {"CI": "true", "MATRIXCI_EVENT": self.name}
        if self.ref:
            keys["MATRIXCI_REF"] = self.ref
        if self.sha:
            keys["MATRIXCI_SHA"] = self.sha
        if self.workspace:
            keys["MATRIXCI_WORKSPACE"] = self.workspace
        return keys

    def context(self) -> Dict[str, Optional[str]]:
        return {
            "event_name": self.name,
            "ref": self.ref,
            "ref_name": self.branch,
            "sha": self.sha,
            "workspace": self.workspace,
        }


def detect_event(
    name: str = "push",
    *,
    workspace: str | Path = ".",
    compare_ref: str = "origin/main",
    with_changes: bool = False,
) -> RunEvent:
    """
    Build a RunEvent from the local checkout.

    Outside a git work tree the ref/sha/changed files are simply left
    unset; branch and path filters then do not restrict the run.
    """
    root = str(Path(workspace).resolve())
    if not git_available(cwd=root):
        return RunEvent(name=name, workspace=root)

    try:
        sha = head_sha(cwd=root)
        ref = current_ref(cwd=root)
    except subprocess.CalledProcessError:
        # repository without commits yet
        return RunEvent(name=name, workspace=root)

    changed = None
    if with_changes:
        try:
            changed = tuple(pushed_files(compare_ref, cwd=root))
        except subprocess.CalledProcessError:
            changed = None
    return RunEvent(name=name, ref=ref, sha=sha, workspace=root, changed_files=changed)


def _matches_any(value: str, patterns: Tuple[str, ...]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def trigger_matches(trigger: Trigger, event: RunEvent) -> Tuple[bool, str]:
    if trigger.event != event.name:
        return False, f"event '{event.name}' is not '{trigger.event}'"

    if trigger.branches and event.branch is not None:
        if not _matches_any(event.branch, trigger.branches):
            return False, f"branch '{event.branch}' does not match {list(trigger.branches)}"

    if trigger.paths and event.changed_files is not None:
        if not any(_matches_any(f, trigger.paths) for f in event.changed_files):
            return False, f"no changed file matches {list(trigger.paths)}"

    return True, f"triggered by '{event.name}'"


def should_run(workflow: WorkflowDefinition, event: RunEvent) -> Tuple[bool, str]:
    """
    Decide whether `event` starts this workflow.

    Returns (run?, human readable reason).
    """
    reasons: List[str] = []
    for trigger in workflow.triggers:
        ok, why = trigger_matches(trigger, event)
        if ok:
            return True, why
        reasons.append(why)
    if not reasons:
        return False, "workflow declares no trigger events"
    return False, "; ".join(reasons)
