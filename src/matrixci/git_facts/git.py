# git.py
# Small wrapper around the Git CLI.
# Everything the engine needs to know about the triggering push (commit,
# ref, changed files) comes through here.

from __future__ import annotations

import shutil
import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def git_available(cwd: Optional[str] = None) -> bool:
    """True when git is installed and `cwd` is inside a work tree."""
    if shutil.which("git") is None:
        return False
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=cwd) == "true"
    except subprocess.CalledProcessError:
        return False


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref of the current checkout: `refs/heads/<branch>`, or the
    commit SHA when HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def is_dirty(cwd: Optional[str] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes
    (modified, staged or untracked files).
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repo root.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def pushed_files(compare_ref: str = "origin/main", cwd: Optional[str] = None) -> List[str]:
    """
    Files a push would carry.

    Dirty tree: staged + unstaged + untracked files.
    Clean tree: diff against the merge-base with `compare_ref`, falling
    back to HEAD~1, and to every tracked file on a first commit.
    """
    if is_dirty(cwd=cwd):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, cwd=cwd)
            if out:
                files.update(out.splitlines())
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # no remote configured, first commit, etc.
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        tracked = _git(["ls-files"], cwd=cwd)
        return tracked.splitlines() if tracked else []
