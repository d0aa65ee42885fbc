# actions.py
"""
`uses:` steps.

An action reference (e.g. `actions-rs/toolchain@v1`) is compiled into a
plain command while the plan is built, so the executor only ever sees
runnable steps.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from .errors import DefinitionError


@dataclass(frozen=True)
class ResolvedAction:
    command: str
    shell: Optional[str] = None


ActionFactory = Callable[[Mapping[str, str]], ResolvedAction]


def action_name(uses: str) -> str:
    """`actions/checkout@v2` -> `actions/checkout` (lowercased)."""
    return uses.split("@", 1)[0].strip().lower()


def _flag(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in str(value).replace("\n", ",").split(",") if part.strip()]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

_CHECKOUT_SCRIPT = """\
import shutil
import subprocess

sha = ""
if shutil.which("git"):
    proc = subprocess.run(["git", "rev-parse", "HEAD"], capture_output=True, text=True)
    sha = proc.stdout.strip() if proc.returncode == 0 else ""
print("workspace ready at " + (sha or "<no git checkout>"))
"""


def checkout(inputs: Mapping[str, str]) -> ResolvedAction:
    # jobs run in the local workspace, which is already checked out
    return ResolvedAction(command=_CHECKOUT_SCRIPT, shell="python")


def rust_toolchain(inputs: Mapping[str, str]) -> ResolvedAction:
    toolchain = inputs.get("toolchain") or "stable"
    install = f"rustup toolchain install {toolchain} --profile minimal"
    components = _split_list(inputs.get("components"))
    if components:
        install += " --component " + ",".join(components)
    targets = _split_list(inputs.get("target") or inputs.get("targets"))
    if targets:
        install += " --target " + ",".join(targets)

    lines = [install]
    if _flag(inputs.get("default")):
        lines.append(f"rustup default {toolchain}")
    if _flag(inputs.get("override")):
        lines.append(f"rustup override set {toolchain}")
    return ResolvedAction(command="\n".join(lines))


def dtolnay_rust_toolchain(inputs: Mapping[str, str]) -> ResolvedAction:
    merged = dict(inputs)
    merged.setdefault("default", "true")
    return rust_toolchain(merged)


def setup_python(inputs: Mapping[str, str]) -> ResolvedAction:
    wanted = inputs.get("python-version") or "any"
    script = (
        "import sys\n"
        f"print('requested python {wanted}, using ' + sys.version.split()[0])\n"
    )
    return ResolvedAction(command=script, shell="python")


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class ActionRegistry:
    def __init__(self, actions: Optional[Mapping[str, ActionFactory]] = None):
        self._actions: Dict[str, ActionFactory] = {}
        for name, factory in (actions or {}).items():
            self.register(name, factory)

    def register(self, name: str, factory: ActionFactory) -> None:
        self._actions[action_name(name)] = factory

    def has(self, uses: str) -> bool:
        return action_name(uses) in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)

    def resolve(self, uses: str, inputs: Mapping[str, str], *, job: str | None = None, step: str | None = None) -> ResolvedAction:
        factory = self._actions.get(action_name(uses))
        if factory is None:
            raise DefinitionError(
                f"Unknown action '{uses}'",
                job=job,
                step=step,
                details={"known": ", ".join(self.names())},
            )
        return factory(inputs)


def default_registry() -> ActionRegistry:
    return ActionRegistry({
        "actions/checkout": checkout,
        "actions-rs/toolchain": rust_toolchain,
        "dtolnay/rust-toolchain": dtolnay_rust_toolchain,
        "actions/setup-python": setup_python,
    })
