# context.py
"""
Layered, immutable environment for jobs and steps.

Layers compose functionally: every merge returns a new EnvContext and
leaves its base untouched, so sibling job plans can share a common
ancestor (the global layer) without any locking.

    global < job < matrix-derived < step
"""
from __future__ import annotations

import re
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .model import MatrixEntry


def _to_env_value(value: Any) -> str:
    # force values to str for env compatibility
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class EnvContext(Mapping[str, str]):
    """Read-only key/value store that remembers which layer set each key."""

    __slots__ = ("_values", "_origins")

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        *,
        layer: str = "base",
        _origins: Optional[Mapping[str, str]] = None,
    ):
        data = {str(k): _to_env_value(v) for k, v in (values or {}).items()}
        self._values = MappingProxyType(data)
        if _origins is None:
            _origins = {k: layer for k in data}
        self._origins = MappingProxyType(dict(_origins))

    # -- Mapping protocol -------------------------------------------------

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EnvContext({dict(self._values)!r})"

    # -- API --------------------------------------------------------------

    def resolve(self, key: str) -> Optional[str]:
        """Value from the most specific layer defining `key`, or None (undefined)."""
        return self._values.get(key)

    def origin(self, key: str) -> Optional[str]:
        """Name of the layer that supplied `key`."""
        return self._origins.get(key)

    def merge(self, overrides: Optional[Mapping[str, Any]], *, layer: str = "override") -> "EnvContext":
        return merge(self, overrides, layer=layer)

    def with_os_derived(self, entry: "MatrixEntry", runner: str) -> "EnvContext":
        return self.merge(derived_keys(entry, runner), layer="matrix")

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)


def merge(base: EnvContext, overrides: Optional[Mapping[str, Any]], *, layer: str = "override") -> EnvContext:
    """Return a new context where `overrides` win on key collision."""
    if not overrides:
        return base
    values = dict(base.as_dict())
    origins = {k: base.origin(k) or "base" for k in values}
    for k, v in overrides.items():
        values[str(k)] = _to_env_value(v)
        origins[str(k)] = layer
    return EnvContext(values, _origins=origins)


# ---------------------------------------------------------------------
# Runner / matrix derived keys
# ---------------------------------------------------------------------

_OS_PREFIXES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("ubuntu", "linux", "debian", "fedora"), "Linux"),
    (("windows", "win"), "Windows"),
    (("macos", "mac", "osx", "darwin"), "macOS"),
)

# prefixes that only count as a whole token (`win`, `win-2022`, not `winter`)
_TOKEN_PREFIXES = frozenset({"win", "mac"})


def _has_prefix(label: str, prefix: str) -> bool:
    if not label.startswith(prefix):
        return False
    if prefix not in _TOKEN_PREFIXES:
        return True
    rest = label[len(prefix):]
    return rest == "" or not rest[0].isalpha()


def runner_os_for(runner: str) -> str:
    """
    Map a runner label to its OS family name.

    `ubuntu-latest` -> Linux, `windows-2022` -> Windows, `macos-14` -> macOS.
    Unknown labels map to themselves.
    """
    label = (runner or "").strip().lower()
    for prefixes, name in _OS_PREFIXES:
        if any(_has_prefix(label, p) for p in prefixes):
            return name
    return runner


def axis_env_name(axis: str) -> str:
    return "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", axis).upper()


def derived_keys(entry: "MatrixEntry", runner: str) -> Dict[str, str]:
    keys = {
        "RUNNER_OS": runner_os_for(runner),
        "RUNNER_LABEL": runner,
    }
    for axis, value in entry:
        keys[axis_env_name(axis)] = _to_env_value(value)
    return keys
