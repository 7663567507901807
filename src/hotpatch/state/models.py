"""
Data models for patch modules, kernel ABIs and transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple


def canonical_name(value: str) -> str:
    """Normalize a module file name or user argument to the kernel's module name."""
    name = Path(value).name
    if name.endswith(".ko"):
        name = name[: -len(".ko")]
    return name.replace("-", "_")


class AbiKind(str, Enum):
    """Kernel state-exposure contracts, in probe priority order."""

    NATIVE_LIVEPATCH = "livepatch"
    LEGACY_PATCHES = "kpatch-patches"
    LEGACY_CORE = "kpatch"


@dataclass(frozen=True)
class KernelABI:
    """The active ABI and the directory holding per-patch state."""

    kind: AbiKind
    root: Path

    @property
    def supports_signal(self) -> bool:
        return self.kind is AbiKind.NATIVE_LIVEPATCH

    @property
    def supports_stacking(self) -> bool:
        return self.kind is AbiKind.NATIVE_LIVEPATCH

    @property
    def pins_patch_modules(self) -> bool:
        """kpatch.ko holds an extra reference on patch modules (force-unsafe safety)."""
        return self.kind is not AbiKind.NATIVE_LIVEPATCH


class ModuleState(str, Enum):
    """Exactly one of these holds for a module at any instant."""

    NOT_LOADED = "not-loaded"
    LOADED_DISABLED = "disabled"
    LOADED_ENABLED = "enabled"
    IN_TRANSITION = "in-transition"


@dataclass
class PatchModule:
    """A patch binary and, once resident, its kernel-side state."""

    name: str
    path: Path | None = None
    kernel_version: str | None = None
    checksum: str | None = None
    enabled: bool = False
    transitioning: bool = False
    stack_order: int | None = None

    @property
    def label(self) -> str:
        """Listing label: enabled, enabling..., disabled or disabling..."""
        if self.enabled:
            return "enabling..." if self.transitioning else "enabled"
        return "disabling..." if self.transitioning else "disabled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path) if self.path else None,
            "kernel_version": self.kernel_version,
            "checksum": self.checksum,
            "enabled": self.enabled,
            "transitioning": self.transitioning,
            "stack_order": self.stack_order,
        }


class TransitionState(str, Enum):
    """States of the transition monitor."""

    IDLE = "idle"
    POLLING = "polling"
    STALLED = "stalled"
    SIGNALED = "signaled"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class StalledProcess:
    """A task that has not yet switched to the transition target."""

    pid: int
    comm: str
    stack: str
    patch_state: int
    target: int


@dataclass
class TransitionResult:
    """Outcome of waiting for one patch transition."""

    module: str
    state: TransitionState
    target: int | None = None
    elapsed: float = 0.0
    signaled: bool = False
    stalled: list[StalledProcess] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return self.state in (TransitionState.IDLE, TransitionState.RESOLVED)


class FunctionKey(NamedTuple):
    """A patched function site: object, function name and symbol position."""

    object: str
    function: str
    sympos: int = 0

    def __str__(self) -> str:
        return f"{self.object}:{self.function},{self.sympos}"


@dataclass
class FunctionRecord:
    """The module currently winning a patched function site."""

    key: FunctionKey
    module: str
    stack_order: int
    transitioning: bool = False
