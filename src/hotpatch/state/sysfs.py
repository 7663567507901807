"""
KernelState - Reads and writes the kernel-exposed patch state files.

The kernel files are the only source of truth. Nothing here caches: every
call goes back to the filesystem, so two invocations racing each other see
the kernel's view and nothing else.
"""

from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from hotpatch.state.models import FunctionKey, KernelABI, ModuleState, PatchModule

if TYPE_CHECKING:
    from hotpatch.kernel.config import PathsConfig


def _read(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _read_int(path: Path) -> int | None:
    value = _read(path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class KernelState:
    """Access to sysfs/procfs patch state, rooted at configurable paths."""

    def __init__(self, paths: PathsConfig) -> None:
        self.paths = paths

    # Patch directories

    def patch_dir(self, abi: KernelABI, name: str) -> Path:
        return abi.root / name

    def list_patches(self, abi: KernelABI) -> list[str]:
        """Names of patch modules currently present under the ABI root."""
        if not abi.root.is_dir():
            return []
        return sorted(p.name for p in abi.root.iterdir() if p.is_dir())

    def patch_present(self, abi: KernelABI, name: str) -> bool:
        return self.patch_dir(abi, name).is_dir()

    def has_enabled_file(self, abi: KernelABI, name: str) -> bool:
        return (self.patch_dir(abi, name) / "enabled").exists()

    def read_enabled(self, abi: KernelABI, name: str) -> int | None:
        return _read_int(self.patch_dir(abi, name) / "enabled")

    def write_enabled(self, abi: KernelABI, name: str, value: int) -> str:
        """
        Write the enabled flag.

        Returns the diagnostic text of a failed write, or "" on success, so the
        result can be fed to the retry executor like command output.
        """
        path = self.patch_dir(abi, name) / "enabled"
        try:
            with open(path, "w") as f:
                f.write(f"{value}\n")
        except OSError as e:
            return os.strerror(e.errno) if e.errno else str(e)
        return ""

    def in_transition(self, abi: KernelABI, name: str) -> bool:
        return _read(self.patch_dir(abi, name) / "transition") == "1"

    def read_checksum(self, abi: KernelABI, name: str) -> str | None:
        return _read(self.patch_dir(abi, name) / "checksum")

    def read_stack_order(self, abi: KernelABI, name: str) -> int | None:
        return _read_int(self.patch_dir(abi, name) / "stack_order")

    def has_signal_control(self, abi: KernelABI, name: str) -> bool:
        return (self.patch_dir(abi, name) / "signal").exists()

    def write_signal(self, abi: KernelABI, name: str) -> None:
        """Ask the kernel to nudge tasks that block the transition."""
        with open(self.patch_dir(abi, name) / "signal", "w") as f:
            f.write("1\n")

    def patch_functions(self, abi: KernelABI, name: str) -> Iterator[FunctionKey]:
        """Patched function sites: <patch>/<object>/<function>,<sympos> directories."""
        patch_dir = self.patch_dir(abi, name)
        if not patch_dir.is_dir():
            return
        for obj_dir in sorted(p for p in patch_dir.iterdir() if p.is_dir()):
            for func_dir in sorted(p for p in obj_dir.iterdir() if p.is_dir()):
                function, _, sympos = func_dir.name.rpartition(",")
                if not function:
                    function, sympos = func_dir.name, "0"
                try:
                    position = int(sympos)
                except ValueError:
                    function, position = func_dir.name, 0
                yield FunctionKey(obj_dir.name, function, position)

    def module_state(self, abi: KernelABI, name: str) -> ModuleState:
        if not self.patch_present(abi, name):
            return ModuleState.NOT_LOADED
        if self.in_transition(abi, name):
            return ModuleState.IN_TRANSITION
        if self.read_enabled(abi, name) == 1:
            return ModuleState.LOADED_ENABLED
        return ModuleState.LOADED_DISABLED

    def snapshot(self, abi: KernelABI, name: str) -> PatchModule:
        """Kernel-side view of a resident patch module."""
        return PatchModule(
            name=name,
            checksum=self.read_checksum(abi, name),
            enabled=self.read_enabled(abi, name) == 1,
            transitioning=self.in_transition(abi, name),
            stack_order=self.read_stack_order(abi, name),
        )

    def transitioning_patch(self, abi: KernelABI) -> str | None:
        """The first patch currently in transition, if any."""
        for name in self.list_patches(abi):
            if self.in_transition(abi, name):
                return name
        return None

    # Module reference counts

    def module_resident(self, name: str) -> bool:
        return (self.paths.sys_module_root / name).is_dir()

    def refcount(self, name: str) -> int | None:
        return _read_int(self.paths.sys_module_root / name / "refcnt")

    # Tasks

    def task_ids(self) -> Iterator[int]:
        """Every thread id under /proc/<pid>/task/<tid>."""
        proc = self.paths.proc_root
        if not proc.is_dir():
            return
        for proc_dir in sorted(proc.iterdir(), key=lambda p: p.name):
            if not proc_dir.name.isdigit():
                continue
            task_root = proc_dir / "task"
            try:
                tasks = sorted(task_root.iterdir(), key=lambda p: p.name)
            except OSError as e:
                # Processes exit while we walk
                if e.errno not in (errno.ENOENT, errno.ESRCH, errno.EACCES):
                    raise
                continue
            for task_dir in tasks:
                if task_dir.name.isdigit():
                    yield int(task_dir.name)

    def _task_dir(self, tid: int) -> Path:
        return self.paths.proc_root / str(tid)

    def task_patch_state(self, tid: int) -> int | None:
        return _read_int(self._task_dir(tid) / "patch_state")

    def task_comm(self, tid: int) -> str:
        return _read(self._task_dir(tid) / "comm") or ""

    def task_stack(self, tid: int) -> str | None:
        return _read(self._task_dir(tid) / "stack")
