"""Shared fixtures: a fake kernel tree, a fake clock and fake module tools."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Generator

import pytest
import structlog

from hotpatch.adapters.base import BinaryInspector, ModuleTool
from hotpatch.kernel.config import CoreConfig, PatchConfig, PathsConfig, TimeoutsConfig
from hotpatch.kernel.controller import PatchController
from hotpatch.kernel.finder import CHECKSUM_SECTION, THIS_MODULE_SECTION
from hotpatch.state.models import KernelABI
from hotpatch.state.sysfs import KernelState

RELEASE = "5.10.0"


class FakeClock:
    """Advances only when slept on; runs tick callbacks after every sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.callbacks: list[Callable[[], None]] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        for callback in self.callbacks:
            callback()


class FakeKernel:
    """
    A sysfs/procfs tree under tmp_path that reacts like the kernel.

    transition_ticks[name] controls what an enable/disable of that patch does:
    0 completes instantly, N clears the transition flag after N clock ticks,
    None never clears it.
    """

    def __init__(self, root: Path, clock: FakeClock) -> None:
        self.root = root
        self.paths = PathsConfig(
            livepatch_root=root / "sys/kernel/livepatch",
            kpatch_root=root / "sys/kernel/kpatch",
            sys_module_root=root / "sys/module",
            proc_root=root / "proc",
            kallsyms=root / "proc/kallsyms",
        )
        self.paths.sys_module_root.mkdir(parents=True)
        self.paths.proc_root.mkdir(parents=True)
        self.paths.kallsyms.write_text("ffffffff81000000 T _stext\n")

        self.clock = clock
        self.transition_ticks: dict[str, int | None] = {}
        self.default_ticks: int | None = 0
        self.pending: dict[str, int | None] = {}
        self.busy_writes = 0
        self.signals: list[str] = []
        # Ticks until a signaled transition completes; None leaves it stuck
        self.signal_ticks: int | None = None
        self.state = ReactiveState(self)
        clock.callbacks.append(self.tick)

    @property
    def patch_root(self) -> Path:
        return self.paths.livepatch_root

    def activate_core(self) -> None:
        self.paths.livepatch_root.mkdir(parents=True, exist_ok=True)
        with open(self.paths.kallsyms, "a") as f:
            f.write("ffffffff81100000 T klp_enable_patch\n")

    def add_patch(
        self,
        name: str,
        enabled: int = 1,
        transition: int = 0,
        checksum: str | None = None,
        stack_order: int | None = None,
        functions: dict[str, list[str]] | None = None,
        refcnt: int = 0,
        signal: bool = True,
    ) -> Path:
        patch_dir = self.patch_root / name
        patch_dir.mkdir(parents=True)
        (patch_dir / "enabled").write_text(f"{enabled}\n")
        (patch_dir / "transition").write_text(f"{transition}\n")
        if checksum is not None:
            (patch_dir / "checksum").write_text(f"{checksum}\n")
        if stack_order is not None:
            (patch_dir / "stack_order").write_text(f"{stack_order}\n")
        if signal:
            (patch_dir / "signal").write_text("0\n")
        for obj, funcs in (functions or {}).items():
            for func in funcs:
                (patch_dir / obj / func).mkdir(parents=True)

        module_dir = self.paths.sys_module_root / name
        module_dir.mkdir(exist_ok=True)
        (module_dir / "refcnt").write_text(f"{refcnt}\n")
        return patch_dir

    def remove_patch(self, name: str) -> None:
        shutil.rmtree(self.patch_root / name, ignore_errors=True)
        shutil.rmtree(self.paths.sys_module_root / name, ignore_errors=True)
        self.pending.pop(name, None)

    def set_refcnt(self, name: str, value: int) -> None:
        (self.paths.sys_module_root / name / "refcnt").write_text(f"{value}\n")

    def add_task(self, pid: int, patch_state: int, comm: str = "worker", stack: str = "") -> None:
        task_dir = self.paths.proc_root / str(pid)
        (task_dir / "task" / str(pid)).mkdir(parents=True)
        (task_dir / "patch_state").write_text(f"{patch_state}\n")
        (task_dir / "comm").write_text(f"{comm}\n")
        (task_dir / "stack").write_text(stack)

    def start_transition(self, name: str) -> None:
        ticks = self.transition_ticks.get(name, self.default_ticks)
        if ticks == 0:
            # Completes at once, reversing any transition still pending
            (self.patch_root / name / "transition").write_text("0\n")
            self.pending.pop(name, None)
            return
        (self.patch_root / name / "transition").write_text("1\n")
        self.pending[name] = ticks

    def complete_after(self, name: str, seconds: float) -> None:
        """From clock time `seconds` on, transitions of `name` complete at once."""

        def release() -> None:
            if self.clock.now >= seconds:
                self.transition_ticks[name] = 0

        self.clock.callbacks.append(release)

    def tick(self) -> None:
        for name, remaining in list(self.pending.items()):
            if remaining is None:
                continue
            if remaining <= 1:
                (self.patch_root / name / "transition").write_text("0\n")
                del self.pending[name]
            else:
                self.pending[name] = remaining - 1

    def enabled(self, name: str) -> int:
        return int((self.patch_root / name / "enabled").read_text())

    def in_transition(self, name: str) -> bool:
        return (self.patch_root / name / "transition").read_text().strip() == "1"


class ReactiveState(KernelState):
    """KernelState whose writes trigger fake kernel reactions."""

    def __init__(self, kernel: FakeKernel) -> None:
        super().__init__(kernel.paths)
        self.kernel = kernel
        self.writes: list[tuple[str, int]] = []

    def write_enabled(self, abi: KernelABI, name: str, value: int) -> str:
        if self.kernel.busy_writes:
            self.kernel.busy_writes -= 1
            return "Device or resource busy"
        output = super().write_enabled(abi, name, value)
        if not output:
            self.writes.append((name, value))
            self.kernel.start_transition(name)
        return output

    def write_signal(self, abi: KernelABI, name: str) -> None:
        super().write_signal(abi, name)
        self.kernel.signals.append(name)
        if self.kernel.signal_ticks is not None and name in self.kernel.pending:
            self.kernel.pending[name] = self.kernel.signal_ticks


class FakeBinaries:
    """Registry of fake .ko files and their embedded metadata."""

    def __init__(self) -> None:
        self.meta: dict[bytes, dict[str, str]] = {}

    def make(
        self,
        directory: Path,
        name: str,
        checksum: str = "c0ffee",
        release: str = RELEASE,
        filename: str | None = None,
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / (filename or f"{name.replace('_', '-')}.ko")
        # Metadata follows the file contents, so installed copies keep it
        content = f"\x7fELF {name} {checksum} {release}".encode()
        path.write_bytes(content)
        self.meta[content] = {"name": name, "checksum": checksum, "vermagic": f"{release} SMP mod_unload"}
        return path

    def get(self, path: Path) -> dict[str, str]:
        try:
            return self.meta.get(Path(path).read_bytes(), {})
        except OSError:
            return {}


class FakeInspector(BinaryInspector):
    def __init__(self, binaries: FakeBinaries) -> None:
        self.binaries = binaries

    def section_strings(self, path: Path, section: str) -> list[tuple[int, str]]:
        meta = self.binaries.get(path)
        if section == THIS_MODULE_SECTION and "name" in meta:
            return [(0x18, meta["name"])]
        if section == CHECKSUM_SECTION and meta.get("checksum"):
            return [(0, meta["checksum"])]
        return []


class FakeModuleTool(ModuleTool):
    """insmod/rmmod/modprobe against the fake kernel."""

    name = "fake"

    def __init__(self, kernel: FakeKernel, binaries: FakeBinaries) -> None:
        self.kernel = kernel
        self.binaries = binaries
        self.insert_outputs: list[str] = []
        self.inserted: list[Path] = []
        self.removed: list[str] = []
        self.probed: list[str] = []
        self.refuse_remove: set[str] = set()
        self.probe_works = True
        self.core_paths: set[Path] = set()

    def insert(self, path: Path) -> str:
        self.inserted.append(Path(path))
        if self.insert_outputs:
            output = self.insert_outputs.pop(0)
            if output:
                return output

        if Path(path) in self.core_paths:
            self.kernel.activate_core()
            return ""

        meta = self.binaries.get(path)
        name = meta["name"]
        self.kernel.add_patch(name, enabled=1, checksum=meta.get("checksum"))
        self.kernel.start_transition(name)
        return ""

    def remove(self, name: str) -> bool:
        self.removed.append(name)
        if name in self.refuse_remove:
            return False
        self.kernel.remove_patch(name)
        return True

    def probe(self, name: str) -> bool:
        self.probed.append(name)
        if self.probe_works:
            self.kernel.activate_core()
        return self.probe_works

    def modinfo(self, path: Path, field: str | None = None) -> str | None:
        meta = self.binaries.get(path)
        if not meta:
            return None
        if field == "vermagic":
            return meta["vermagic"]
        if field:
            return None
        return f"filename:       {path}\nname:           {meta['name']}\nvermagic:       {meta['vermagic']}"


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """CLI tests reconfigure structlog against a captured stream."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kernel(tmp_path: Path, clock: FakeClock) -> FakeKernel:
    return FakeKernel(tmp_path / "root", clock)


@pytest.fixture
def binaries() -> FakeBinaries:
    return FakeBinaries()


@pytest.fixture
def tool(kernel: FakeKernel, binaries: FakeBinaries) -> FakeModuleTool:
    return FakeModuleTool(kernel, binaries)


@pytest.fixture
def inspector(binaries: FakeBinaries) -> FakeInspector:
    return FakeInspector(binaries)


@pytest.fixture
def config(tmp_path: Path, kernel: FakeKernel) -> PatchConfig:
    return PatchConfig(
        install_dir=tmp_path / "var/lib/kpatch",
        kernel_release=RELEASE,
        timeouts=TimeoutsConfig(post_enable_wait=15, post_signal_wait=60, module_ref_wait=15),
        paths=kernel.paths,
        core=CoreConfig(
            candidates=[str(tmp_path / "core/{release}/kpatch.ko")],
            script_dir=tmp_path,
        ),
    )


@pytest.fixture
def controller(
    config: PatchConfig,
    kernel: FakeKernel,
    tool: FakeModuleTool,
    inspector: FakeInspector,
    clock: FakeClock,
) -> PatchController:
    return PatchController(config, state=kernel.state, tool=tool, inspector=inspector, clock=clock)
