"""
Patch Lifecycle Controller - Load and unload orchestration.

Responsibilities:
- Activate the patch core when none is loaded
- Insert patch binaries and re-enable disabled resident patches
- Disable and remove patches, gated on transition and refcount
- Batch load/unload of everything installed or resident

Every state-mutating write is followed by a transition wait. A stalled
transition is rolled back, never forced: a module that fails to enable is
left disabled (re-enable) or unloaded (fresh insert).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from hotpatch.adapters import KmodTool, ReadelfInspector
from hotpatch.errors import ChecksumMismatch, HotpatchError, NotFound, ToolFailure, TransitionStalled
from hotpatch.kernel.abi import core_loaded, resolve_abi
from hotpatch.kernel.clock import Clock
from hotpatch.kernel.finder import ModuleFinder
from hotpatch.kernel.refcount import RefcountWaiter
from hotpatch.kernel.retry import RetryExecutor
from hotpatch.kernel.transition import TransitionMonitor
from hotpatch.state.models import ModuleState, TransitionResult, canonical_name
from hotpatch.state.sysfs import KernelState

if TYPE_CHECKING:
    from hotpatch.adapters.base import BinaryInspector, ModuleTool
    from hotpatch.kernel.config import PatchConfig
    from hotpatch.state.models import KernelABI

logger = structlog.get_logger()


@dataclass
class LoadOutcome:
    """Result of loading one patch module."""

    module: str
    action: str  # loaded, re-enabled, already-enabled
    path: Path | None = None
    transition: TransitionResult | None = None
    core_activated: bool = False


@dataclass
class UnloadReport:
    """Result of unloading every resident patch module."""

    unloaded: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    sweeps: int = 0

    @property
    def success(self) -> bool:
        return not self.remaining


class PatchController:
    """
    Composes ABI resolution, module lookup, retry, transition and refcount
    waits into load/unload operations.
    """

    def __init__(
        self,
        config: PatchConfig,
        state: KernelState | None = None,
        tool: ModuleTool | None = None,
        inspector: BinaryInspector | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.state = state or KernelState(config.paths)
        self.tool = tool or KmodTool()
        self.inspector = inspector or ReadelfInspector()
        self.clock = clock or Clock()

        self.finder = ModuleFinder(config, self.inspector, self.tool)
        self.retry = RetryExecutor(config.retry, self.clock)
        self.monitor = TransitionMonitor(self.state, self.clock, config.timeouts)
        self.refcount = RefcountWaiter(self.state, self.clock, config.timeouts)

    def abi(self) -> KernelABI:
        return resolve_abi(self.config.paths)

    # Core activation

    def find_core_module(self) -> Path:
        for candidate in self.config.core_candidates():
            if candidate.is_file():
                return candidate
        raise NotFound("can't find core module")

    def ensure_core(self) -> tuple[KernelABI, bool]:
        """
        Make sure a patch core is active.

        Returns:
            The ABI resolved after activation, and whether activation happened
        """
        if core_loaded(self.config.paths):
            return self.abi(), False

        core_name = self.config.core.module_name
        if self.tool.probe(core_name):
            logger.info("Loaded core module", module=core_name)
        else:
            core_path = self.find_core_module()
            logger.info("Loading core module", path=str(core_path))
            output = self.tool.insert(core_path)
            if output:
                raise ToolFailure(f"failed to load core module: {output}")

        # The state root only appears once the core is up
        return self.abi(), True

    # Load

    def load(self, arg: str | Path) -> LoadOutcome:
        """Resolve a module name or path and load it."""
        return self.load_binary(self.finder.find(str(arg)))

    def load_binary(self, path: Path) -> LoadOutcome:
        abi, activated = self.ensure_core()
        name = self.finder.module_name(path)

        state = self.state.module_state(abi, name)
        if state is ModuleState.IN_TRANSITION:
            # An earlier enable or disable is still applying; settle it first
            result = self.monitor.wait(abi, name)
            if not result.settled:
                raise TransitionStalled(
                    name, f"patch module {name} is stuck in transition", result.stalled
                )
            state = self.state.module_state(abi, name)

        if state is ModuleState.LOADED_ENABLED:
            logger.info("Patch module already loaded and enabled", module=name)
            return LoadOutcome(name, "already-enabled", path, core_activated=activated)
        if state is ModuleState.LOADED_DISABLED:
            outcome = self._reenable(abi, name, path)
            outcome.core_activated = activated
            return outcome

        # A disabled patch whose state directory is gone may still be resident
        if self.state.module_resident(name):
            self.remove(abi, name, quiet=True)

        logger.info("Loading patch module", module=name, path=str(path))
        self.retry.run(lambda: self.tool.insert(path), f"load module {path}")

        result = self.monitor.wait(abi, name)
        if not result.settled:
            logger.error("Transition did not complete, unloading", module=name)
            try:
                self.unload_resolved(abi, name)
            except HotpatchError as e:
                raise TransitionStalled(
                    name,
                    f"failed to load module {name} (transition stalled); unload also failed: {e}",
                    stalled=result.stalled,
                ) from e
            raise TransitionStalled(
                name, f"failed to load module {name} (transition stalled)", result.stalled
            )

        return LoadOutcome(name, "loaded", path, result, core_activated=activated)

    def _reenable(self, abi: KernelABI, name: str, path: Path) -> LoadOutcome:
        # Unreadable on either side counts as a mismatch
        requested = self.finder.checksum(path)
        resident = self.state.read_checksum(abi, name)
        if not requested or not resident or requested != resident:
            logger.error("Checksum mismatch", module=name, resident=resident, requested=requested)
            raise ChecksumMismatch(name, resident, requested)

        logger.info("Module already loaded, re-enabling", module=name)
        self.retry.run(
            lambda: self.state.write_enabled(abi, name, 1), f"re-enable module {name}"
        )

        result = self.monitor.wait(abi, name)
        if not result.settled:
            logger.error("Transition did not complete, disabling", module=name)
            self.retry.run(
                lambda: self.state.write_enabled(abi, name, 0), f"disable module {name}"
            )
            rollback = self.monitor.wait(abi, name)
            outcome = "patch disabled" if rollback.settled else "disable also stalled"
            raise TransitionStalled(
                name,
                f"failed to re-enable module {name} (transition stalled), {outcome}",
                result.stalled,
            )

        return LoadOutcome(name, "re-enabled", path, result)

    def load_all(self) -> list[LoadOutcome]:
        """Load every binary installed for the running kernel; stop at the first failure."""
        outcomes = []
        for path in self.finder.installed():
            outcomes.append(self.load_binary(path))
        return outcomes

    # Unload

    def disable(self, abi: KernelABI, name: str) -> TransitionResult | None:
        """
        Disable a patch and wait for the transition.

        Returns None when the module is resident but already has no state
        directory (already disabled). Raises NotFound when it is not loaded at
        all and TransitionStalled when the transition never completes.
        """
        if not self.state.has_enabled_file(abi, name):
            if self.state.module_resident(name):
                return None
            raise NotFound(f"patch module {name} is not loaded")

        if self.state.read_enabled(abi, name) == 1:
            logger.info("Disabling patch module", module=name)
            self.retry.run(
                lambda: self.state.write_enabled(abi, name, 0), f"disable module {name}"
            )

        result = self.monitor.wait(abi, name)
        if not result.settled:
            raise TransitionStalled(
                name, f"failed to disable module {name} (transition stalled)", result.stalled
            )
        return result

    def remove(self, abi: KernelABI, name: str, quiet: bool = False) -> bool:
        """
        Remove a disabled module once its refcount allows it.

        A refused rmmod is tolerated here and only here: modules built with
        force-unsafe patches can never be removed.
        """
        self.refcount.wait(abi, name)

        if not quiet:
            logger.info("Unloading patch module", module=name)

        removed = self.tool.remove(name)
        if not removed and not quiet:
            logger.warning("Module removal refused, module stays resident", module=name)
        return removed

    def unload_resolved(self, abi: KernelABI, name: str) -> bool:
        """Disable then remove. Returns False if the module stays resident."""
        self.disable(abi, name)
        return self.remove(abi, name)

    def unload(self, arg: str) -> tuple[str, bool]:
        """
        Disable then remove one patch module.

        Returns:
            The canonical name, and whether the module was removed
        """
        name = canonical_name(arg)
        return name, self.unload_resolved(self.abi(), name)

    def unload_all(self) -> UnloadReport:
        """
        Unload every resident patch.

        Older kernels only disable patches in reverse enable order, so this
        sweeps repeatedly, skipping modules that cannot settle yet, until a
        sweep makes no progress. Leftovers are reported, never raised.
        """
        abi = self.abi()
        report = UnloadReport()

        while True:
            report.sweeps += 1
            progress = 0

            for name in self.state.list_patches(abi):
                if name in report.errors and self._still_disabling(abi, name):
                    logger.debug("Still in transition, skipping", module=name)
                    continue

                was_enabled = self.state.read_enabled(abi, name) == 1
                try:
                    self.disable(abi, name)
                    self.remove(abi, name)
                except HotpatchError as e:
                    report.errors[name] = str(e)
                    logger.warning("Skipping module this sweep", module=name, error=str(e))
                    if was_enabled and self.state.read_enabled(abi, name) == 0:
                        progress += 1
                    continue

                if not self.state.patch_present(abi, name):
                    report.unloaded.append(name)
                    report.errors.pop(name, None)
                    progress += 1
                elif was_enabled:
                    progress += 1

            if progress == 0:
                break

        report.remaining = self.state.list_patches(abi)
        for name in report.remaining:
            logger.warning("Failed to unload module", module=name)
        return report

    def _still_disabling(self, abi: KernelABI, name: str) -> bool:
        return self.state.in_transition(abi, name) and self.state.read_enabled(abi, name) == 0

    # Other

    def info(self, arg: str) -> str:
        path = self.finder.find(arg)
        details = self.tool.modinfo(path)
        if details is None:
            raise ToolFailure(f"failed to read module info for {path}")
        return details

    def signal(self) -> str | None:
        """Nudge tasks blocking the patch currently in transition."""
        return self.monitor.signal_transitioning(self.abi())
