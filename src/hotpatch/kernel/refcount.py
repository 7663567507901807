"""
Refcount Waiter - Bounded wait for a module to drop its external references.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from hotpatch.errors import RefcountTimeout

if TYPE_CHECKING:
    from hotpatch.kernel.clock import Clock
    from hotpatch.kernel.config import TimeoutsConfig
    from hotpatch.state.models import KernelABI
    from hotpatch.state.sysfs import KernelState

logger = structlog.get_logger()


class RefcountWaiter:
    """Polls /sys/module/<name>/refcnt once per interval up to a fixed window."""

    def __init__(self, state: KernelState, clock: Clock, timeouts: TimeoutsConfig) -> None:
        self.state = state
        self.clock = clock
        self.window = timeouts.module_ref_wait
        self.interval = timeouts.poll_interval

    def _released(self, name: str) -> bool:
        if not self.state.module_resident(name):
            return True
        return self.state.refcount(name) == 0

    def wait(self, abi: KernelABI, name: str) -> None:
        """Return once the refcount is zero; raise RefcountTimeout otherwise."""
        if abi.pins_patch_modules:
            # kpatch.ko keeps its own reference on patch modules, so the count
            # never reaches zero and says nothing about safety
            logger.debug("Skipping refcount wait", module=name, abi=abi.kind.value)
            return

        if self._released(name):
            return

        logger.info("Waiting for module refcount", module=name, timeout=self.window)
        waited = 0.0
        while waited < self.window:
            self.clock.sleep(self.interval)
            waited += self.interval
            if self._released(name):
                return

        raise RefcountTimeout(name, self.state.refcount(name))
