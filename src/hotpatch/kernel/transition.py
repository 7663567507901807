"""
Transition Monitor - Waits for a patch transition to settle.

Called right after a write to a patch's enabled file. The kernel switches
tasks over gradually; a task sitting in a patched function on its stack
holds the whole transition open. The monitor polls, and when the first
window runs out it reports the stalled tasks, nudges them once through the
livepatch signal control, and polls a second window before giving up.

    IDLE ─ flag already clear
    POLLING ─(clear)→ RESOLVED
       │ window exhausted
       ▼
    STALLED → SIGNALED → POLLING ─(clear)→ RESOLVED
                            │ window exhausted
                            ▼
                          FAILED
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import structlog

from hotpatch.errors import UnsupportedRemediation
from hotpatch.state.models import StalledProcess, TransitionResult, TransitionState

if TYPE_CHECKING:
    from hotpatch.kernel.clock import Clock
    from hotpatch.kernel.config import TimeoutsConfig
    from hotpatch.state.models import KernelABI
    from hotpatch.state.sysfs import KernelState

logger = structlog.get_logger()

# patch_state of a task not taking part in any transition
OUTSIDE_TRANSITION = -1


class TransitionMonitor:
    """
    Bounded polling state machine for patch transitions.
    """

    def __init__(self, state: KernelState, clock: Clock, timeouts: TimeoutsConfig) -> None:
        self.state = state
        self.clock = clock
        self.primary_window = timeouts.post_enable_wait
        self.secondary_window = timeouts.post_signal_wait
        self.interval = timeouts.poll_interval

    def wait(self, abi: KernelABI, name: str) -> TransitionResult:
        """Drive the state machine to IDLE, RESOLVED or FAILED."""
        started = self.clock.monotonic()
        result = TransitionResult(
            module=name,
            state=TransitionState.IDLE,
            target=self.state.read_enabled(abi, name),
        )

        if not self.state.in_transition(abi, name):
            return result

        escalated = False
        phase = TransitionState.POLLING
        while phase not in (TransitionState.RESOLVED, TransitionState.FAILED):
            if phase is TransitionState.POLLING:
                window = self.secondary_window if escalated else self.primary_window
                logger.info(
                    "Waiting for patch transition",
                    module=name,
                    timeout=window,
                    after_signal=escalated,
                )
                if self._poll(abi, name, window):
                    phase = TransitionState.RESOLVED
                elif escalated:
                    phase = TransitionState.FAILED
                else:
                    phase = TransitionState.STALLED

            elif phase is TransitionState.STALLED:
                result.stalled = self.stalled_processes(abi, name)
                logger.warning(
                    "Patch transition has stalled",
                    module=name,
                    stalled=[p.pid for p in result.stalled],
                )
                phase = TransitionState.SIGNALED

            elif phase is TransitionState.SIGNALED:
                result.signaled = self.signal(abi, name)
                escalated = True
                phase = TransitionState.POLLING

        result.state = phase
        result.elapsed = self.clock.monotonic() - started
        if phase is TransitionState.FAILED:
            result.stalled = self.stalled_processes(abi, name)
            logger.error("Patch transition failed", module=name, elapsed=result.elapsed)
        else:
            logger.info("Transition complete", module=name, elapsed=result.elapsed)
        return result

    def _poll(self, abi: KernelABI, name: str, window: float) -> bool:
        """Sample once per interval for the window. True as soon as the flag clears."""
        for _ in range(math.ceil(window / self.interval)):
            if not self.state.in_transition(abi, name):
                return True
            self.clock.sleep(self.interval)
        return False

    def is_stalled(self, abi: KernelABI, name: str, tid: int) -> bool:
        """A task is stalled if its patch_state has not reached the patch's enabled value."""
        patch_state = self.state.task_patch_state(tid)
        if patch_state == OUTSIDE_TRANSITION:
            return False

        enabled = self.state.read_enabled(abi, name)
        if enabled is None or patch_state is None:
            return False

        return patch_state != enabled

    def stalled_processes(self, abi: KernelABI, name: str) -> list[StalledProcess]:
        target = self.state.read_enabled(abi, name)
        stalled = []
        for tid in self.state.task_ids():
            if not self.is_stalled(abi, name, tid):
                continue
            stalled.append(
                StalledProcess(
                    pid=tid,
                    comm=self.state.task_comm(tid),
                    stack=self.state.task_stack(tid) or "<unavailable>",
                    patch_state=self.state.task_patch_state(tid) or 0,
                    target=target if target is not None else 0,
                )
            )
        return stalled

    def signal(self, abi: KernelABI, name: str) -> bool:
        """
        Write the one-shot nudge to the patch's signal control.

        Best effort: returns False with a warning where the ABI has no
        control or the write is refused.
        """
        if not (abi.supports_signal and self.state.has_signal_control(abi, name)):
            warning = UnsupportedRemediation(
                f"livepatch process signaling is disabled for {name}"
            )
            logger.warning(str(warning), module=name, abi=abi.kind.value)
            return False

        try:
            self.state.write_signal(abi, name)
        except OSError as e:
            logger.warning("Signal write refused", module=name, error=str(e))
            return False

        logger.info("Signaled stalled processes", module=name)
        return True

    def signal_transitioning(self, abi: KernelABI) -> str | None:
        """Signal whichever patch is currently in transition. Returns its name."""
        name = self.state.transitioning_patch(abi)
        if name is None:
            return None
        self.signal(abi, name)
        return name
