"""
Function Ownership - Which loaded patch currently wins each patched function.

With stacked livepatches the highest stack_order wins a function site. The
mapping is rebuilt from sysfs for every listing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from hotpatch.state.models import FunctionKey, FunctionRecord

if TYPE_CHECKING:
    from hotpatch.state.models import KernelABI
    from hotpatch.state.sysfs import KernelState

logger = structlog.get_logger()


def aggregate_functions(state: KernelState, abi: KernelABI) -> dict[FunctionKey, FunctionRecord]:
    """
    Build the per-function owner map for all resident patches.

    Patches without a stack_order file (older ABIs) contribute nothing.
    Equal stack orders are not expected from the kernel; if they occur the
    last patch in name order wins and a warning is logged.
    """
    owners: dict[FunctionKey, FunctionRecord] = {}
    if not abi.supports_stacking:
        return owners

    for name in state.list_patches(abi):
        stack_order = state.read_stack_order(abi, name)
        if stack_order is None:
            continue

        transitioning = state.in_transition(abi, name)
        for key in state.patch_functions(abi, name):
            current = owners.get(key)
            if current is not None:
                if current.stack_order > stack_order:
                    continue
                if current.stack_order == stack_order:
                    logger.warning(
                        "Equal stack order for patched function",
                        function=str(key),
                        modules=[current.module, name],
                        stack_order=stack_order,
                    )
            owners[key] = FunctionRecord(
                key=key,
                module=name,
                stack_order=stack_order,
                transitioning=transitioning,
            )

    return owners
