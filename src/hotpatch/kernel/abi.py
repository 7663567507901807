"""
ABI Resolver - Determines which kernel state-exposure contract is active.

The answer changes the moment a patch core is activated, so callers resolve
again right after activation instead of holding on to an old result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from hotpatch.state.models import AbiKind, KernelABI

if TYPE_CHECKING:
    from hotpatch.kernel.config import PathsConfig

logger = structlog.get_logger()

CORE_SYMBOLS = ("klp_enable_patch", "kpatch_register")


def resolve_abi(paths: PathsConfig) -> KernelABI:
    """Return the first existing state root: livepatch, kpatch/patches, kpatch."""
    candidates = [
        KernelABI(AbiKind.NATIVE_LIVEPATCH, paths.livepatch_root),
        KernelABI(AbiKind.LEGACY_PATCHES, paths.kpatch_root / "patches"),
        KernelABI(AbiKind.LEGACY_CORE, paths.kpatch_root),
    ]
    for abi in candidates:
        if abi.root.exists():
            logger.debug("Resolved kernel ABI", abi=abi.kind.value, root=str(abi.root))
            return abi

    # No core active yet; nothing can be resident, so any root reads as empty
    return candidates[-1]


def core_loaded(paths: PathsConfig) -> bool:
    """Whether a patch core exports its registration entry point in kallsyms."""
    try:
        with open(paths.kallsyms) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 3 and parts[1] == "T" and parts[2] in CORE_SYMBOLS:
                    return True
    except OSError as e:
        logger.warning("Cannot read kallsyms", path=str(paths.kallsyms), error=str(e))
    return False
