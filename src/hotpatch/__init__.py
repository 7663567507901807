"""
hotpatch: Kernel live-patch lifecycle manager

Loads, enables, disables and removes live-patch modules on a running
kernel:
- Waits out gradual patch transitions, with a bounded escalation
- Re-enables resident patches only when their checksum matches
- Removes patches only once nothing holds a reference
- Reports which patch owns each patched function
"""

__version__ = "0.1.0"

from hotpatch.kernel.config import PatchConfig
from hotpatch.kernel.controller import PatchController

__all__ = [
    "PatchConfig",
    "PatchController",
]
