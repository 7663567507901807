"""
Kernel - Patch lifecycle components.

Modules:
    abi         - Active state-exposure contract
    finder      - Module name/path resolution
    retry       - Contention retry/backoff
    refcount    - Bounded refcount wait before removal
    transition  - Transition polling/escalation state machine
    controller  - Load/unload orchestration
    ownership   - Per-function owning patch
    status      - Listing and info display
"""

from hotpatch.kernel.controller import PatchController
from hotpatch.kernel.transition import TransitionMonitor

__all__ = ["PatchController", "TransitionMonitor"]
