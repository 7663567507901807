"""
State - Data models and kernel-exposed state access.
"""

from hotpatch.state.models import KernelABI, PatchModule, TransitionResult
from hotpatch.state.sysfs import KernelState

__all__ = ["KernelABI", "KernelState", "PatchModule", "TransitionResult"]
