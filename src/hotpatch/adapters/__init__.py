"""
Adapters - External tool integrations.

Modules:
    base        - ModuleTool and BinaryInspector interfaces
    kmod        - insmod/rmmod/modprobe/modinfo adapter
    readelf     - Linker section string extraction
"""

from hotpatch.adapters.base import BinaryInspector, ModuleTool
from hotpatch.adapters.kmod import KmodTool
from hotpatch.adapters.readelf import ReadelfInspector

__all__ = [
    "BinaryInspector",
    "ModuleTool",
    "KmodTool",
    "ReadelfInspector",
]
