"""
Base adapter interfaces for external module tooling.

The lifecycle controller never shells out directly. Module insertion and
removal go through a ModuleTool, and everything read out of a patch binary
goes through a BinaryInspector.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class ModuleTool(ABC):
    """
    Kernel module operations.

    All adapters must implement:
    - insert: Insert a module binary
    - remove: Remove a resident module by name
    - probe: Activate a module through the system-wide module path
    - modinfo: Read module version metadata
    """

    name: str

    @abstractmethod
    def insert(self, path: Path) -> str:
        """
        Insert a module binary.

        Returns:
            Diagnostic output; empty on success
        """
        ...

    @abstractmethod
    def remove(self, name: str) -> bool:
        """
        Remove a resident module.

        Returns:
            True if the kernel accepted the removal
        """
        ...

    @abstractmethod
    def probe(self, name: str) -> bool:
        """
        Load a module through the system-wide mechanism (modprobe).

        Returns:
            True if the module is now loaded
        """
        ...

    @abstractmethod
    def modinfo(self, path: Path, field: str | None = None) -> str | None:
        """
        Read module metadata.

        Args:
            path: Module binary
            field: Single field to return, or None for the full listing

        Returns:
            The field value or listing, or None if unreadable
        """
        ...


class BinaryInspector(ABC):
    """Extracts named embedded strings from a compiled module binary."""

    @abstractmethod
    def section_strings(self, path: Path, section: str) -> list[tuple[int, str]]:
        """
        Dump the strings stored in a linker section.

        Returns:
            (offset, string) pairs in section order; empty if the section is missing
        """
        ...
