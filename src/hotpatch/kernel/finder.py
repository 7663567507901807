"""
Module Finder - Resolves a user-given name or path to a patch binary.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from hotpatch.errors import NotFound
from hotpatch.state.models import PatchModule, canonical_name

if TYPE_CHECKING:
    from hotpatch.adapters.base import BinaryInspector, ModuleTool
    from hotpatch.kernel.config import PatchConfig

logger = structlog.get_logger()

THIS_MODULE_SECTION = ".gnu.linkonce.this_module"
CHECKSUM_SECTION = ".kpatch.checksum"


class ModuleFinder:
    """
    Locates installed patch binaries and reads their embedded identity.
    """

    def __init__(
        self,
        config: PatchConfig,
        inspector: BinaryInspector,
        tool: ModuleTool,
    ) -> None:
        self.config = config
        self.inspector = inspector
        self.tool = tool

    def module_name(self, path: Path) -> str:
        """Canonical module name, from the binary's this_module section when present."""
        # Offset 0 of struct module is not the name field
        for offset, value in self.inspector.section_strings(path, THIS_MODULE_SECTION):
            if offset != 0 and value:
                return canonical_name(value)
        return canonical_name(path.name)

    def checksum(self, path: Path) -> str | None:
        for _, value in self.inspector.section_strings(path, CHECKSUM_SECTION):
            if value:
                return value.split()[0]
        return None

    def kernel_version(self, path: Path) -> str | None:
        """Release the binary was built for (first word of vermagic)."""
        vermagic = self.tool.modinfo(path, "vermagic")
        if not vermagic:
            return None
        return vermagic.split()[0]

    def describe(self, path: Path) -> PatchModule:
        return PatchModule(
            name=self.module_name(path),
            path=path,
            kernel_version=self.kernel_version(path),
            checksum=self.checksum(path),
        )

    def installed(self, release_dir: Path | None = None) -> list[Path]:
        """Installed binaries for a kernel release, sorted by file name."""
        release_dir = release_dir or self.config.release_dir
        if not release_dir.is_dir():
            return []
        return sorted(p for p in release_dir.glob("*.ko") if p.is_file())

    def find(self, arg: str) -> Path:
        """
        Resolve a module argument to a binary path.

        Tries the argument as a path, then relative to the installed directory
        for the running kernel, then by canonical name among installed binaries.
        """
        direct = Path(arg)
        if direct.is_file():
            return direct

        release_dir = self.config.release_dir
        for candidate in (release_dir / arg, release_dir / f"{arg}.ko"):
            if candidate.is_file():
                return candidate

        wanted = canonical_name(arg)
        for path in self.installed(release_dir):
            if self.module_name(path) == wanted:
                logger.debug("Resolved module by name", module=wanted, path=str(path))
                return path

        raise NotFound(f"can't find {arg}")
