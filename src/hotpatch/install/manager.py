"""
InstallManager - Copies patch binaries into the version-keyed install directory.

Layout: <install_dir>/<kernel release>/<module>.ko
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from hotpatch.errors import NotFound, VersionMismatch
from hotpatch.state.models import PatchModule, canonical_name

if TYPE_CHECKING:
    from hotpatch.kernel.config import PatchConfig
    from hotpatch.kernel.finder import ModuleFinder

logger = structlog.get_logger()


class InstallManager:
    """
    Manages installed patch binaries per kernel release.
    """

    def __init__(self, config: PatchConfig, finder: ModuleFinder) -> None:
        self.config = config
        self.finder = finder

    def install(self, path: Path, kernel_version: str | None = None) -> Path:
        """
        Install a patch binary for a kernel release.

        Returns the installed path.
        """
        release = kernel_version or self.config.kernel_release
        if not path.is_file():
            raise NotFound(f"{path} doesn't exist")

        module = self.finder.describe(path)
        if module.kernel_version != release:
            raise VersionMismatch(
                f"invalid module version {module.kernel_version} for kernel {release}"
            )

        target_dir = self.config.install_dir / release
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / path.name
        shutil.copy(path, target)

        logger.info(
            "Installed patch module", module=module.name, path=str(target), release=release
        )
        return target

    def uninstall(self, arg: str, kernel_version: str | None = None) -> Path:
        """Remove an installed binary by file name or module name."""
        release = kernel_version or self.config.kernel_release
        release_dir = self.config.install_dir / release

        target = None
        for candidate in (release_dir / arg, release_dir / f"{arg}.ko"):
            if candidate.is_file():
                target = candidate
                break

        if target is None:
            wanted = canonical_name(arg)
            for candidate in self.finder.installed(release_dir):
                if self.finder.module_name(candidate) == wanted:
                    target = candidate
                    break

        if target is None:
            raise NotFound(f"{arg} is not installed for kernel {release}")

        target.unlink()
        logger.info("Uninstalled patch module", path=str(target), release=release)
        return target

    def installed(self) -> list[tuple[str, PatchModule]]:
        """(release, module) for every installed binary across all releases."""
        if not self.config.install_dir.is_dir():
            return []

        result = []
        for release_dir in sorted(p for p in self.config.install_dir.iterdir() if p.is_dir()):
            for path in self.finder.installed(release_dir):
                module = PatchModule(
                    name=self.finder.module_name(path),
                    path=path,
                    kernel_version=release_dir.name,
                )
                result.append((release_dir.name, module))
        return result
