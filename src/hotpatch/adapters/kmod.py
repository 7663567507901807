"""
Kmod adapter - insmod/rmmod/modprobe/modinfo via subprocess.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import structlog

from hotpatch.adapters.base import ModuleTool
from hotpatch.errors import ToolFailure

logger = structlog.get_logger()


class KmodTool(ModuleTool):
    """Module operations backed by the kmod command line tools."""

    name = "kmod"

    def __init__(self, env: dict[str, str] | None = None) -> None:
        # Diagnostics are matched as text, so keep them untranslated
        self.env = {**os.environ, "LC_ALL": "C", **(env or {})}

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        logger.debug("Running module tool", cmd=cmd)
        try:
            return subprocess.run(cmd, capture_output=True, text=True, env=self.env)
        except FileNotFoundError as e:
            raise ToolFailure(f"{cmd[0]} not found: {e}") from e

    def insert(self, path: Path) -> str:
        result = self._run(["insmod", str(path)])
        output = (result.stdout + result.stderr).strip()
        if result.returncode != 0 and not output:
            output = f"insmod exited with status {result.returncode}"
        return output

    def remove(self, name: str) -> bool:
        result = self._run(["rmmod", name])
        if result.returncode != 0:
            logger.debug("rmmod refused", module=name, error=result.stderr.strip())
        return result.returncode == 0

    def probe(self, name: str) -> bool:
        return self._run(["modprobe", "-q", name]).returncode == 0

    def modinfo(self, path: Path, field: str | None = None) -> str | None:
        cmd = ["modinfo"]
        if field:
            cmd += ["-F", field]
        cmd.append(str(path))

        result = self._run(cmd)
        if result.returncode != 0:
            return None
        return result.stdout.strip()
