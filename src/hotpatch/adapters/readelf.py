"""
Readelf adapter - the only place that looks inside module binaries.
"""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path

from hotpatch.adapters.base import BinaryInspector
from hotpatch.errors import ToolFailure

# "  [    18]  kpatch_foo"
_STRING_LINE = re.compile(r"^\s*\[\s*([0-9a-fA-F]+)\]\s+(.*?)\s*$")


def parse_string_dump(output: str) -> list[tuple[int, str]]:
    """Parse `readelf -p` output into (offset, string) pairs."""
    strings = []
    for line in output.splitlines():
        match = _STRING_LINE.match(line)
        if match:
            strings.append((int(match.group(1), 16), match.group(2)))
    return strings


class ReadelfInspector(BinaryInspector):
    """Section string dumps via binutils readelf."""

    def section_strings(self, path: Path, section: str) -> list[tuple[int, str]]:
        try:
            result = subprocess.run(
                ["readelf", "-p", section, str(path)],
                capture_output=True,
                text=True,
                env={**os.environ, "LC_ALL": "C"},
            )
        except FileNotFoundError as e:
            raise ToolFailure(f"readelf not found: {e}") from e

        if result.returncode != 0:
            raise ToolFailure(f"readelf failed on {path}: {result.stderr.strip()}")

        return parse_string_dump(result.stdout)
