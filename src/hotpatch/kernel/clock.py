"""
Clock - Time source for every bounded wait.

Polling loops take a Clock so tests can advance time without sleeping.
"""

from __future__ import annotations

import time


class Clock:
    """Wall-clock implementation backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
