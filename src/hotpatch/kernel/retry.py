"""
Retry Executor - Bounded retry for operations racing the activeness check.

Module insertion and enabled-flag writes can be refused while a patched
function is running somewhere. The kernel reports that as "Device or
resource busy", which is worth retrying; every other diagnostic is fatal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

import structlog

from hotpatch.errors import ContentionBusy, ToolFailure

if TYPE_CHECKING:
    from hotpatch.kernel.clock import Clock
    from hotpatch.kernel.config import RetryConfig

logger = structlog.get_logger()


class RetryExecutor:
    """Runs an operation that returns diagnostic text, retrying on contention."""

    def __init__(self, config: RetryConfig, clock: Clock) -> None:
        self.max_attempts = max(1, config.max_load_attempts)
        self.interval = config.retry_interval
        self.busy_marker = config.busy_marker
        self.clock = clock

    def _check(self, output: str, description: str) -> None:
        if not output:
            return
        if self.busy_marker in output:
            raise ContentionBusy(output)
        raise ToolFailure(f"failed to {description}: {output}")

    def run(self, operation: Callable[[], str], description: str) -> int:
        """
        Execute until the operation reports no diagnostics.

        Returns:
            The number of attempts used
        """
        attempt = 0
        while True:
            attempt += 1
            output = operation().strip()
            try:
                self._check(output, description)
                return attempt
            except ContentionBusy:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Giving up after contention",
                        operation=description,
                        attempts=attempt,
                    )
                    raise ToolFailure(
                        f"failed to {description}: {output} (after {attempt} attempts)"
                    ) from None

                logger.warning(
                    "Activeness safety check failed, retrying",
                    operation=description,
                    attempt=attempt,
                    delay=self.interval,
                )
                self.clock.sleep(self.interval)
