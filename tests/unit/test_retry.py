"""Tests for RetryExecutor."""

import pytest

from hotpatch.errors import ToolFailure
from hotpatch.kernel.config import RetryConfig
from hotpatch.kernel.retry import RetryExecutor

BUSY = "insmod: ERROR: could not insert module foo.ko: Device or resource busy"


def scripted(outputs: list[str]):
    """Operation returning each scripted output in turn, then success."""
    calls = []

    def operation() -> str:
        calls.append(1)
        return outputs[len(calls) - 1] if len(calls) <= len(outputs) else ""

    operation.calls = calls
    return operation


class TestRetryExecutor:
    """Tests for RetryExecutor.run."""

    def test_success_first_try(self, clock) -> None:
        executor = RetryExecutor(RetryConfig(), clock)
        operation = scripted([])

        assert executor.run(operation, "load module foo") == 1
        assert clock.sleeps == []

    def test_retries_on_contention(self, clock) -> None:
        """Busy output is retried after the configured interval."""
        executor = RetryExecutor(RetryConfig(max_load_attempts=5, retry_interval=2.0), clock)
        operation = scripted([BUSY, BUSY])

        assert executor.run(operation, "load module foo") == 3
        assert clock.sleeps == [2.0, 2.0]

    def test_ceiling(self, clock) -> None:
        """Constant contention fails after exactly max attempts."""
        executor = RetryExecutor(RetryConfig(max_load_attempts=5, retry_interval=2.0), clock)
        operation = scripted([BUSY] * 10)

        with pytest.raises(ToolFailure, match="after 5 attempts"):
            executor.run(operation, "load module foo")

        assert len(operation.calls) == 5
        assert clock.sleeps == [2.0] * 4

    def test_other_errors_not_retried(self, clock) -> None:
        """Any other diagnostic fails immediately."""
        executor = RetryExecutor(RetryConfig(), clock)
        operation = scripted(["insmod: ERROR: could not insert module: Invalid module format"])

        with pytest.raises(ToolFailure, match="Invalid module format"):
            executor.run(operation, "load module foo")

        assert len(operation.calls) == 1
        assert clock.sleeps == []

    def test_contention_never_escapes(self, clock) -> None:
        """Exhausted contention surfaces as ToolFailure, not ContentionBusy."""
        executor = RetryExecutor(RetryConfig(max_load_attempts=1), clock)

        with pytest.raises(ToolFailure) as exc_info:
            executor.run(scripted([BUSY]), "disable module foo")

        assert type(exc_info.value) is ToolFailure
