"""
Errors raised by the patch lifecycle.

Everything derives from HotpatchError so the CLI can turn any failure into
a message and a nonzero exit status.
"""

from __future__ import annotations


class HotpatchError(RuntimeError):
    """Base class for lifecycle failures."""


class NotFound(HotpatchError):
    """A module name or binary could not be resolved."""


class ChecksumMismatch(HotpatchError):
    """Resident module code differs from the requested binary."""

    def __init__(self, module: str, resident: str | None, requested: str | None) -> None:
        super().__init__(
            f"cannot re-enable patch module {module}, cannot verify checksum match"
        )
        self.module = module
        self.resident = resident
        self.requested = requested


class ContentionBusy(HotpatchError):
    """The kernel's activeness safety check refused the operation. Retryable."""


class TransitionStalled(HotpatchError):
    """A patch transition did not complete after remediation."""

    def __init__(self, module: str, message: str, stalled: list | None = None) -> None:
        super().__init__(message)
        self.module = module
        self.stalled = stalled or []


class RefcountTimeout(HotpatchError):
    """A module kept a nonzero reference count past the wait window."""

    def __init__(self, module: str, refcount: int | None) -> None:
        super().__init__(f"failed to unload module {module} (refcnt)")
        self.module = module
        self.refcount = refcount


class UnsupportedRemediation(HotpatchError):
    """The active ABI has no signal control. Reported as a warning only."""


class ToolFailure(HotpatchError):
    """An external operation failed in a non-retryable way."""


class VersionMismatch(HotpatchError):
    """A patch binary was built for a different kernel release."""
