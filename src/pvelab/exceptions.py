"""Exception hierarchy for pvelab.

Everything raised on purpose derives from ``PvelabError`` so the CLI can
report a failing step without catching unrelated bugs.
"""

from typing import Optional


class PvelabError(Exception):
    """Base class for all pvelab errors."""


class ConfigurationError(PvelabError, ValueError):
    """Missing or invalid configuration."""


class NotFound(PvelabError):
    """The identifier has no backing VM on the host."""

    def __init__(self, vmid: int) -> None:
        super().__init__(f"VM {vmid} does not exist")
        self.vmid = vmid


class HostCallFailure(PvelabError):
    """A host management call failed for a reason other than not-found."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message


class RemoteUnreachable(PvelabError):
    """The remote shell could not connect, or the session dropped."""


class ReadinessTimeout(PvelabError):
    """A readiness wait the caller treats as fatal ran out of time."""

    def __init__(self, what: str, vmid: int, timeout: float) -> None:
        super().__init__(f"VM {vmid}: no {what} readiness after {timeout:.0f}s")
        self.step = f"await {what}"
        self.what = what
        self.vmid = vmid
        self.timeout = timeout


class ImageDownloadError(PvelabError):
    """The cloud image could not be fetched."""


class LockHeldError(PvelabError):
    """Another live process holds the run lock."""

    def __init__(self, lock_file: str, pid: Optional[int]) -> None:
        super().__init__(f"Lock {lock_file} already held by process {pid}")
        self.lock_file = lock_file
        self.pid = pid
