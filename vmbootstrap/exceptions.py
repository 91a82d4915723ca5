"""Custom exceptions for vmware-vm-bootstrap."""

from __future__ import annotations

from typing import List, Optional


class BootstrapError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigInvalidError(BootstrapError):
    """VM configuration failed validation; nothing was created."""


class AlreadyExistsError(BootstrapError):
    pass


class HypervisorUnreachableError(BootstrapError):
    pass


class HypervisorError(BootstrapError):
    """A vCenter task or lookup failed."""

    def __init__(self, message: str, fault: object = None):
        super().__init__(message)
        self.fault = fault


class UnsupportedVersionError(BootstrapError):
    pass


class ChecksumMismatchError(BootstrapError):
    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class DownloadFailedError(BootstrapError):
    pass


class ExtractFailedError(BootstrapError):
    pass


class NoBootConfigError(BootstrapError):
    pass


class RepackFailedError(BootstrapError):
    pass


class UploadFailedError(BootstrapError):
    pass


class MountFailedError(BootstrapError):
    pass


class InstallTimeoutError(BootstrapError):
    pass


class CancelledError(BootstrapError):
    """The operation was interrupted through its cancellation event."""


class SSHUnreachableError(BootstrapError):
    pass


class PowerOnAfterCleanupError(BootstrapError):
    """The VM could not be powered back on after post-install cleanup."""


class CommandError(BootstrapError):
    """An external command exited non-zero or terminated abnormally."""

    def __init__(self, cmd: List[str], returncode: Optional[int], output: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        detail = output.strip()
        message = f"{cmd[0]} failed (exit status {returncode})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
