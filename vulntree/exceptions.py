"""Exceptions raised while building and scanning dependency trees."""

from typing import List, Optional


class VulnTreeError(Exception):
    """Base class for vulntree errors."""
    pass


class CommandError(VulnTreeError):
    """Raised when a build tool exits with a non-zero code or cannot be started."""

    def __init__(self, command: List[str], cwd: str, returncode: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.cwd = cwd
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(f"'{' '.join(command)}' exited with code {returncode} in {cwd}")


class RemoteScanError(VulnTreeError):
    """Raised when the scan service cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ScanCancelledError(VulnTreeError):
    """Raised at a cancellation checkpoint once the user cancelled the scan."""
    pass


class ScanInProgressError(VulnTreeError):
    """Raised when a scan is requested while another one is still running."""
    pass
