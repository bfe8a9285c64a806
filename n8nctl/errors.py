"""Exception hierarchy shared by every n8nctl module."""

from typing import List, Optional


# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class ToolkitError(Exception):
    """Base exception for n8nctl errors."""

    pass


class ConfigurationError(ToolkitError):
    """Raised when configuration values are missing or invalid."""

    pass


class CommandError(ToolkitError):
    """Raised when an external command fails, times out or is missing."""

    def __init__(
        self,
        cmd: List[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: Optional[str] = None,
    ) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr or ""
        if message is None:
            message = f"Command failed ({returncode}): {' '.join(self.cmd)}"
            if self.stderr.strip():
                message += f": {self.stderr.strip()}"
        super().__init__(message)


class HealthCheckError(ToolkitError):
    """Raised when n8n does not answer with an accepted HTTP status."""

    pass


class SupervisorError(ToolkitError):
    """Raised when a process supervisor cannot start or stop n8n."""

    pass


class RecoveryError(ToolkitError):
    """Raised when no supervisor could bring n8n back up."""

    pass


class BackupError(ToolkitError):
    """Raised when a backup archive cannot be produced."""

    pass


class RestoreError(ToolkitError):
    """Raised when a backup archive cannot be restored."""

    pass


class CronError(ToolkitError):
    """Raised for unreadable crontabs and invalid schedules."""

    pass
