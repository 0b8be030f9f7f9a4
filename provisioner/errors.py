from __future__ import annotations

from typing import Optional, Sequence


class ProvisionError(RuntimeError):
    """Base class for every failure the provisioning pipeline reports."""

    retryable = False


class ConfigurationError(ProvisionError):
    """Raised when a required credential, argument or setting is missing or invalid."""


class LocalIOError(ProvisionError):
    """Raised when the filesystem or process spawning fails."""


class RemoteAPIError(ProvisionError):
    """Raised when the source-host API rejects or fails a request."""

    RETRYABLE_KINDS = frozenset({"rate_limit", "server", "network"})

    def __init__(self, message: str, *, kind: str = "invalid", status_code: Optional[int] = None) -> None:
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind in self.RETRYABLE_KINDS


class ExternalProcessError(ProvisionError):
    """Raised when an invoked CLI exits with a non-zero status code."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
        *,
        retryable: bool = False,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.retryable = retryable
        super().__init__(
            f"Command {' '.join(command)} failed with exit code {returncode}\nSTDOUT:{stdout}\nSTDERR:{stderr}"
        )
