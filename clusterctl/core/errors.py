"""
Exception hierarchy for clusterctl.

Path: clusterctl/core/errors.py

Every failure raised by the execution layer and the planners derives from
ClusterctlError so the CLI can report it uniformly. Remote command
non-zero exits are NOT exceptions - they come back as ExecutionResult data.
"""

from typing import Dict, List, Optional


class ClusterctlError(Exception):
    """Base class for all clusterctl errors."""


class ConfigError(ClusterctlError):
    """Invalid or missing configuration."""


class OperationCancelled(ClusterctlError):
    """The surrounding operation was cancelled via its cancel event."""


class RetryError(ClusterctlError):
    """An operation exhausted its retry policy."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation}: failed after {attempts} attempts: {last_error}")


class SSHConfigError(ClusterctlError):
    """Permanent SSH configuration problem (missing credentials, bad key)."""


class SSHConnectError(ClusterctlError):
    """Dial or handshake with a host failed."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f"[{host}] {message}")


class CommandError(ClusterctlError):
    """A remote command finished unsuccessfully and the caller asked to check it."""

    def __init__(self, host: str, command: str, exit_status: Optional[int], stderr: str = "", error: Optional[str] = None):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        detail = error or f"exit status {exit_status}"
        message = f"[{host}] command failed ({detail}): {command}"
        if stderr.strip():
            message += f" (stderr: {stderr.strip()})"
        super().__init__(message)


class PoolCloseError(ClusterctlError):
    """One or more pooled connections failed to close."""

    def __init__(self, errors: Dict[str, Exception]):
        self.errors = errors
        parts: List[str] = [f"{host}: {err}" for host, err in errors.items()]
        super().__init__(f"errors closing connections: {'; '.join(parts)}")


class AddressDetectionError(ClusterctlError):
    """No usable address could be determined for a node."""


class KeepalivedError(ClusterctlError):
    """VRRP planning or deployment failed."""
