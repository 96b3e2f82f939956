"""
SSH data models.

Dataclasses describing per-host credentials and command results.
"""

import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from clusterctl.core.errors import CommandError, OperationCancelled, SSHConfigError

DEFAULT_SSH_PORT = 22


@dataclass
class HostAuthConfig:
    """
    SSH credentials for one host.

    Exactly one authentication source is allowed: password, in-memory key
    material, or a key file path. key_passphrase only applies to keys.
    """

    username: str
    password: Optional[str] = None
    key_content: Optional[str] = None  # PEM string, in-memory only
    key_file: Optional[str] = None
    key_passphrase: Optional[str] = None
    port: int = DEFAULT_SSH_PORT

    def __post_init__(self):
        if not self.username:
            raise ValueError("Username is required")

        sources = [s for s in (self.password, self.key_content, self.key_file) if s]
        if len(sources) != 1:
            raise ValueError(
                "Authentication required: provide exactly one of password, "
                "key_content or key_file"
            )

        if self.key_passphrase and not (self.key_content or self.key_file):
            raise ValueError("key_passphrase given without a private key")

        if not self.port:
            self.port = DEFAULT_SSH_PORT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostAuthConfig":
        """Build from a config mapping (YAML/JSON node entry)."""
        return cls(
            username=data.get("username", "root"),
            password=data.get("password") or None,
            key_content=data.get("private_key") or None,
            key_file=data.get("private_key_path") or None,
            key_passphrase=data.get("private_key_password") or None,
            port=int(data.get("port") or DEFAULT_SSH_PORT),
        )


class SSHErrorCategory(Enum):
    """Categorized SSH error types for better diagnostics."""
    SUCCESS = "success"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_TIMEOUT = "connection_timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    DNS_FAILURE = "dns_failure"
    AUTH_FAILURE = "auth_failure"
    HANDSHAKE_FAILURE = "handshake_failure"
    CONNECTION_RESET = "connection_reset"
    BROKEN_PIPE = "broken_pipe"
    KEY_ERROR = "key_error"
    CONFIG_ERROR = "config_error"
    COMMAND_FAILED = "command_failed"
    CHANNEL_ERROR = "channel_error"
    PROTOCOL_ERROR = "protocol_error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset({
    SSHErrorCategory.CONNECTION_REFUSED,
    SSHErrorCategory.CONNECTION_TIMEOUT,
    SSHErrorCategory.NETWORK_UNREACHABLE,
    SSHErrorCategory.AUTH_FAILURE,
    SSHErrorCategory.HANDSHAKE_FAILURE,
    SSHErrorCategory.CONNECTION_RESET,
    SSHErrorCategory.BROKEN_PIPE,
})

PERMANENT_CATEGORIES = frozenset({
    SSHErrorCategory.KEY_ERROR,
    SSHErrorCategory.CONFIG_ERROR,
})


def categorize_ssh_error(exception: BaseException) -> SSHErrorCategory:
    """
    Categorize an SSH exception for better error reporting.

    Args:
        exception: The caught exception.

    Returns:
        SSHErrorCategory indicating the type of failure.
    """
    error_msg = str(exception).lower()
    error_type = type(exception).__name__.lower()

    if isinstance(exception, OperationCancelled):
        return SSHErrorCategory.CANCELLED

    if isinstance(exception, SSHConfigError):
        return SSHErrorCategory.CONFIG_ERROR

    if isinstance(exception, ConnectionRefusedError) or "connection refused" in error_msg or "errno 111" in error_msg:
        return SSHErrorCategory.CONNECTION_REFUSED

    if isinstance(exception, (socket.timeout, TimeoutError)) or "timed out" in error_msg or "timeout" in error_type:
        return SSHErrorCategory.CONNECTION_TIMEOUT

    if "temporary failure" in error_msg or "network is unreachable" in error_msg or "no route to host" in error_msg:
        return SSHErrorCategory.NETWORK_UNREACHABLE

    if isinstance(exception, socket.gaierror) or "name or service not known" in error_msg or "getaddrinfo" in error_msg:
        return SSHErrorCategory.DNS_FAILURE

    if isinstance(exception, ConnectionResetError) or "connection reset" in error_msg:
        return SSHErrorCategory.CONNECTION_RESET

    if isinstance(exception, BrokenPipeError) or "broken pipe" in error_msg:
        return SSHErrorCategory.BROKEN_PIPE

    # Key not installed yet looks exactly like bad credentials
    if "authenticationexception" in error_type or any(
        x in error_msg for x in ["authentication failed", "unable to authenticate", "permission denied", "no supported authentication"]
    ):
        return SSHErrorCategory.AUTH_FAILURE

    if any(x in error_msg for x in ["handshake", "error reading ssh protocol banner"]):
        return SSHErrorCategory.HANDSHAKE_FAILURE

    if "private key" in error_msg or "passwordrequired" in error_type:
        return SSHErrorCategory.KEY_ERROR

    if "channel" in error_msg or "eof" in error_msg:
        return SSHErrorCategory.CHANNEL_ERROR

    if "ssh" in error_type or "paramiko" in error_type:
        return SSHErrorCategory.PROTOCOL_ERROR

    return SSHErrorCategory.UNKNOWN


def is_retryable_error(exception: BaseException) -> bool:
    """Transient network or handshake failure worth another dial attempt."""
    return categorize_ssh_error(exception) in RETRYABLE_CATEGORIES


@dataclass
class ExecutionResult:
    """Result of one command on one host."""
    host: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0
    error_category: SSHErrorCategory = SSHErrorCategory.SUCCESS

    @property
    def success(self) -> bool:
        return self.error is None and self.exit_status == 0

    def check(self) -> "ExecutionResult":
        """Raise CommandError unless the command succeeded."""
        if not self.success:
            raise CommandError(self.host, self.command, self.exit_status, self.stderr, self.error)
        return self

    def __repr__(self) -> str:
        if self.success:
            return f"ExecutionResult(host={self.host}, success=True, duration={self.duration_ms:.0f}ms)"
        return (
            f"ExecutionResult(host={self.host}, success=False, exit={self.exit_status}, "
            f"category={self.error_category.value}, error={self.error!r})"
        )
