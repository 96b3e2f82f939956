"""
SSH connection - one authenticated session to one host.

Path: clusterctl/ssh/client.py

Dials the host with a plain TCP socket, then performs the SSH handshake
over it with paramiko. Both steps run inside the retry engine using the
ssh policy: transient network and handshake failures (refused, timeout,
unreachable, authentication not yet accepted because a key is still being
installed, reset, broken pipe) are retried, everything else fails fast.

Commands run on their own thread while the caller waits on completion or
cancellation, whichever comes first. On cancellation the remote process
is sent SIGKILL and OperationCancelled is raised - no partial output.
"""

import logging
import os
import socket
import threading
import time
from io import StringIO
from typing import Callable, Dict, Optional, Tuple

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST

from clusterctl.core.cancel import raise_if_cancelled
from clusterctl.core.errors import OperationCancelled, RetryError, SSHConfigError, SSHConnectError
from clusterctl.core.retry import RetryPolicy, retry_call
from clusterctl.ssh.models import (
    ExecutionResult,
    HostAuthConfig,
    SSHErrorCategory,
    categorize_ssh_error,
    is_retryable_error,
)

# Module logger - configure at application level
logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
POLL_INTERVAL = 0.05
READ_CHUNK = 32768


def split_host_port(host: str, default_port: int) -> Tuple[str, int]:
    """Split 'host:port' into its parts; bare hosts get default_port."""
    if host.count(":") == 1:
        name, _, port = host.partition(":")
        if port.isdigit():
            return name, int(port)
    return host, default_port


def load_private_key(auth: HostAuthConfig) -> Optional[paramiko.PKey]:
    """
    Load and parse a private key from key_content OR key_file.

    Tries Ed25519, RSA and ECDSA in turn, with the optional passphrase.

    Raises:
        SSHConfigError: Key file missing, encrypted without passphrase,
            or not a supported key type. Never retried.
    """
    if auth.key_content:
        def open_source():
            return StringIO(auth.key_content)
        source_desc = "key_content"
    elif auth.key_file:
        def open_source():
            return open(os.path.expanduser(auth.key_file))
        source_desc = auth.key_file
    else:
        return None

    key_types = [
        ("Ed25519", paramiko.Ed25519Key),
        ("RSA", paramiko.RSAKey),
        ("ECDSA", paramiko.ECDSAKey),
    ]

    last_exception: Optional[Exception] = None

    for key_name, key_class in key_types:
        try:
            with open_source() as key_io:
                return key_class.from_private_key(key_io, password=auth.key_passphrase)

        except FileNotFoundError:
            raise SSHConfigError(f"Key file not found: {source_desc}")

        except paramiko.PasswordRequiredException:
            raise SSHConfigError(f"Private key {source_desc} requires a passphrase")

        except (paramiko.SSHException, ValueError) as e:
            # Key might be a different type, keep trying
            last_exception = e
            logger.debug(f"{source_desc}: not a {key_name} key: {e}")
            continue

    raise SSHConfigError(
        f"Could not load private key from {source_desc}. "
        f"Make sure it's a valid Ed25519, RSA or ECDSA key. "
        f"Last error: {last_exception}"
    )


def send_kill_signal(channel: paramiko.Channel) -> None:
    """
    Ask the server to SIGKILL the process behind `channel`.

    paramiko has no public call for the RFC 4254 "signal" channel request,
    so the message is built by hand.
    """
    transport = channel.get_transport()
    if transport is None or not transport.is_active():
        return
    m = paramiko.Message()
    m.add_byte(cMSG_CHANNEL_REQUEST)
    m.add_int(channel.remote_chanid)
    m.add_string("signal")
    m.add_boolean(False)
    m.add_string("KILL")
    transport._send_user_message(m)


class SSHConnection:
    """
    One authenticated SSH session.

    Usage:
        conn = SSHConnection("10.0.0.5", HostAuthConfig("root", key_file="~/.ssh/id_ed25519"))
        conn.connect()
        result = conn.run("hostname -I")
        conn.close()
    """

    def __init__(
        self,
        host: str,
        auth: HostAuthConfig,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        log: Optional[logging.Logger] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
    ):
        if not host:
            raise ValueError("Host is required")

        self.host = host
        self.auth = auth
        self.connect_timeout = connect_timeout
        self.log = log or logger
        self._client_factory = client_factory
        self._socket_factory = socket_factory
        self._client: Optional[paramiko.SSHClient] = None
        self._hostname, self._port = split_host_port(host, auth.port)

    @property
    def address(self) -> str:
        return f"{self._hostname}:{self._port}"

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self, cancel: Optional[threading.Event] = None) -> "SSHConnection":
        """
        Dial and authenticate, retrying transient failures.

        Raises:
            SSHConfigError: Unusable credentials (never retried).
            SSHConnectError: Dial/handshake failed permanently or retries ran out.
            OperationCancelled: cancel was set before a connection was made.
        """
        pkey = load_private_key(self.auth)
        policy = RetryPolicy.ssh(f"ssh-connect-{self.host}")

        try:
            self._client = retry_call(
                policy,
                lambda: self._dial_once(pkey, cancel),
                cancel=cancel,
                retry_on=is_retryable_error,
                log=self.log,
            )
        except (OperationCancelled, SSHConfigError):
            raise
        except RetryError as e:
            raise SSHConnectError(self.host, str(e)) from e
        except Exception as e:
            raise SSHConnectError(
                self.host,
                f"failed to establish ssh connection to {self.address} (non-retryable, "
                f"{categorize_ssh_error(e).value}): {e}",
            ) from e

        return self

    def _dial_once(self, pkey: Optional[paramiko.PKey], cancel: Optional[threading.Event]) -> paramiko.SSHClient:
        raise_if_cancelled(cancel, f"ssh-connect-{self.host}")

        sock = self._socket_factory((self._hostname, self._port), timeout=self.connect_timeout)

        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                hostname=self._hostname,
                port=self._port,
                username=self.auth.username,
                password=self.auth.password,
                pkey=pkey,
                sock=sock,
                timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            sock.close()
            raise

        return client

    def run(
        self,
        command: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        input_data: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute one command and capture stdout/stderr as text.

        A non-zero exit is returned as data (exit_status), not raised.

        Raises:
            OperationCancelled: cancel was set before the command finished.
        """
        if self._client is None:
            raise SSHConnectError(self.host, "not connected")

        raise_if_cancelled(cancel, f"[{self.host}] {command}")
        start_time = time.time()

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise SSHConnectError(self.host, "transport is not active")

        channel = transport.open_session()
        channel.exec_command(command)

        if input_data is not None:
            channel.sendall(input_data.encode())
            channel.shutdown_write()

        outcome: Dict[str, object] = {}
        done = threading.Event()

        worker = threading.Thread(
            target=self._collect,
            args=(channel, outcome, done),
            name=f"ssh-run-{self.host}",
            daemon=True,
        )
        worker.start()

        deadline = time.time() + timeout if timeout else None

        try:
            while not done.wait(POLL_INTERVAL):
                if cancel is not None and cancel.is_set():
                    self._kill(channel)
                    raise OperationCancelled(f"[{self.host}] command cancelled: {command}")
                if deadline is not None and time.time() > deadline:
                    self._kill(channel)
                    return ExecutionResult(
                        host=self.host,
                        command=command,
                        error=f"command timed out after {timeout}s",
                        duration_ms=(time.time() - start_time) * 1000,
                        error_category=SSHErrorCategory.CONNECTION_TIMEOUT,
                    )
        finally:
            if done.is_set():
                channel.close()

        duration_ms = (time.time() - start_time) * 1000

        if "error" in outcome:
            exc = outcome["error"]
            return ExecutionResult(
                host=self.host,
                command=command,
                error=str(exc),
                duration_ms=duration_ms,
                error_category=categorize_ssh_error(exc),
            )

        exit_status = outcome["exit_status"]
        return ExecutionResult(
            host=self.host,
            command=command,
            stdout=outcome["stdout"],
            stderr=outcome["stderr"],
            exit_status=exit_status,
            duration_ms=duration_ms,
            error_category=SSHErrorCategory.SUCCESS if exit_status == 0 else SSHErrorCategory.COMMAND_FAILED,
        )

    @staticmethod
    def _collect(channel: paramiko.Channel, outcome: Dict[str, object], done: threading.Event) -> None:
        """Drain stdout/stderr until the remote process exits (runs on a worker thread)."""
        out_chunks = []
        err_chunks = []
        try:
            while True:
                if channel.recv_ready():
                    out_chunks.append(channel.recv(READ_CHUNK))
                elif channel.recv_stderr_ready():
                    err_chunks.append(channel.recv_stderr(READ_CHUNK))
                elif channel.exit_status_ready():
                    break
                else:
                    time.sleep(0.01)

            # Exit status can arrive ahead of the last data packets
            out_chunks.append(channel.makefile("rb", -1).read())
            err_chunks.append(channel.makefile_stderr("rb", -1).read())

            outcome["exit_status"] = channel.recv_exit_status()
            outcome["stdout"] = b"".join(out_chunks).decode("utf-8", errors="replace")
            outcome["stderr"] = b"".join(err_chunks).decode("utf-8", errors="replace")
        except Exception as e:
            outcome["error"] = e
        finally:
            done.set()

    def _kill(self, channel: paramiko.Channel) -> None:
        try:
            send_kill_signal(channel)
        except Exception as e:
            self.log.warning(f"[{self.host}] failed to send SIGKILL: {e}")
        finally:
            channel.close()

    def close(self) -> None:
        """Close the SSH connection."""
        if self._client is not None:
            client, self._client = self._client, None
            client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"SSHConnection(host={self.host}, connected={self.connected})"
