"""
SSH Executor Pool - pooled, concurrent remote command execution.

Path: clusterctl/ssh/executor.py

Keeps at most one live SSHConnection per host. Connections are dialed
lazily on first use and live until close() or remove(). Fan-out runs one
task per host on a ThreadPoolExecutor and joins on all of them; a failing
host never blocks or aborts the others.

Usage:
    pool = SSHExecutorPool({
        "10.0.0.11": HostAuthConfig("root", key_file="~/.ssh/id_ed25519"),
        "10.0.0.12": HostAuthConfig("root", password="secret"),
    })

    results = pool.run_all(["10.0.0.11", "10.0.0.12"], "docker info --format '{{.Swarm.LocalNodeState}}'")
    for host, r in results.items():
        if not r.success:
            print(f"{host}: {r.error_category.value} - {r.error or r.stderr}")

    pool.close()
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from clusterctl.core.cancel import raise_if_cancelled
from clusterctl.core.errors import CommandError, OperationCancelled, PoolCloseError, RetryError, SSHConfigError
from clusterctl.core.retry import RetryPolicy, retry_call
from clusterctl.ssh.client import DEFAULT_CONNECT_TIMEOUT, SSHConnection
from clusterctl.ssh.models import (
    PERMANENT_CATEGORIES,
    ExecutionResult,
    HostAuthConfig,
    SSHErrorCategory,
    categorize_ssh_error,
)

# Module logger - configure at application level
logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the pool needs from a live session."""

    def run(self, command: str, cancel: Optional[threading.Event] = None,
            timeout: Optional[float] = None, input_data: Optional[str] = None) -> ExecutionResult: ...

    def close(self) -> None: ...


class CommandRunner(Protocol):
    """
    Capability consumed by the address resolver and VRRP planner:
    run a command string on a host and get an ExecutionResult back.
    SSHExecutorPool and LocalExecutor both satisfy it.
    """

    def run(self, host: str, command: str, cancel: Optional[threading.Event] = None,
            timeout: Optional[float] = None, input_data: Optional[str] = None) -> ExecutionResult: ...


ConnectionFactory = Callable[[str, HostAuthConfig, Optional[threading.Event]], Connection]


class SSHExecutorPool:
    """
    Pool of SSH connections with per-host credentials.

    Concurrent acquire() calls for the same host produce exactly one
    connection; acquiring different hosts never serializes on each other's
    dial, because each host has its own creation lock.
    """

    def __init__(
        self,
        auth_configs: Mapping[str, HostAuthConfig],
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_workers: int = 32,
        log: Optional[logging.Logger] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        """
        Initialize executor pool.

        Args:
            auth_configs: Host -> credentials. Hosts without an entry cannot be acquired.
            connect_timeout: Per-dial TCP/handshake timeout in seconds.
            max_workers: Upper bound on concurrent per-host tasks in run_all.
            log: Logger (defaults to module logger).
            connection_factory: factory(host, auth, cancel) returning a
                connected session. Defaults to SSHConnection(...).connect().
        """
        self.auth_configs: Dict[str, HostAuthConfig] = dict(auth_configs)
        self.connect_timeout = connect_timeout
        self.max_workers = max_workers
        self.log = log or logger
        self._connection_factory = connection_factory or self._default_factory

        self._connections: Dict[str, Connection] = {}
        self._host_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _default_factory(self, host: str, auth: HostAuthConfig, cancel: Optional[threading.Event]) -> Connection:
        return SSHConnection(host, auth, connect_timeout=self.connect_timeout, log=self.log).connect(cancel)

    def add_host(self, host: str, auth: HostAuthConfig) -> None:
        """Register (or replace) credentials for a host."""
        with self._lock:
            self.auth_configs[host] = auth

    @property
    def hosts(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def _host_lock(self, host: str) -> threading.Lock:
        with self._lock:
            lock = self._host_locks.get(host)
            if lock is None:
                lock = self._host_locks[host] = threading.Lock()
            return lock

    def acquire(self, host: str, cancel: Optional[threading.Event] = None) -> Connection:
        """
        Return the connection for `host`, dialing it if needed.

        Raises:
            SSHConfigError: No credentials registered for host.
            SSHConnectError: Dial/handshake failed.
            OperationCancelled: Cancelled while dialing.
        """
        # Fast path: existing entry
        with self._lock:
            conn = self._connections.get(host)
        if conn is not None:
            return conn

        with self._host_lock(host):
            # Check again in case another thread created it
            with self._lock:
                conn = self._connections.get(host)
                auth = self.auth_configs.get(host)
            if conn is not None:
                return conn

            if auth is None:
                raise SSHConfigError(f"no authentication config found for host {host}")

            raise_if_cancelled(cancel, f"ssh-connect-{host}")

            self.log.info(f"→ [{host}] establishing SSH connection")
            try:
                conn = self._connection_factory(host, auth, cancel)
            except Exception as e:
                self.log.error(f"✗ [{host}] SSH connection failed: {e}")
                raise

            self.log.info(f"✓ [{host}] SSH connection established")
            with self._lock:
                self._connections[host] = conn
            return conn

    def run(
        self,
        host: str,
        command: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        input_data: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute a command on one host.

        Failures (missing credentials, dial errors, non-zero exit) come back
        as an unsuccessful ExecutionResult naming the host.

        Raises:
            OperationCancelled: cancel was set; reported distinctly from failure.
        """
        start_time = time.time()
        conn = None
        try:
            conn = self.acquire(host, cancel)
            result = conn.run(command, cancel=cancel, timeout=timeout, input_data=input_data)
        except OperationCancelled:
            raise
        except Exception as e:
            if conn is not None:
                # connection is unusable, next run redials
                self._evict(host, conn)
            category = categorize_ssh_error(e.__cause__ or e)
            self.log.debug(f"{host}: Failed with {category.value}: {e}")
            return ExecutionResult(
                host=host,
                command=command,
                error=f"[{host}] {e}" if host not in str(e) else str(e),
                duration_ms=(time.time() - start_time) * 1000,
                error_category=category,
            )

        if not result.success:
            self.log.debug(
                f"{host}: command exited {result.exit_status}: {command} "
                f"(stderr: {result.stderr.strip()})"
            )
        return result

    def run_all(
        self,
        hosts: Iterable[str],
        command: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, ExecutionResult]:
        """
        Run the same command on every host concurrently.

        Returns:
            host -> ExecutionResult for every host, in input order. Cancelled
            hosts get a result with error_category CANCELLED.
        """
        hosts = list(dict.fromkeys(hosts))
        if not hosts:
            return {}

        batch_start = time.time()
        result_map: Dict[str, ExecutionResult] = {}

        self.log.debug(f"Starting batch execution: {len(hosts)} hosts: {command}")

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(hosts))) as executor:
            futures = {
                executor.submit(self.run, host, command, cancel, timeout): host
                for host in hosts
            }

            for future in as_completed(futures):
                host = futures[future]
                try:
                    result = future.result()
                except OperationCancelled as e:
                    result = ExecutionResult(
                        host=host,
                        command=command,
                        error=str(e),
                        error_category=SSHErrorCategory.CANCELLED,
                    )
                except Exception as e:
                    # run() already converts failures, this is a safety net
                    result = ExecutionResult(
                        host=host,
                        command=command,
                        error=f"Executor error: {e}",
                        error_category=categorize_ssh_error(e),
                    )

                if not result.success:
                    self.log.error(
                        f"ssh command failed on {host}: {command}: "
                        f"{result.error or f'exit {result.exit_status}'} (stderr: {result.stderr.strip()})"
                    )
                result_map[host] = result

        ok = sum(1 for r in result_map.values() if r.success)
        self.log.debug(
            f"Batch complete: {ok}/{len(hosts)} success, "
            f"duration={(time.time() - batch_start) * 1000:.0f}ms"
        )

        return {host: result_map[host] for host in hosts}

    def run_with_retry(
        self,
        host: str,
        command: str,
        policy: RetryPolicy,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Run an idempotent command, retrying unsuccessful attempts under policy.

        Returns the successful result, or the last failed one once attempts
        are exhausted. Only for commands that are safe to repeat.
        """
        last: Dict[str, ExecutionResult] = {}

        def attempt() -> ExecutionResult:
            result = self.run(host, command, cancel=cancel, timeout=timeout)
            last["result"] = result
            return result.check()

        def retryable(exc: Exception) -> bool:
            return last["result"].error_category not in PERMANENT_CATEGORIES

        try:
            return retry_call(policy, attempt, cancel=cancel, retry_on=retryable, log=self.log)
        except (RetryError, CommandError):
            return last["result"]

    def remove(self, host: str) -> None:
        """Close and forget the connection for one host."""
        with self._lock:
            conn = self._connections.pop(host, None)
        if conn is not None:
            conn.close()

    def _evict(self, host: str, conn: Connection) -> None:
        """Drop conn if it is still the pooled connection for host."""
        with self._lock:
            if self._connections.get(host) is not conn:
                return
            del self._connections[host]

        self.log.info(f"[{host}] dropping broken SSH connection")
        try:
            conn.close()
        except Exception as e:
            self.log.warning(f"{host}: Disconnect error: {e}")

    def close(self) -> None:
        """
        Close every pooled connection.

        Raises:
            PoolCloseError: One or more connections failed to close. All
                connections are attempted regardless.
        """
        with self._lock:
            connections, self._connections = self._connections, {}

        errors: Dict[str, Exception] = {}
        for host, conn in connections.items():
            try:
                conn.close()
            except Exception as e:
                errors[host] = e
                self.log.warning(f"{host}: Disconnect error: {e}")

        if errors:
            raise PoolCloseError(errors)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
