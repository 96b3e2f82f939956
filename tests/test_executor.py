import threading
import time

import pytest

from clusterctl.core.errors import (
    OperationCancelled,
    PoolCloseError,
    SSHConfigError,
    SSHConnectError,
)
from clusterctl.core.retry import RetryPolicy
from clusterctl.ssh.executor import SSHExecutorPool
from clusterctl.ssh.models import ExecutionResult, HostAuthConfig, SSHErrorCategory


class FakeConnection:
    def __init__(self, host, script=None, close_error=None):
        self.host = host
        self.script = script or {}
        self.close_error = close_error
        self.closed = False
        self.commands = []

    def run(self, command, cancel=None, timeout=None, input_data=None):
        self.commands.append(command)
        action = self.script.get(command, ("ok", "", 0))
        if callable(action):
            return action(self, command, cancel)
        stdout, stderr, exit_status = action
        return ExecutionResult(self.host, command, stdout, stderr, exit_status)

    def close(self):
        self.closed = True
        if self.close_error:
            raise self.close_error


class FakeFactory:
    def __init__(self, delay=0.0, fail_hosts=(), scripts=None, close_errors=None):
        self.delay = delay
        self.fail_hosts = set(fail_hosts)
        self.scripts = scripts or {}
        self.close_errors = close_errors or {}
        self.dials = []
        self.connections = {}
        self._lock = threading.Lock()

    def __call__(self, host, auth, cancel):
        with self._lock:
            self.dials.append(host)
        if self.delay:
            time.sleep(self.delay)
        if host in self.fail_hosts:
            raise SSHConnectError(host, "connection refused")
        conn = FakeConnection(host, self.scripts.get(host), self.close_errors.get(host))
        with self._lock:
            self.connections[host] = conn
        return conn


def auth_map(*hosts):
    return {h: HostAuthConfig("root", password="secret") for h in hosts}


def test_concurrent_acquire_dials_once():
    factory = FakeFactory(delay=0.1)
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(pool.acquire("node1"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert factory.dials == ["node1"]
    assert len(results) == 8
    assert all(conn is results[0] for conn in results)


def test_different_hosts_dial_in_parallel():
    factory = FakeFactory(delay=0.3)
    hosts = ["node1", "node2", "node3", "node4"]
    pool = SSHExecutorPool(auth_map(*hosts), connection_factory=factory)

    start = time.monotonic()
    results = pool.run_all(hosts, "true")
    elapsed = time.monotonic() - start

    assert all(r.success for r in results.values())
    assert sorted(factory.dials) == sorted(hosts)
    # serial dialing would take >= 1.2s
    assert elapsed < 1.0


def test_acquire_without_auth_names_host():
    pool = SSHExecutorPool({}, connection_factory=FakeFactory())
    with pytest.raises(SSHConfigError, match="no authentication config found for host ghost"):
        pool.acquire("ghost")


def test_run_without_auth_returns_failed_result():
    pool = SSHExecutorPool({}, connection_factory=FakeFactory())
    result = pool.run("ghost", "uptime")
    assert not result.success
    assert "ghost" in result.error
    assert result.error_category == SSHErrorCategory.CONFIG_ERROR


def test_run_all_isolates_failures():
    hosts = [f"node{i}" for i in range(1, 6)]
    factory = FakeFactory(
        fail_hosts={"node3"},
        scripts={h: {"hostname": (f"{h}\n", "", 0)} for h in hosts},
    )
    pool = SSHExecutorPool(auth_map(*hosts), connection_factory=factory)

    results = pool.run_all(hosts, "hostname")

    assert list(results) == hosts
    for host in ("node1", "node2", "node4", "node5"):
        assert results[host].success
        assert results[host].stdout == f"{host}\n"
    assert not results["node3"].success
    assert "node3" in results["node3"].error
    assert results["node3"].error_category == SSHErrorCategory.CONNECTION_REFUSED


def test_nonzero_exit_is_data_not_exception():
    factory = FakeFactory(scripts={"node1": {"false": ("", "nope", 1)}})
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    result = pool.run("node1", "false")
    assert result.exit_status == 1
    assert result.error is None
    assert not result.success


def test_run_all_reports_cancelled_hosts():
    def cancelled(conn, command, cancel):
        raise OperationCancelled(f"[{conn.host}] command cancelled: {command}")

    factory = FakeFactory(scripts={"node2": {"sleep 60": cancelled}})
    pool = SSHExecutorPool(auth_map("node1", "node2"), connection_factory=factory)

    results = pool.run_all(["node1", "node2"], "sleep 60")
    assert results["node1"].success
    assert results["node2"].error_category == SSHErrorCategory.CANCELLED


def test_run_reraises_cancellation():
    cancel = threading.Event()
    cancel.set()
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=FakeFactory())

    with pytest.raises(OperationCancelled):
        pool.run("node1", "uptime", cancel=cancel)


def test_run_with_retry_repeats_failed_attempts(monkeypatch):
    attempts = {"n": 0}

    def locked_then_ok(conn, command, cancel):
        attempts["n"] += 1
        if attempts["n"] < 3:
            return ExecutionResult(conn.host, command, "", "dpkg lock held", 100)
        return ExecutionResult(conn.host, command, "installed", "", 0)

    factory = FakeFactory(scripts={"node1": {"apt-get install -y keepalived": locked_then_ok}})
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    result = pool.run_with_retry(
        "node1", "apt-get install -y keepalived", RetryPolicy(5, 0.0, 0.0, 2.0, "apt")
    )
    assert result.success
    assert result.stdout == "installed"
    assert attempts["n"] == 3


def test_run_with_retry_returns_last_failure():
    factory = FakeFactory(scripts={"node1": {"false": ("", "still broken", 1)}})
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    result = pool.run_with_retry("node1", "false", RetryPolicy(2, 0.0, 0.0, 2.0, "false"))
    assert not result.success
    assert result.stderr == "still broken"
    assert factory.connections["node1"].commands == ["false", "false"]


def test_run_with_retry_does_not_repeat_missing_credentials(monkeypatch):
    pool = SSHExecutorPool({}, connection_factory=FakeFactory())
    attempts = []
    real_run = pool.run

    def counting_run(host, command, **kwargs):
        attempts.append(host)
        return real_run(host, command, **kwargs)

    monkeypatch.setattr(pool, "run", counting_run)

    result = pool.run_with_retry("ghost", "true", RetryPolicy(4, 0.0, 0.0, 2.0, "true"))

    assert not result.success
    assert result.error_category == SSHErrorCategory.CONFIG_ERROR
    assert "ghost" in result.error
    assert attempts == ["ghost"]


def test_run_with_retry_does_not_repeat_bad_key():
    calls = []

    def bad_key(host, auth, cancel):
        calls.append(host)
        raise SSHConfigError(f"[{host}] invalid private key")

    pool = SSHExecutorPool(auth_map("node1"), connection_factory=bad_key)

    result = pool.run_with_retry("node1", "true", RetryPolicy(4, 0.0, 0.0, 2.0, "true"))

    assert result.error_category == SSHErrorCategory.CONFIG_ERROR
    assert calls == ["node1"]


def test_broken_connection_is_redialed():
    def dead_transport(conn, command, cancel):
        raise SSHConnectError(conn.host, "transport is not active")

    factory = FakeFactory(scripts={"node1": {"uptime": dead_transport}})
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    failed = pool.run("node1", "uptime")
    assert not failed.success
    assert "transport is not active" in failed.error
    first = factory.connections["node1"]
    assert first.closed
    assert pool.hosts == []

    factory.scripts = {}
    recovered = pool.run("node1", "uptime")
    assert recovered.success
    assert factory.dials == ["node1", "node1"]
    assert factory.connections["node1"] is not first


def test_close_aggregates_errors_and_closes_everything():
    factory = FakeFactory(close_errors={
        "node1": OSError("socket already closed"),
        "node3": OSError("transport gone"),
    })
    hosts = ["node1", "node2", "node3"]
    pool = SSHExecutorPool(auth_map(*hosts), connection_factory=factory)
    pool.run_all(hosts, "true")

    with pytest.raises(PoolCloseError) as excinfo:
        pool.close()

    assert set(excinfo.value.errors) == {"node1", "node3"}
    assert "socket already closed" in str(excinfo.value)
    assert "transport gone" in str(excinfo.value)
    assert all(conn.closed for conn in factory.connections.values())
    assert pool.hosts == []


def test_remove_closes_and_redials():
    factory = FakeFactory()
    pool = SSHExecutorPool(auth_map("node1"), connection_factory=factory)

    first = pool.acquire("node1")
    pool.remove("node1")
    second = pool.acquire("node1")

    assert first.closed
    assert first is not second
    assert factory.dials == ["node1", "node1"]


def test_add_host_and_context_manager():
    factory = FakeFactory()
    with SSHExecutorPool({}, connection_factory=factory) as pool:
        pool.add_host("node9", HostAuthConfig("admin", key_file="~/.ssh/id_ed25519"))
        assert pool.run("node9", "true").success
        assert pool.hosts == ["node9"]
    assert factory.connections["node9"].closed
