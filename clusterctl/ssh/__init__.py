"""SSH execution - connections, executor pool, local executor, keys."""

from clusterctl.ssh.client import SSHConnection
from clusterctl.ssh.executor import SSHExecutorPool, CommandRunner
from clusterctl.ssh.local import LocalExecutor
from clusterctl.ssh.models import ExecutionResult, HostAuthConfig, SSHErrorCategory

__all__ = [
    "SSHConnection",
    "SSHExecutorPool",
    "CommandRunner",
    "LocalExecutor",
    "ExecutionResult",
    "HostAuthConfig",
    "SSHErrorCategory",
]
