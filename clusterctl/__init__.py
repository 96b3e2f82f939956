"""
clusterctl - Converge multi-host container clusters over SSH.

Usage:
    clusterctl keygen --install
    clusterctl resolve
    clusterctl keepalived apply
"""

__version__ = "0.1.0"

from clusterctl.core.config import Config
from clusterctl.core.retry import RetryPolicy, retry, retry_call
from clusterctl.ssh.executor import SSHExecutorPool
from clusterctl.ssh.models import ExecutionResult, HostAuthConfig
from clusterctl.netdetect.resolver import AddressResolver, resolve_addresses
from clusterctl.services.keepalived import KeepalivedPlanner, KeepalivedDeployment

__all__ = [
    # Version
    "__version__",
    # Config
    "Config",
    # Retry
    "RetryPolicy",
    "retry",
    "retry_call",
    # SSH
    "SSHExecutorPool",
    "ExecutionResult",
    "HostAuthConfig",
    # Address detection
    "AddressResolver",
    "resolve_addresses",
    # Keepalived
    "KeepalivedPlanner",
    "KeepalivedDeployment",
]
