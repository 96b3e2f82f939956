"""
Configuration management for clusterctl.

Handles loading the cluster definition from ~/.clusterctl/config.yaml
(or $CLUSTERCTL_CONFIG) and providing default values for all settings.
JSON files load too, YAML being a superset.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from clusterctl.core.errors import ConfigError
from clusterctl.services.keepalived import (
    DEFAULT_ROUTER_ID,
    KeepalivedNode,
    KeepalivedSettings,
    is_auto_value,
)
from clusterctl.ssh.models import DEFAULT_SSH_PORT, HostAuthConfig


# Default paths
DEFAULT_BASE_DIR = Path.home() / ".clusterctl"
DEFAULT_CONFIG_FILE = DEFAULT_BASE_DIR / "config.yaml"
DEFAULT_KEY_DIR = DEFAULT_BASE_DIR / "keys"
DEFAULT_LOG_DIR = DEFAULT_BASE_DIR / "logs"

CONFIG_ENV = "CLUSTERCTL_CONFIG"

NODE_ROLES = ("manager", "worker")


@dataclass
class ExecutionConfig:
    """Remote execution settings."""

    max_workers: int = 32
    connect_timeout: float = 10.0
    command_timeout: Optional[float] = None


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: Optional[Path] = None


@dataclass
class SSHConfig:
    key_dir: Path = DEFAULT_KEY_DIR


@dataclass
class NodeKeepalivedConfig:
    enabled: bool = False
    priority: Any = None
    state: Any = None


@dataclass
class NodeConfig:
    """One declared cluster node."""

    host: str
    role: str = "worker"
    username: str = "root"
    password: Optional[str] = None
    private_key: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_password: Optional[str] = None
    port: int = DEFAULT_SSH_PORT
    keepalived: NodeKeepalivedConfig = field(default_factory=NodeKeepalivedConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"node entry must be a mapping, got {data!r}")

        host = str(data.get("host") or "").strip()
        if not host:
            raise ConfigError(f"node entry without host: {data!r}")

        role = str(data.get("role") or "worker").strip().lower()
        if role not in NODE_ROLES:
            raise ConfigError(f"[{host}] invalid role {role!r} (expected one of {', '.join(NODE_ROLES)})")

        ka = data.get("keepalived") or {}
        if not isinstance(ka, dict):
            raise ConfigError(f"[{host}] keepalived must be a mapping")

        try:
            port = int(data.get("port") or DEFAULT_SSH_PORT)
        except (TypeError, ValueError):
            raise ConfigError(f"[{host}] invalid port {data.get('port')!r}")

        return cls(
            host=host,
            role=role,
            username=data.get("username") or "root",
            password=data.get("password") or None,
            private_key=data.get("private_key") or None,
            private_key_path=data.get("private_key_path") or None,
            private_key_password=data.get("private_key_password") or None,
            port=port,
            keepalived=NodeKeepalivedConfig(
                enabled=bool(ka.get("enabled", False)),
                priority=ka.get("priority"),
                state=ka.get("state"),
            ),
        )

    def auth_config(self) -> HostAuthConfig:
        try:
            return HostAuthConfig(
                username=self.username,
                password=self.password,
                key_content=self.private_key,
                key_file=self.private_key_path,
                key_passphrase=self.private_key_password,
                port=self.port,
            )
        except ValueError as e:
            raise ConfigError(f"[{self.host}] invalid credentials: {e}")


@dataclass
class Config:
    """Main configuration container."""

    config_file: Path = DEFAULT_CONFIG_FILE

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)

    # "netbird", "tailscale" or "none"
    overlay_provider: str = "none"

    keepalived: KeepalivedSettings = field(default_factory=KeepalivedSettings)
    nodes: List[NodeConfig] = field(default_factory=list)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from a YAML (or JSON) file.

        Args:
            config_path: Path to config file. If None, uses $CLUSTERCTL_CONFIG
                         or the default location.

        Returns:
            Config instance with values from file merged with defaults.

        Raises:
            ConfigError: Unparseable file or invalid values.
        """
        if config_path is None:
            config_path = Path(os.environ.get(CONFIG_ENV, str(DEFAULT_CONFIG_FILE)))
        config_path = Path(config_path).expanduser()

        config = cls()
        config.config_file = config_path

        # If config file doesn't exist, return defaults
        if not config_path.exists():
            return config

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config YAML in {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

        return config.update_from_dict(data)

    def update_from_dict(self, data: Dict[str, Any]) -> "Config":
        if "execution" in data:
            exec_data = data["execution"] or {}
            timeout = exec_data.get("command_timeout")
            self.execution = ExecutionConfig(
                max_workers=int(exec_data.get("max_workers", 32)),
                connect_timeout=float(exec_data.get("connect_timeout", 10.0)),
                command_timeout=float(timeout) if timeout else None,
            )

        if "logging" in data:
            log_data = data["logging"] or {}
            log_file = log_data.get("file")
            self.logging = LoggingConfig(
                level=log_data.get("level", "info"),
                file=Path(log_file).expanduser() if log_file else None,
            )

        if "ssh" in data:
            ssh_data = data["ssh"] or {}
            if ssh_data.get("key_dir"):
                self.ssh = SSHConfig(key_dir=Path(ssh_data["key_dir"]).expanduser())

        if "overlay_provider" in data:
            self.overlay_provider = str(data["overlay_provider"] or "none").strip().lower()

        if "keepalived" in data:
            ka = data["keepalived"] or {}
            router_id = ka.get("router_id")
            try:
                router_id = DEFAULT_ROUTER_ID if is_auto_value(router_id) else int(router_id)
            except (TypeError, ValueError):
                raise ConfigError(f"Invalid keepalived router_id: {router_id!r}")
            if not 1 <= router_id <= 255:
                raise ConfigError(f"keepalived router_id out of range (1-255): {router_id}")
            self.keepalived = KeepalivedSettings(
                enabled=bool(ka.get("enabled", False)),
                interface=str(ka.get("interface") or "auto"),
                vip=str(ka.get("vip") or "auto"),
                router_id=router_id,
                auth_pass=str(ka.get("auth_pass") or "auto"),
            )

        if "nodes" in data:
            self.nodes = [NodeConfig.from_dict(n) for n in data["nodes"] or []]
            seen = set()
            for node in self.nodes:
                if node.host in seen:
                    raise ConfigError(f"[{node.host}] declared more than once")
                seen.add(node.host)

        return self

    def auth_configs(self) -> Dict[str, HostAuthConfig]:
        """host -> HostAuthConfig for every declared node."""
        return {node.host: node.auth_config() for node in self.nodes}

    def keepalived_nodes(self) -> List[KeepalivedNode]:
        """Nodes with keepalived enabled, in declared order."""
        return [
            KeepalivedNode(
                host=node.host,
                priority=node.keepalived.priority,
                state=node.keepalived.state,
            )
            for node in self.nodes
            if node.keepalived.enabled
        ]

    def node(self, host: str) -> Optional[NodeConfig]:
        for node in self.nodes:
            if node.host == host:
                return node
        return None

    def save_default_config(self):
        """Save a default config file if one doesn't exist."""
        if self.config_file.exists():
            return

        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        default_config = f"""\
# clusterctl Configuration

# =============================================================================
# Execution
# =============================================================================

execution:
  max_workers: 32          # Concurrent SSH sessions
  connect_timeout: 10      # SSH dial timeout in seconds
  # command_timeout: 600   # Per-command timeout in seconds (default: none)

# =============================================================================
# Logging
# =============================================================================

logging:
  level: info              # debug, info, warn, error
  file: {DEFAULT_LOG_DIR / 'clusterctl.log'}

ssh:
  key_dir: {self.ssh.key_dir}

# netbird, tailscale or none
overlay_provider: none

# =============================================================================
# Virtual IP failover ("auto" = detect)
# =============================================================================

keepalived:
  enabled: false
  interface: auto
  vip: auto
  router_id: {DEFAULT_ROUTER_ID}
  auth_pass: auto

nodes: []
#  - host: 10.0.0.11
#    role: manager
#    username: root
#    private_key_path: {self.ssh.key_dir / 'clusterctl_ed25519'}
#    keepalived:
#      enabled: true
#      priority: auto
#      state: auto
"""

        with open(self.config_file, "w") as f:
            f.write(default_config)
