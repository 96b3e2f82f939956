"""
Keepalived (VRRP) planning and deployment.

Path: clusterctl/services/keepalived.py

Planning picks, from the first enabled node, a private-network interface
and an unused virtual IP (probed with arping duplicate-address detection),
then assigns every enabled node a priority and state in declared order.
Nothing is remembered between runs: the same node list and network give
the same deployment.

Usage:
    planner = KeepalivedPlanner(pool, config.keepalived)
    deployment = planner.prepare(config.keepalived_nodes())
    for node in deployment.nodes:
        print(render_keepalived_conf(node, deployment))
    install_and_configure(pool, deployment)
"""

import ipaddress
import logging
import re
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from clusterctl.core.cancel import raise_if_cancelled
from clusterctl.core.errors import KeepalivedError
from clusterctl.core.retry import RetryPolicy
from clusterctl.netdetect.classify import InterfaceAddress, is_private
from clusterctl.netdetect.resolver import AddressResolver

logger = logging.getLogger(__name__)

BASE_PRIORITY = 100
DEFAULT_ROUTER_ID = 51
ADVERT_INTERVAL = 1
AUTH_PASS_LENGTH = 8
VRRP_INSTANCE = "VI_1"

MASTER = "MASTER"
BACKUP = "BACKUP"
_STATE_ALIASES = {"MASTER": MASTER, "LEADER": MASTER, "BACKUP": BACKUP}

CONFIG_PATH = "/etc/keepalived/keepalived.conf"
HEALTH_CHECK_PATH = "/etc/keepalived/check_docker_swarm.sh"

VIP_HIGH = 254
VIP_LOW = 245

SKIPPED_INTERFACE_PREFIXES = ("docker", "br-", "veth", "wg")

ENSURE_ARPING_CMD = (
    "command -v arping >/dev/null 2>&1 || "
    "{ apt-get update && apt-get install -y iputils-arping; } 2>/dev/null || "
    "yum install -y iputils 2>/dev/null || "
    "dnf install -y iputils 2>/dev/null || true"
)
ARPING_CMD = "arping -c 2 -w 1 -D -I {interface} {candidate}"

INSTALL_CMD = """
if ! command -v keepalived &> /dev/null; then
    echo "Installing keepalived..."
    if command -v apt-get &> /dev/null; then
        apt-get update && apt-get install -y keepalived
    elif command -v yum &> /dev/null; then
        yum install -y keepalived
    elif command -v dnf &> /dev/null; then
        dnf install -y keepalived
    else
        echo "ERROR: No supported package manager found"
        exit 1
    fi
else
    echo "keepalived already installed"
fi
"""

RESTART_CMD = "systemctl enable keepalived && systemctl restart keepalived"

HEALTH_CHECK_SCRIPT = """#!/bin/bash
# Docker Swarm health check for Keepalived
# Returns 0 if node is healthy in swarm, 1 otherwise

if ! command -v docker &> /dev/null; then
    exit 1
fi

if docker node ls &>/dev/null; then
    exit 0
else
    exit 1
fi
"""

KEEPALIVED_CONF_TEMPLATE = """# Keepalived configuration - Generated by clusterctl
# VIP: {vip_cidr} | Interface: {interface} | Node State: {state}

global_defs {{
    router_id {instance}_{router_id}
    script_user root
    enable_script_security
}}

vrrp_script chk_docker_swarm {{
    script "{health_check}"
    interval 5
    weight -20
    fall 2
    rise 2
}}

vrrp_instance {instance} {{
    state {state}
    interface {interface}
    virtual_router_id {router_id}
    priority {priority}
    advert_int {advert_int}

    authentication {{
        auth_type PASS
        auth_pass {auth_pass}
    }}

    virtual_ipaddress {{
        {vip_cidr}
    }}

    track_script {{
        chk_docker_swarm
    }}
}}
"""

# (host, interface, candidate) -> True if the address is in use
Probe = Callable[[str, str, str], bool]


def is_auto_value(value: Any) -> bool:
    """Empty or "auto" (any case) means detect automatically."""
    if value is None:
        return True
    return str(value).strip().lower() in ("", "auto")


@dataclass
class KeepalivedSettings:
    """Cluster-wide keepalived settings ("auto"/empty = detect)."""
    enabled: bool = False
    interface: str = "auto"
    vip: str = "auto"
    router_id: int = DEFAULT_ROUTER_ID
    auth_pass: str = "auto"


@dataclass
class KeepalivedNode:
    """A node taking part in VIP failover, with optional raw overrides."""
    host: str
    priority: Any = None
    state: Any = None


@dataclass
class KeepalivedNodeConfig:
    hostname: str
    priority: int
    state: str
    interface: str
    vip: str  # with CIDR suffix


@dataclass
class KeepalivedDeployment:
    enabled: bool = False
    vip: str = ""
    vip_cidr: str = ""
    interface: str = ""
    router_id: int = DEFAULT_ROUTER_ID
    auth_pass: str = ""
    nodes: List[KeepalivedNodeConfig] = field(default_factory=list)

    def __repr__(self) -> str:
        if not self.enabled:
            return "KeepalivedDeployment(disabled)"
        return (
            f"KeepalivedDeployment(vip={self.vip_cidr}, interface={self.interface}, "
            f"router_id={self.router_id}, nodes={len(self.nodes)})"
        )


def generate_auth_password() -> str:
    """Random hex password; VRRP PASS authentication uses at most 8 characters."""
    return secrets.token_hex(AUTH_PASS_LENGTH // 2)


def parse_priority(value: Any) -> Optional[int]:
    """Priority override, or None if absent/auto/invalid."""
    if is_auto_value(value) or isinstance(value, bool):
        return None
    try:
        priority = int(str(value).strip())
    except ValueError:
        logger.warning(f"ignoring invalid keepalived priority override: {value!r}")
        return None
    if not 1 <= priority <= 254:
        logger.warning(f"ignoring out-of-range keepalived priority override: {priority}")
        return None
    return priority


def parse_state(value: Any) -> Optional[str]:
    """State override normalised to MASTER/BACKUP, or None."""
    if is_auto_value(value):
        return None
    state = _STATE_ALIASES.get(str(value).strip().upper())
    if state is None:
        logger.warning(f"ignoring invalid keepalived state override: {value!r}")
    return state


def resolve_node_config(node: KeepalivedNode, index: int, interface: str, vip_cidr: str) -> KeepalivedNodeConfig:
    """Priority BASE-index and MASTER for the first node, unless overridden."""
    priority = parse_priority(node.priority)
    if priority is None:
        priority = BASE_PRIORITY - index

    state = parse_state(node.state)
    if state is None:
        state = MASTER if index == 0 else BACKUP

    return KeepalivedNodeConfig(
        hostname=node.host,
        priority=priority,
        state=state,
        interface=interface,
        vip=vip_cidr,
    )


def usable_interface(name: str) -> bool:
    return name != "lo" and not name.startswith(SKIPPED_INTERFACE_PREFIXES)


def candidate_vips(iface: InterfaceAddress) -> List[str]:
    """
    VIP candidates .254 down to .245 in the interface network.

    Addresses outside the network, the network/broadcast addresses and the
    interface's own address are skipped.
    """
    network = iface.network
    own = ipaddress.IPv4Address(iface.ip)
    base = int(network.network_address) & 0xFFFFFF00

    candidates = []
    for last_octet in range(VIP_HIGH, VIP_LOW - 1, -1):
        candidate = ipaddress.IPv4Address(base + last_octet)
        if candidate not in network or candidate == own:
            continue
        if network.prefixlen < 31 and candidate in (network.network_address, network.broadcast_address):
            continue
        candidates.append(str(candidate))
    return candidates


def candidate_range(iface: InterfaceAddress) -> str:
    prefix = ".".join(str(ipaddress.IPv4Address(int(iface.network.network_address) & 0xFFFFFF00)).split(".")[:3])
    return f"{prefix}.{VIP_LOW}-{prefix}.{VIP_HIGH}"


class KeepalivedPlanner:
    """
    Build a KeepalivedDeployment for the enabled nodes.

    Args:
        pool: CommandRunner reaching the nodes (usually SSHExecutorPool).
        settings: Cluster-wide KeepalivedSettings.
        log: Logger (defaults to module logger).
        probe: Duplicate-address probe; defaults to arping on the node.
    """

    def __init__(
        self,
        pool,
        settings: KeepalivedSettings,
        log: Optional[logging.Logger] = None,
        probe: Optional[Probe] = None,
    ):
        self.pool = pool
        self.settings = settings
        self.log = log or logger
        self._probe = probe

    def prepare(
        self,
        nodes: Sequence[KeepalivedNode],
        cancel: Optional[threading.Event] = None,
    ) -> KeepalivedDeployment:
        """
        Detect interface/VIP as needed and assign priority/state per node.

        Raises:
            KeepalivedError: No usable interface, no free VIP, or probing failed.
        """
        if not self.settings.enabled:
            self.log.info("Keepalived is not enabled globally, skipping")
            return KeepalivedDeployment(enabled=False)
        if not nodes:
            self.log.info("No nodes have Keepalived enabled, skipping")
            return KeepalivedDeployment(enabled=False)

        self.log.info(f"Preparing Keepalived deployment for {len(nodes)} nodes")
        first = nodes[0].host

        interface = self.settings.interface
        if is_auto_value(interface):
            interface = self.detect_rfc1918_interface(first, cancel)
            self.log.info(f"[{first}] auto-detected private interface {interface}")
        interface = interface.strip()

        details = self.interface_details(first, interface, cancel)
        self.log.info(f"[{first}] interface {interface}: {details.cidr}")

        vip = self.settings.vip
        if is_auto_value(vip):
            vip = self.find_unused_vip(first, details, cancel)
            self.log.info(f"Auto-detected unused VIP {vip}")
        vip = vip.strip()
        try:
            ipaddress.IPv4Address(vip)
        except ValueError:
            raise KeepalivedError(f"invalid virtual IP: {vip!r}")

        auth_pass = self.settings.auth_pass
        if is_auto_value(auth_pass):
            auth_pass = generate_auth_password()
            self.log.info("Generated Keepalived auth password")

        router_id = self.settings.router_id or DEFAULT_ROUTER_ID

        vip_cidr = f"{vip}/{details.prefixlen}"
        deployment = KeepalivedDeployment(
            enabled=True,
            vip=vip,
            vip_cidr=vip_cidr,
            interface=interface,
            router_id=router_id,
            auth_pass=str(auth_pass).strip(),
        )

        for index, node in enumerate(nodes):
            node_config = resolve_node_config(node, index, interface, vip_cidr)
            deployment.nodes.append(node_config)
            self.log.info(
                f"[{node_config.hostname}] priority={node_config.priority} state={node_config.state}"
            )

        self.log.info(f"Keepalived deployment prepared: {deployment!r}")
        return deployment

    def _interfaces(self, host: str, cancel: Optional[threading.Event]) -> List[InterfaceAddress]:
        return AddressResolver(self.pool, host, log=self.log).interface_addresses(cancel)

    def detect_rfc1918_interface(self, host: str, cancel: Optional[threading.Event] = None) -> str:
        """First non-loopback, non-bridge/tunnel interface holding a private address."""
        for entry in self._interfaces(host, cancel):
            if usable_interface(entry.name) and is_private(entry.ip):
                return entry.name
        raise KeepalivedError(f"[{host}] no RFC1918 interface found")

    def interface_details(self, host: str, interface: str, cancel: Optional[threading.Event] = None) -> InterfaceAddress:
        """First IPv4 address (with prefix) on the named interface."""
        for entry in self._interfaces(host, cancel):
            if entry.name == interface:
                return entry
        raise KeepalivedError(f"[{host}] no IPv4 address found on interface {interface}")

    def find_unused_vip(
        self,
        host: str,
        iface: InterfaceAddress,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        Probe candidates one at a time from the top; first free one wins.

        Raises:
            KeepalivedError: Every candidate is in use (names the range).
        """
        candidates = candidate_vips(iface)
        probe = self._probe
        if probe is None:
            self.pool.run(host, ENSURE_ARPING_CMD, cancel=cancel)

            def probe(h, dev, candidate):
                return self.arping_in_use(h, dev, candidate, cancel)

        for candidate in candidates:
            raise_if_cancelled(cancel, "find unused VIP")
            if not probe(host, iface.name, candidate):
                self.log.info(f"[{host}] found unused IP candidate {candidate}")
                return candidate
            self.log.info(f"[{host}] IP is in use: {candidate}")

        raise KeepalivedError(
            f"[{host}] no unused IP found in range {candidate_range(iface)}"
        )

    def arping_in_use(self, host: str, interface: str, candidate: str, cancel: Optional[threading.Event] = None) -> bool:
        """arping duplicate-address detection: exit 0 free, exit 1 answered (in use)."""
        result = self.pool.run(
            host, ARPING_CMD.format(interface=interface, candidate=candidate), cancel=cancel
        )
        if result.error is None and result.exit_status == 0:
            return False
        if result.error is None and result.exit_status == 1:
            return True
        raise KeepalivedError(
            f"[{host}] arping probe of {candidate} failed: "
            f"{result.error or f'exit {result.exit_status}'} {result.stderr.strip()}".rstrip()
        )


def render_keepalived_conf(node: KeepalivedNodeConfig, deployment: KeepalivedDeployment) -> str:
    return KEEPALIVED_CONF_TEMPLATE.format(
        vip_cidr=deployment.vip_cidr,
        interface=node.interface,
        state=node.state,
        instance=VRRP_INSTANCE,
        router_id=deployment.router_id,
        health_check=HEALTH_CHECK_PATH,
        priority=node.priority,
        advert_int=ADVERT_INTERVAL,
        auth_pass=deployment.auth_pass,
    )


_CONF_FIELDS = {
    "state": re.compile(r"^\s*state\s+(\S+)\s*$", re.MULTILINE),
    "interface": re.compile(r"^\s*interface\s+(\S+)\s*$", re.MULTILINE),
    "router_id": re.compile(r"^\s*virtual_router_id\s+(\d+)\s*$", re.MULTILINE),
    "priority": re.compile(r"^\s*priority\s+(\d+)\s*$", re.MULTILINE),
    "auth_pass": re.compile(r"^\s*auth_pass\s+(\S+)\s*$", re.MULTILINE),
    "vip_cidr": re.compile(r"virtual_ipaddress\s*\{\s*(\S+)\s*\}"),
}


def parse_keepalived_conf(text: str) -> Dict[str, Any]:
    """
    Recover the structured fields of a rendered keepalived.conf.

    Returns:
        Dict with state, interface, router_id (int), priority (int),
        auth_pass, vip_cidr and vip. Missing fields are absent.
    """
    parsed: Dict[str, Any] = {}
    for name, pattern in _CONF_FIELDS.items():
        match = pattern.search(text)
        if match:
            parsed[name] = match.group(1)

    for name in ("router_id", "priority"):
        if name in parsed:
            parsed[name] = int(parsed[name])
    if "vip_cidr" in parsed:
        parsed["vip"] = parsed["vip_cidr"].split("/", 1)[0]
    return parsed


def _heredoc(path: str, content: str, marker: str) -> str:
    return f"cat > {path} << '{marker}'\n{content}\n{marker}"


def write_health_check_script(pool, host: str, cancel: Optional[threading.Event] = None) -> None:
    cmd = _heredoc(HEALTH_CHECK_PATH, HEALTH_CHECK_SCRIPT, "SCRIPT_EOF") + f"\nchmod +x {HEALTH_CHECK_PATH}"
    result = pool.run(host, cmd, cancel=cancel)
    if not result.success:
        raise KeepalivedError(
            f"[{host}] failed to write health check script: {result.error or result.stderr.strip()}"
        )


def install_on_node(
    pool,
    node: KeepalivedNodeConfig,
    deployment: KeepalivedDeployment,
    cancel: Optional[threading.Event] = None,
) -> None:
    host = node.hostname

    result = pool.run_with_retry(
        host, INSTALL_CMD, RetryPolicy.package_manager(f"install keepalived on {host}"), cancel=cancel
    )
    if not result.success:
        raise KeepalivedError(
            f"[{host}] failed to install keepalived: {result.error or result.stderr.strip()}"
        )
    logger.debug(f"[{host}] keepalived install output: {result.stdout.strip()}")

    conf = render_keepalived_conf(node, deployment)
    result = pool.run(host, _heredoc(CONFIG_PATH, conf, "KEEPALIVED_EOF"), cancel=cancel)
    if not result.success:
        raise KeepalivedError(
            f"[{host}] failed to write keepalived.conf: {result.error or result.stderr.strip()}"
        )

    write_health_check_script(pool, host, cancel)

    result = pool.run(host, RESTART_CMD, cancel=cancel)
    if not result.success:
        raise KeepalivedError(
            f"[{host}] failed to restart keepalived: {result.error or result.stderr.strip()}"
        )


def install_and_configure(
    pool,
    deployment: KeepalivedDeployment,
    cancel: Optional[threading.Event] = None,
    log: Optional[logging.Logger] = None,
) -> None:
    """
    Install, configure and (re)start keepalived on every node, in order.

    Raises:
        KeepalivedError: First node that failed, by name.
    """
    log = log or logger
    if not deployment.enabled or not deployment.nodes:
        return

    for node in deployment.nodes:
        log.info(f"→ [{node.hostname}] configuring keepalived ({node.state}, priority {node.priority})")
        try:
            install_on_node(pool, node, deployment, cancel)
        except KeepalivedError:
            log.error(f"✗ [{node.hostname}] keepalived configuration failed")
            raise
        log.info(f"✓ [{node.hostname}] keepalived configured")
