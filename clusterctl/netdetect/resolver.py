"""
Address resolver - best address / hostname for a node.

Path: clusterctl/netdetect/resolver.py

Works the same against this machine (LocalExecutor) or a remote node (any
CommandRunner, normally the SSH pool): interface lists, docker networks
and overlay status are all gathered by running commands, and the
selection logic in classify.py stays pure.

Usage:
    resolver = AddressResolver(pool, "10.0.0.11", overlay_provider="netbird")
    addr = resolver.resolve_node_address()

    local_ip = AddressResolver.local().detect_primary()
"""

import ipaddress
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from clusterctl.core.errors import AddressDetectionError, OperationCancelled
from clusterctl.netdetect.classify import (
    InterfaceAddress,
    NetworkInfo,
    parse_ip_addr_output,
    select_best_ip,
    select_network_info,
)
from clusterctl.netdetect.docker import get_docker_subnets
from clusterctl.netdetect.overlay import OverlayStatus, normalize_provider, query_overlay
from clusterctl.ssh.local import LOCALHOST, LocalExecutor

logger = logging.getLogger(__name__)

LIST_ADDRESSES_CMD = "ip -o -4 addr show up"
HOSTNAME_CMD = "hostname -f 2>/dev/null || hostname 2>/dev/null || echo ''"
UNUSABLE_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})


class AddressResolver:
    """
    Resolve addresses for one node.

    Args:
        runner: CommandRunner used to probe the node.
        host: Node identifier understood by runner.
        overlay_provider: "netbird", "tailscale" or None/"none".
        log: Logger (defaults to module logger).
    """

    def __init__(
        self,
        runner,
        host: str = LOCALHOST,
        overlay_provider: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.runner = runner
        self.host = host
        self.overlay_provider = normalize_provider(overlay_provider)
        self.log = log or logger

    @classmethod
    def local(cls, overlay_provider: Optional[str] = None, log: Optional[logging.Logger] = None) -> "AddressResolver":
        """Resolver for the machine this process runs on."""
        return cls(LocalExecutor(), LOCALHOST, overlay_provider, log)

    def docker_subnets(self, cancel: Optional[threading.Event] = None) -> List[ipaddress.IPv4Network]:
        return get_docker_subnets(self.runner, self.host, cancel)

    def interface_addresses(self, cancel: Optional[threading.Event] = None) -> List[InterfaceAddress]:
        """IPv4 addresses on interfaces that are up."""
        result = self.runner.run(self.host, LIST_ADDRESSES_CMD, cancel=cancel)
        if not result.success:
            raise AddressDetectionError(
                f"[{self.host}] failed to list interfaces: {result.error or result.stderr.strip()}"
            )
        return parse_ip_addr_output(result.stdout)

    def overlay_status(self, cancel: Optional[threading.Event] = None) -> OverlayStatus:
        return query_overlay(self.runner, self.host, self.overlay_provider, cancel)

    def overlay_ip(self, cancel: Optional[threading.Event] = None) -> Optional[str]:
        return self.overlay_status(cancel).ip

    def overlay_hostname(self, cancel: Optional[threading.Event] = None) -> Optional[str]:
        return self.overlay_status(cancel).hostname

    def hostname(self, cancel: Optional[threading.Event] = None) -> Optional[str]:
        """System hostname (FQDN if available); None if unusable."""
        result = self.runner.run(self.host, HOSTNAME_CMD, cancel=cancel)
        if not result.success:
            return None
        name = result.stdout.strip()
        if not name or name.lower() in UNUSABLE_HOSTNAMES:
            return None
        return name

    def detect_primary(self, cancel: Optional[threading.Event] = None) -> str:
        """
        Best IPv4 address for the node.

        A configured overlay provider reporting an IP pre-empts the scan.
        Otherwise: overlay > private > other > loopback, docker subnets
        excluded.

        Raises:
            AddressDetectionError: No IPv4 address at all.
        """
        status = self.overlay_status(cancel)
        if status.ip:
            self.log.debug(f"[{self.host}] using {self.overlay_provider} overlay IP {status.ip}")
            return status.ip

        excluded = self.docker_subnets(cancel)
        ips = [entry.ip for entry in self.interface_addresses(cancel)]

        best = select_best_ip(ips, excluded, include_loopback=True)
        if best is None:
            raise AddressDetectionError(f"[{self.host}] no IPv4 address found")
        return best

    def detect_network_info(self, cancel: Optional[threading.Event] = None) -> Optional[NetworkInfo]:
        """
        IP and CIDR for cluster communication: overlay > private > None.

        Docker subnets and loopback are excluded.
        """
        excluded = self.docker_subnets(cancel)
        addresses = [
            entry for entry in self.interface_addresses(cancel)
            if not entry.ip.startswith("127.")
        ]
        return select_network_info(addresses, excluded)

    def resolve_node_address(self, cancel: Optional[threading.Event] = None) -> str:
        """
        Address peers should use to reach this node.

        First success wins:
            1. overlay hostname
            2. overlay IP
            3. system hostname (not "localhost")
            4. best non-loopback IP from the interface scan
        Falls back to the node identifier itself if all of those fail.
        """
        status = self.overlay_status(cancel)
        if status.hostname:
            return status.hostname
        if status.ip:
            return status.ip

        name = self.hostname(cancel)
        if name:
            return name

        try:
            excluded = self.docker_subnets(cancel)
            best = select_best_ip([entry.ip for entry in self.interface_addresses(cancel)], excluded)
        except AddressDetectionError as e:
            self.log.warning(f"{e}; falling back to {self.host}")
            return self.host

        if best is None:
            self.log.warning(f"[{self.host}] no usable non-loopback address; falling back to {self.host}")
            return self.host
        return best


def resolve_addresses(
    runner,
    hosts: Iterable[str],
    overlay_provider: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
    max_workers: int = 16,
) -> Dict[str, str]:
    """
    Resolve many nodes concurrently, one task per host.

    Returns:
        host -> resolved address, in input order.

    Raises:
        OperationCancelled: cancel was set during resolution.
    """
    hosts = list(dict.fromkeys(hosts))
    if not hosts:
        return {}

    resolved: Dict[str, str] = {}

    with ThreadPoolExecutor(max_workers=min(max_workers, len(hosts))) as executor:
        futures = {
            executor.submit(AddressResolver(runner, host, overlay_provider).resolve_node_address, cancel): host
            for host in hosts
        }
        for future in as_completed(futures):
            host = futures[future]
            try:
                resolved[host] = future.result()
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"[{host}] address resolution failed: {e}")
                resolved[host] = host

    return {host: resolved[host] for host in hosts}
