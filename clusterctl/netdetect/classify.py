"""
IPv4 classification and precedence.

Path: clusterctl/netdetect/classify.py

Precedence (highest to lowest):
    1. Overlay  100.64.0.0/10 (CGNAT range used by Netbird/Tailscale)
    2. Private  10.0.0.0/8, 172.16.0.0/12, 192.168.0.0/16
    3. Other    any other IPv4
    4. Loopback 127.0.0.0/8, last resort only

Container-bridge subnets are never eligible, whatever their class.
Everything here is pure; no commands are run.
"""

import ipaddress
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional, Sequence, Union

IPv4Like = Union[str, ipaddress.IPv4Address]

OVERLAY_NETWORK = ipaddress.IPv4Network("100.64.0.0/10")
PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)
LOOPBACK_NETWORK = ipaddress.IPv4Network("127.0.0.0/8")


class IPClass(IntEnum):
    """Precedence class; a higher value wins."""
    LOOPBACK = 0
    OTHER = 1
    PRIVATE = 2
    OVERLAY = 3


@dataclass(frozen=True)
class NetworkInfo:
    """Selected address for cluster-facing traffic."""
    ip: str    # e.g. "100.76.202.130"
    cidr: str  # e.g. "100.76.202.130/32"


@dataclass(frozen=True)
class InterfaceAddress:
    """One IPv4 address assigned to one interface."""
    name: str
    ip: str
    prefixlen: int

    @property
    def cidr(self) -> str:
        return f"{self.ip}/{self.prefixlen}"

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Interface(self.cidr).network


def parse_ipv4(value: IPv4Like) -> Optional[ipaddress.IPv4Address]:
    """Parse an IPv4 address, tolerating a /prefix suffix. None if not IPv4."""
    if isinstance(value, ipaddress.IPv4Address):
        return value
    try:
        text = str(value).strip().split("/", 1)[0]
        addr = ipaddress.ip_address(text)
    except ValueError:
        return None
    return addr if isinstance(addr, ipaddress.IPv4Address) else None


def classify_ip(value: IPv4Like) -> IPClass:
    """
    Classify an address. Total: unparsable or non-IPv4 input is OTHER.

    Octet rules: 100.[64-127] overlay; 10/8, 172.[16-31], 192.168 private;
    127/8 loopback.
    """
    addr = parse_ipv4(value)
    if addr is None:
        return IPClass.OTHER

    first, second = addr.packed[0], addr.packed[1]

    if first == 127:
        return IPClass.LOOPBACK
    if first == 100 and 64 <= second <= 127:
        return IPClass.OVERLAY
    if first == 10:
        return IPClass.PRIVATE
    if first == 172 and 16 <= second <= 31:
        return IPClass.PRIVATE
    if first == 192 and second == 168:
        return IPClass.PRIVATE
    return IPClass.OTHER


def is_overlay(value: IPv4Like) -> bool:
    return classify_ip(value) == IPClass.OVERLAY


def is_private(value: IPv4Like) -> bool:
    return classify_ip(value) == IPClass.PRIVATE


def parse_subnets(cidrs: Iterable[str]) -> List[ipaddress.IPv4Network]:
    """Parse CIDR strings; malformed or non-IPv4 entries are skipped."""
    subnets = []
    for cidr in cidrs:
        try:
            network = ipaddress.ip_network(str(cidr).strip(), strict=False)
        except ValueError:
            continue
        if isinstance(network, ipaddress.IPv4Network):
            subnets.append(network)
    return subnets


def in_subnets(value: IPv4Like, subnets: Sequence[ipaddress.IPv4Network]) -> bool:
    """True if the address falls inside any of the subnets."""
    addr = parse_ipv4(value)
    if addr is None:
        return False
    return any(addr in subnet for subnet in subnets)


def rank_addresses(
    ips: Iterable[IPv4Like],
    excluded: Sequence[ipaddress.IPv4Network] = (),
    include_loopback: bool = False,
) -> List[str]:
    """
    Order eligible addresses by class, stable within a class.

    Unparsable, non-IPv4 and excluded addresses are dropped; loopback is
    dropped unless include_loopback.
    """
    eligible = []
    for value in ips:
        addr = parse_ipv4(value)
        if addr is None or in_subnets(addr, excluded):
            continue
        ip_class = classify_ip(addr)
        if ip_class == IPClass.LOOPBACK and not include_loopback:
            continue
        eligible.append((ip_class, str(addr)))

    # sorted() is stable, so first-seen order survives inside each class
    return [ip for _, ip in sorted(eligible, key=lambda item: item[0], reverse=True)]


def select_best_ip(
    ips: Iterable[IPv4Like],
    excluded: Sequence[ipaddress.IPv4Network] = (),
    include_loopback: bool = False,
) -> Optional[str]:
    """Highest-precedence eligible address, or None."""
    ranked = rank_addresses(ips, excluded, include_loopback)
    return ranked[0] if ranked else None


def select_network_info(
    addresses: Iterable[InterfaceAddress],
    excluded: Sequence[ipaddress.IPv4Network] = (),
) -> Optional[NetworkInfo]:
    """
    Pick the cluster-facing address: overlay, else private, else None.

    Among overlay addresses the last one listed wins, among private the
    first one, matching the order `ip addr` reports them.
    """
    overlay: Optional[NetworkInfo] = None
    private: Optional[NetworkInfo] = None

    for entry in addresses:
        if in_subnets(entry.ip, excluded):
            continue
        ip_class = classify_ip(entry.ip)
        if ip_class == IPClass.OVERLAY:
            overlay = NetworkInfo(ip=entry.ip, cidr=entry.cidr)
        elif ip_class == IPClass.PRIVATE and private is None:
            private = NetworkInfo(ip=entry.ip, cidr=entry.cidr)

    return overlay or private


def parse_ip_addr_output(output: str) -> List[InterfaceAddress]:
    """
    Parse `ip -o -4 addr show` output.

    Lines look like:
        2: eth0    inet 192.168.1.10/24 brd 192.168.1.255 scope global eth0\\ ...
    Malformed lines are skipped.
    """
    entries = []
    for line in output.splitlines():
        parts = line.split()
        if "inet" not in parts:
            continue
        idx = parts.index("inet")
        if idx < 1 or idx + 1 >= len(parts):
            continue
        name = parts[1].rstrip(":").split("@", 1)[0]
        try:
            iface = ipaddress.ip_interface(parts[idx + 1])
        except ValueError:
            continue
        if not isinstance(iface, ipaddress.IPv4Interface):
            continue
        entries.append(InterfaceAddress(name=name, ip=str(iface.ip), prefixlen=iface.network.prefixlen))
    return entries
