"""Address detection with consistent precedence rules (local and remote)."""

from clusterctl.netdetect.classify import (
    IPClass,
    InterfaceAddress,
    NetworkInfo,
    classify_ip,
    select_best_ip,
)
from clusterctl.netdetect.resolver import AddressResolver, resolve_addresses

__all__ = [
    "IPClass",
    "InterfaceAddress",
    "NetworkInfo",
    "classify_ip",
    "select_best_ip",
    "AddressResolver",
    "resolve_addresses",
]
