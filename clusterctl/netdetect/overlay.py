"""
Overlay-network providers.

Each provider reports the node's overlay hostname and IP from its status
JSON. A provider that is not installed, not logged in, or returns garbage
is simply "not configured".
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

NETBIRD = "netbird"
TAILSCALE = "tailscale"


@dataclass(frozen=True)
class OverlayStatus:
    hostname: Optional[str] = None
    ip: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.hostname or self.ip)


def normalize_provider(provider: Optional[str]) -> str:
    return (provider or "").strip().lower()


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_netbird_status(output: str) -> OverlayStatus:
    """`netbird status --json`: fqdn and netbirdIp (CIDR suffix stripped)."""
    try:
        status = json.loads(output)
    except json.JSONDecodeError:
        return OverlayStatus()
    if not isinstance(status, dict):
        return OverlayStatus()

    fqdn = _text(status.get("fqdn")).rstrip(".")
    ip = _text(status.get("netbirdIp")).split("/", 1)[0].strip()
    return OverlayStatus(hostname=fqdn or None, ip=ip or None)


def parse_tailscale_status(output: str) -> OverlayStatus:
    """`tailscale status --json`: Self.DNSName (trailing dot stripped), Self.TailscaleIPs[0]."""
    try:
        status = json.loads(output)
    except json.JSONDecodeError:
        return OverlayStatus()
    if not isinstance(status, dict):
        return OverlayStatus()

    me = status.get("Self")
    if not isinstance(me, dict):
        return OverlayStatus()

    dns_name = _text(me.get("DNSName")).rstrip(".")
    ips = me.get("TailscaleIPs")
    ip = _text(ips[0]) if isinstance(ips, list) and ips else ""
    return OverlayStatus(hostname=dns_name or None, ip=ip or None)


_PROVIDERS = {
    NETBIRD: ("netbird status --json", parse_netbird_status),
    TAILSCALE: ("tailscale status --json", parse_tailscale_status),
}


def query_overlay(
    runner,
    host: str,
    provider: Optional[str],
    cancel: Optional[threading.Event] = None,
) -> OverlayStatus:
    """Ask the overlay client on host for its status."""
    provider = normalize_provider(provider)
    if provider not in _PROVIDERS:
        return OverlayStatus()

    command, parse = _PROVIDERS[provider]
    result = runner.run(host, command, cancel=cancel)
    if not result.success:
        logger.debug(f"[{host}] {provider} status unavailable: {result.error or result.stderr.strip()}")
        return OverlayStatus()
    return parse(result.stdout)
