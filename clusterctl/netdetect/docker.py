"""
Container-bridge subnet discovery.

Docker-managed networks are not routable across hosts, so their subnets
are excluded from every address selection. Discovery works through any
CommandRunner (SSH pool for remote nodes, LocalExecutor for this host).
Missing docker, failed commands and malformed entries all mean "no
subnets from that source", never an error.
"""

import ipaddress
import json
import logging
import re
import threading
from typing import List, Optional

from clusterctl.netdetect.classify import parse_subnets

logger = logging.getLogger(__name__)

LIST_NETWORKS_CMD = "docker network ls --format json 2>/dev/null || true"
INSPECT_NETWORK_CMD = "docker network inspect {network_id} --format json 2>/dev/null || true"

_NETWORK_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def parse_network_ids(output: str) -> List[str]:
    """Parse NDJSON from `docker network ls --format json` into network IDs."""
    ids = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        network_id = str(entry.get("ID") or "").strip()
        if network_id and _NETWORK_ID.match(network_id):
            ids.append(network_id)
    return ids


def parse_inspect_subnets(output: str) -> List[ipaddress.IPv4Network]:
    """Parse `docker network inspect --format json` (a JSON array) into subnets."""
    try:
        networks = json.loads(output)
    except json.JSONDecodeError:
        return []
    if isinstance(networks, dict):
        networks = [networks]
    if not isinstance(networks, list):
        return []

    cidrs = []
    for network in networks:
        if not isinstance(network, dict):
            continue
        ipam = network.get("IPAM")
        configs = ipam.get("Config") if isinstance(ipam, dict) else None
        if not isinstance(configs, list):
            continue
        for cfg in configs:
            if isinstance(cfg, dict) and isinstance(cfg.get("Subnet"), str):
                cidrs.append(cfg["Subnet"])
    return parse_subnets(cidrs)


def get_docker_subnets(
    runner,
    host: str,
    cancel: Optional[threading.Event] = None,
) -> List[ipaddress.IPv4Network]:
    """List docker networks on host and collect their IPv4 subnets."""
    listing = runner.run(host, LIST_NETWORKS_CMD, cancel=cancel)
    if not listing.success or not listing.stdout.strip():
        return []

    subnets: List[ipaddress.IPv4Network] = []
    for network_id in parse_network_ids(listing.stdout):
        inspect = runner.run(host, INSPECT_NETWORK_CMD.format(network_id=network_id), cancel=cancel)
        if not inspect.success or not inspect.stdout.strip():
            continue
        subnets.extend(parse_inspect_subnets(inspect.stdout))

    if subnets:
        logger.debug(f"[{host}] docker subnets excluded: {', '.join(str(s) for s in subnets)}")
    return subnets
