"""
Node geolocation.

The lookup runs ON the node (curl from the node itself) so the public IP
is the node's egress address, not the controller's. Failures degrade to
a partial GeoInfo and are logged; they never raise.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

PUBLIC_IP_CMD = "curl -s -4 --max-time 10 https://api.ipify.org"
GEO_CMD = (
    "curl -s --max-time 10 'http://ip-api.com/json/{ip}"
    "?fields=status,message,country,countryCode,region,regionName,city,timezone,isp'"
)
UNKNOWN = "unknown"


@dataclass
class GeoInfo:
    public_ip: str = UNKNOWN
    country: str = ""
    country_code: str = ""
    region: str = ""
    region_name: str = ""
    city: str = ""
    timezone: str = ""
    isp: str = ""


def parse_geo_response(public_ip: str, output: str) -> GeoInfo:
    """Parse an ip-api.com JSON response; anything unexpected gives a partial GeoInfo."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        logger.warning(f"failed to parse geolocation response: {output!r}")
        return GeoInfo(public_ip=public_ip)

    if not isinstance(data, dict) or data.get("status") != "success":
        message = data.get("message") if isinstance(data, dict) else output
        logger.warning(f"geolocation API returned error: {message}")
        return GeoInfo(public_ip=public_ip)

    return GeoInfo(
        public_ip=public_ip,
        country=data.get("country", ""),
        country_code=data.get("countryCode", ""),
        region=data.get("region", ""),
        region_name=data.get("regionName", ""),
        city=data.get("city", ""),
        timezone=data.get("timezone", ""),
        isp=data.get("isp", ""),
    )


def detect_geolocation(runner, host: str, cancel: Optional[threading.Event] = None) -> GeoInfo:
    """Public IP and location of host."""
    result = runner.run(host, PUBLIC_IP_CMD, cancel=cancel)
    public_ip = result.stdout.strip()
    if not result.success or not public_ip:
        logger.warning(f"[{host}] failed to detect public IP: {result.error or result.stderr.strip()}")
        return GeoInfo()

    logger.info(f"[{host}] detected public IP {public_ip}")

    result = runner.run(host, GEO_CMD.format(ip=public_ip), cancel=cancel)
    if not result.success:
        logger.warning(f"[{host}] failed to get geolocation: {result.error or result.stderr.strip()}")
        return GeoInfo(public_ip=public_ip)

    return parse_geo_response(public_ip, result.stdout)
