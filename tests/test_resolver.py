import threading

import pytest

from clusterctl.core.errors import AddressDetectionError, OperationCancelled
from clusterctl.netdetect.classify import NetworkInfo
from clusterctl.netdetect.docker import (
    INSPECT_NETWORK_CMD,
    LIST_NETWORKS_CMD,
    get_docker_subnets,
    parse_inspect_subnets,
    parse_network_ids,
)
from clusterctl.netdetect.geolocation import GEO_CMD, PUBLIC_IP_CMD, detect_geolocation
from clusterctl.netdetect.overlay import parse_netbird_status, parse_tailscale_status, query_overlay
from clusterctl.netdetect.resolver import (
    HOSTNAME_CMD,
    LIST_ADDRESSES_CMD,
    AddressResolver,
    resolve_addresses,
)

from conftest import (
    DOCKER_INSPECT_BRIDGE,
    DOCKER_INSPECT_HOST,
    DOCKER_LS_OUTPUT,
    IP_ADDR_OUTPUT,
    FakeRunner,
)

NETBIRD_STATUS = '{"fqdn": "node1.netbird.cloud.", "netbirdIp": "100.76.202.130/16", "daemonVersion": "0.28.0"}'
TAILSCALE_STATUS = '{"Self": {"DNSName": "node1.tail1234.ts.net.", "TailscaleIPs": ["100.101.1.2", "fd7a:115c::1"]}}'

NO_OVERLAY_IP_OUTPUT = """\
1: lo    inet 127.0.0.1/8 scope host lo
2: eth0    inet 192.168.1.10/24 brd 192.168.1.255 scope global eth0
3: docker0    inet 172.17.0.1/16 brd 172.17.255.255 scope global docker0
"""


def with_docker(runner):
    runner.add(LIST_NETWORKS_CMD, DOCKER_LS_OUTPUT)
    runner.add(INSPECT_NETWORK_CMD.format(network_id="a1b2c3d4e5f6"), DOCKER_INSPECT_BRIDGE)
    runner.add(INSPECT_NETWORK_CMD.format(network_id="f6e5d4c3b2a1"), DOCKER_INSPECT_HOST)
    return runner


# ----------------- docker -----------------


def test_parse_network_ids_skips_malformed_lines():
    output = DOCKER_LS_OUTPUT + "not json\n[1,2]\n" + '{"ID": "$(rm -rf /)"}\n'
    assert parse_network_ids(output) == ["a1b2c3d4e5f6", "f6e5d4c3b2a1"]


def test_parse_inspect_subnets_skips_malformed_cidrs():
    output = '[{"IPAM": {"Config": [{"Subnet": "10.0.9.0/24"}, {"Subnet": "garbage"}, {"Subnet": "fd00::/64"}]}}]'
    assert [str(s) for s in parse_inspect_subnets(output)] == ["10.0.9.0/24"]
    assert parse_inspect_subnets("not json") == []


@pytest.mark.parametrize("output", [
    '[{"IPAM": ["10.0.9.0/24"]}]',
    '[{"IPAM": {"Config": {"Subnet": "10.0.9.0/24"}}}]',
    '[{"IPAM": {"Config": [{"Subnet": ["10.0.9.0/24"]}]}}]',
    '[{"IPAM": null}, "bridge"]',
])
def test_parse_inspect_subnets_unexpected_shapes(output):
    assert parse_inspect_subnets(output) == []


def test_get_docker_subnets(runner):
    with_docker(runner)
    assert [str(s) for s in get_docker_subnets(runner, "node1")] == ["172.17.0.0/16"]


def test_get_docker_subnets_without_docker(runner):
    assert get_docker_subnets(runner, "node1") == []


# ----------------- overlay -----------------


def test_parse_netbird_status():
    status = parse_netbird_status(NETBIRD_STATUS)
    assert status.hostname == "node1.netbird.cloud"
    assert status.ip == "100.76.202.130"
    assert status.configured


def test_parse_tailscale_status():
    status = parse_tailscale_status(TAILSCALE_STATUS)
    assert status.hostname == "node1.tail1234.ts.net"
    assert status.ip == "100.101.1.2"


@pytest.mark.parametrize("output", [
    "",
    "daemon not running",
    "[]",
    '{"fqdn": ""}',
    '{"fqdn": 42, "netbirdIp": ["100.76.1.1"]}',
    '{"Self": "offline"}',
    '{"Self": {"DNSName": null, "TailscaleIPs": "100.101.1.2"}}',
    '{"Self": {"TailscaleIPs": [7]}}',
])
def test_overlay_garbage_is_not_configured(output):
    assert not parse_netbird_status(output).configured
    assert not parse_tailscale_status(output).configured


def test_query_overlay_unknown_provider_runs_nothing(runner):
    assert not query_overlay(runner, "node1", "zerotier").configured
    assert not query_overlay(runner, "node1", None).configured
    assert runner.calls == []


def test_query_overlay_failed_command_is_not_configured(runner):
    runner.add("netbird status --json", "", "netbird: not found", 127)
    assert not query_overlay(runner, "node1", "NetBird").configured


# ----------------- resolver -----------------


def test_detect_primary_prefers_overlay_and_skips_docker(runner):
    with_docker(runner).add(LIST_ADDRESSES_CMD, IP_ADDR_OUTPUT)
    assert AddressResolver(runner, "node1").detect_primary() == "100.76.202.130"


def test_detect_primary_private_when_no_overlay(runner):
    with_docker(runner).add(LIST_ADDRESSES_CMD, NO_OVERLAY_IP_OUTPUT)
    assert AddressResolver(runner, "node1").detect_primary() == "192.168.1.10"


def test_detect_primary_loopback_last_resort(runner):
    runner.add(LIST_ADDRESSES_CMD, "1: lo    inet 127.0.0.1/8 scope host lo\n")
    assert AddressResolver(runner, "node1").detect_primary() == "127.0.0.1"


def test_detect_primary_fails_without_ipv4(runner):
    runner.add(LIST_ADDRESSES_CMD, "")
    with pytest.raises(AddressDetectionError, match="node1"):
        AddressResolver(runner, "node1").detect_primary()


def test_detect_primary_overlay_provider_preempts_scan(runner):
    runner.add("netbird status --json", NETBIRD_STATUS)
    assert AddressResolver(runner, "node1", overlay_provider="netbird").detect_primary() == "100.76.202.130"
    assert LIST_ADDRESSES_CMD not in runner.commands()


def test_detect_network_info(runner):
    with_docker(runner).add(LIST_ADDRESSES_CMD, IP_ADDR_OUTPUT)
    info = AddressResolver(runner, "node1").detect_network_info()
    assert info == NetworkInfo("100.76.202.130", "100.76.202.130/16")


def test_detect_network_info_none_without_private(runner):
    runner.add(LIST_ADDRESSES_CMD, "2: eth0    inet 203.0.113.5/24 scope global eth0\n")
    assert AddressResolver(runner, "node1").detect_network_info() is None


def test_hostname_rejects_localhost(runner):
    runner.add(HOSTNAME_CMD, "localhost\n")
    assert AddressResolver(runner, "node1").hostname() is None


def test_resolve_order_overlay_hostname_first(runner):
    runner.add("tailscale status --json", TAILSCALE_STATUS)
    runner.add(HOSTNAME_CMD, "node1.lan\n")
    resolver = AddressResolver(runner, "node1", overlay_provider="tailscale")

    assert resolver.resolve_node_address() == "node1.tail1234.ts.net"
    assert HOSTNAME_CMD not in runner.commands()


def test_resolve_order_overlay_ip_second(runner):
    runner.add("netbird status --json", '{"fqdn": "", "netbirdIp": "100.76.1.1/16"}')
    assert AddressResolver(runner, "node1", overlay_provider="netbird").resolve_node_address() == "100.76.1.1"


def test_resolve_order_hostname_third(runner):
    runner.add(HOSTNAME_CMD, "node1.example.com\n")
    runner.add(LIST_ADDRESSES_CMD, IP_ADDR_OUTPUT)

    assert AddressResolver(runner, "node1", overlay_provider="netbird").resolve_node_address() == "node1.example.com"
    assert LIST_ADDRESSES_CMD not in runner.commands()


def test_resolve_order_best_ip_fourth(runner):
    runner.add(HOSTNAME_CMD, "localhost\n")
    with_docker(runner).add(LIST_ADDRESSES_CMD, NO_OVERLAY_IP_OUTPUT)
    assert AddressResolver(runner, "node1").resolve_node_address() == "192.168.1.10"


def test_resolve_falls_back_to_node_identifier(runner):
    runner.add(HOSTNAME_CMD, "\n")
    runner.add(LIST_ADDRESSES_CMD, "")
    assert AddressResolver(runner, "10.9.9.9").resolve_node_address() == "10.9.9.9"


def test_resolve_never_offers_loopback(runner):
    runner.add(HOSTNAME_CMD, "localhost\n")
    runner.add(LIST_ADDRESSES_CMD, "1: lo    inet 127.0.0.1/8 scope host lo\n")
    assert AddressResolver(runner, "10.0.0.11").resolve_node_address() == "10.0.0.11"


def test_detect_primary_survives_malformed_overlay_status(runner):
    runner.add("tailscale status --json", '{"Self": "offline"}')
    runner.add(LIST_ADDRESSES_CMD, NO_OVERLAY_IP_OUTPUT)
    assert AddressResolver(runner, "node1", overlay_provider="tailscale").detect_primary() == "192.168.1.10"



def test_overlay_accessors(runner):
    runner.add("netbird status --json", NETBIRD_STATUS)
    resolver = AddressResolver(runner, "node1", overlay_provider="netbird")
    assert resolver.overlay_ip() == "100.76.202.130"
    assert resolver.overlay_hostname() == "node1.netbird.cloud"


def test_local_resolver_uses_local_executor():
    resolver = AddressResolver.local("none")
    assert resolver.host == "localhost"
    assert type(resolver.runner).__name__ == "LocalExecutor"


def test_resolve_addresses_batch():
    runner = FakeRunner()
    runner.add(HOSTNAME_CMD, "node1.example.com\n", host="node1")
    runner.add(HOSTNAME_CMD, "localhost\n", host="node2")
    runner.add(LIST_ADDRESSES_CMD, NO_OVERLAY_IP_OUTPUT, host="node2")
    runner.add(HOSTNAME_CMD, "", host="node3")
    runner.add(LIST_ADDRESSES_CMD, "", host="node3")

    resolved = resolve_addresses(runner, ["node1", "node2", "node3"])
    assert resolved == {
        "node1": "node1.example.com",
        "node2": "192.168.1.10",
        "node3": "node3",
    }
    assert list(resolved) == ["node1", "node2", "node3"]


def test_resolve_addresses_propagates_cancel():
    cancel = threading.Event()
    cancel.set()

    class CancellingRunner(FakeRunner):
        def run(self, host, command, cancel=None, timeout=None, input_data=None):
            raise OperationCancelled(f"[{host}] cancelled")

    with pytest.raises(OperationCancelled):
        resolve_addresses(CancellingRunner(), ["node1", "node2"], cancel=cancel)


# ----------------- geolocation -----------------


def test_detect_geolocation(runner):
    runner.add(PUBLIC_IP_CMD, "203.0.113.7\n")
    runner.add(
        GEO_CMD.format(ip="203.0.113.7"),
        '{"status": "success", "country": "Germany", "countryCode": "DE", "region": "BE", '
        '"regionName": "Berlin", "city": "Berlin", "timezone": "Europe/Berlin", "isp": "Example"}',
    )
    geo = detect_geolocation(runner, "node1")
    assert geo.public_ip == "203.0.113.7"
    assert geo.country_code == "DE"
    assert geo.city == "Berlin"
    assert geo.timezone == "Europe/Berlin"


def test_detect_geolocation_degrades(runner):
    assert detect_geolocation(runner, "node1").public_ip == "unknown"

    runner.add(PUBLIC_IP_CMD, "203.0.113.7\n")
    runner.add(GEO_CMD.format(ip="203.0.113.7"), '{"status": "fail", "message": "reserved range"}')
    geo = detect_geolocation(runner, "node1")
    assert geo.public_ip == "203.0.113.7"
    assert geo.country == ""
