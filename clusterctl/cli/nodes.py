"""
Node CLI handlers.

Path: clusterctl/cli/nodes.py

Handles: clusterctl detect-ip | resolve | run | geo
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List

from clusterctl.cli.common import cancel_on_interrupt, close_pool, load_config, open_pool
from clusterctl.core.config import Config
from clusterctl.core.errors import ClusterctlError, OperationCancelled
from clusterctl.core.retry import RetryPolicy
from clusterctl.netdetect.geolocation import detect_geolocation
from clusterctl.netdetect.resolver import AddressResolver, resolve_addresses
from clusterctl.ssh.models import ExecutionResult

EXIT_CANCELLED = 130


def _select_hosts(config: Config, hosts: List[str] = None, role: str = None) -> List[str]:
    if hosts:
        return list(hosts)
    return [n.host for n in config.nodes if role is None or n.role == role]


def handle_detect_ip(args) -> int:
    """Handle detect-ip subcommand."""
    try:
        config = load_config(args)
        resolver = AddressResolver.local(args.overlay or config.overlay_provider)

        with cancel_on_interrupt() as cancel:
            primary = resolver.detect_primary(cancel)
            network = resolver.detect_network_info(cancel)
            hostname = resolver.hostname(cancel)
    except OperationCancelled:
        print("Cancelled")
        return EXIT_CANCELLED
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    print(f"Primary IP:      {primary}")
    if network:
        print(f"Cluster network: {network.ip} ({network.cidr})")
    else:
        print("Cluster network: none (no overlay or private address)")
    print(f"Hostname:        {hostname or '-'}")
    return 0


def handle_resolve(args) -> int:
    """Handle resolve subcommand."""
    try:
        config = load_config(args)
        hosts = _select_hosts(config, args.hosts)
        if not hosts:
            print("Error: No hosts given and no nodes configured")
            return 1

        pool = open_pool(config)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    try:
        with cancel_on_interrupt() as cancel:
            resolved = resolve_addresses(pool, hosts, config.overlay_provider, cancel)
    except OperationCancelled:
        print("Cancelled")
        return EXIT_CANCELLED
    finally:
        close_pool(pool)

    width = max(len(h) for h in resolved)
    for host, address in resolved.items():
        print(f"  {host:<{width}}  {address}")
    return 0


def _print_result(result: ExecutionResult, quiet: bool):
    if result.success:
        print(f"✓ {result.host} ({result.duration_ms:.0f}ms)")
    else:
        reason = result.error or f"exit {result.exit_status}"
        print(f"✗ {result.host}: {reason}")

    if quiet:
        return
    for line in result.stdout.rstrip().splitlines():
        print(f"    {line}")
    if not result.success:
        for line in result.stderr.rstrip().splitlines():
            print(f"    ! {line}")


def handle_run(args) -> int:
    """Handle run subcommand."""
    try:
        config = load_config(args)
        hosts = _select_hosts(config, args.hosts, args.role)
        if not hosts:
            print("Error: No hosts selected")
            return 1

        pool = open_pool(config)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    timeout = args.timeout or config.execution.command_timeout

    try:
        with cancel_on_interrupt() as cancel:
            if args.retry:
                results = _run_with_retry(pool, hosts, args.remote_command, cancel, timeout)
            else:
                results = pool.run_all(hosts, args.remote_command, cancel=cancel, timeout=timeout)
            if cancel.is_set():
                raise OperationCancelled("run cancelled")
    except OperationCancelled:
        print("Cancelled")
        return EXIT_CANCELLED
    finally:
        close_pool(pool)

    for result in results.values():
        _print_result(result, args.quiet)

    failed = [h for h, r in results.items() if not r.success]
    print()
    print(f"{len(results) - len(failed)}/{len(results)} succeeded")
    return 1 if failed else 0


def _run_with_retry(pool, hosts, command, cancel, timeout) -> Dict[str, ExecutionResult]:
    with ThreadPoolExecutor(max_workers=min(pool.max_workers, len(hosts))) as executor:
        futures = {
            host: executor.submit(
                pool.run_with_retry, host, command,
                RetryPolicy.default(f"[{host}] {command}"), cancel, timeout,
            )
            for host in hosts
        }
        return {host: future.result() for host, future in futures.items()}


def handle_geo(args) -> int:
    """Handle geo subcommand."""
    try:
        config = load_config(args)
        if config.node(args.host) is None:
            print(f"Error: {args.host} is not a configured node")
            return 1
        pool = open_pool(config)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    try:
        with cancel_on_interrupt() as cancel:
            geo = detect_geolocation(pool, args.host, cancel)
    except OperationCancelled:
        print("Cancelled")
        return EXIT_CANCELLED
    finally:
        close_pool(pool)

    print(f"Public IP: {geo.public_ip}")
    if geo.country:
        print(f"Location:  {geo.city}, {geo.region_name}, {geo.country} ({geo.country_code})")
        print(f"Timezone:  {geo.timezone}")
        print(f"ISP:       {geo.isp}")
    return 0
