"""
Keepalived CLI handler.

Path: clusterctl/cli/keepalived.py

Handles: clusterctl keepalived plan | apply
"""

from clusterctl.cli.common import cancel_on_interrupt, close_pool, load_config, open_pool
from clusterctl.core.errors import ClusterctlError, OperationCancelled
from clusterctl.services.keepalived import (
    KeepalivedPlanner,
    install_and_configure,
    render_keepalived_conf,
)


def handle_keepalived(args) -> int:
    """Handle keepalived subcommands."""
    action = args.keepalived_command
    if action not in ("plan", "apply"):
        print("Usage: clusterctl keepalived plan|apply")
        return 1

    try:
        config = load_config(args)
        pool = open_pool(config)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    try:
        with cancel_on_interrupt() as cancel:
            deployment = KeepalivedPlanner(pool, config.keepalived).prepare(
                config.keepalived_nodes(), cancel
            )

            if not deployment.enabled:
                print("Keepalived is disabled or no nodes have it enabled")
                return 0

            _print_plan(deployment, show_configs=(action == "plan"))

            if action == "plan":
                return 0

            if not args.yes:
                response = input(f"\nConfigure keepalived on {len(deployment.nodes)} nodes? [y/N]: ")
                if response.strip().lower() not in ("y", "yes"):
                    print("Cancelled")
                    return 0

            install_and_configure(pool, deployment, cancel)
    except OperationCancelled:
        print("Cancelled")
        return 130
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1
    finally:
        close_pool(pool)

    print(f"\n✓ Keepalived configured on {len(deployment.nodes)} nodes (VIP {deployment.vip_cidr})")
    return 0


def _print_plan(deployment, show_configs: bool):
    print(f"VIP:       {deployment.vip_cidr}")
    print(f"Interface: {deployment.interface}")
    print(f"Router ID: {deployment.router_id}")
    print()
    print(f"  {'Node':<30} {'State':<8} {'Priority':>8}")
    print(f"  {'-' * 30} {'-' * 8} {'-' * 8}")
    for node in deployment.nodes:
        print(f"  {node.hostname:<30} {node.state:<8} {node.priority:>8}")

    if not show_configs:
        return

    for node in deployment.nodes:
        print()
        print(f"# ---- {node.hostname} ----")
        print(render_keepalived_conf(node, deployment), end="")
