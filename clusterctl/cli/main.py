"""
clusterctl CLI - Main entry point.

Usage:
    clusterctl init                           # Write a default config file
    clusterctl detect-ip                      # Addresses of this machine
    clusterctl resolve [hosts...]             # Peer addresses of nodes
    clusterctl run "<command>" [--hosts ...]  # Fan a command out to nodes
    clusterctl keepalived plan|apply
    clusterctl keygen [--dir DIR] [--remove] [--install]
    clusterctl geo <host>
"""

import argparse
import sys
from pathlib import Path

from clusterctl import __version__


def main(argv=None):
    """Main CLI entry point."""

    parser = argparse.ArgumentParser(
        prog="clusterctl",
        description="Converge multi-host container clusters over SSH",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init        Write a default config file
  detect-ip   Show the primary/cluster address of this machine
  resolve     Resolve the address peers should use for each node
  run         Run a shell command on nodes concurrently
  keepalived  Plan or apply virtual-IP failover
  keygen      Manage the controller SSH key pair
  geo         Show public IP and location of a node

Examples:
  clusterctl init
  clusterctl detect-ip --overlay netbird
  clusterctl resolve
  clusterctl run "docker info --format '{{.Swarm.LocalNodeState}}'"
  clusterctl run "uptime" --hosts 10.0.0.11 10.0.0.12
  clusterctl keepalived plan
  clusterctl keepalived apply
  clusterctl keygen --install

Use 'clusterctl <command> --help' for more information on a command.
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file (default: $CLUSTERCTL_CONFIG or ~/.clusterctl/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        help="debug, info, warn or error (default: $CLUSTERCTL_LOG_LEVEL, then config)",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    init_parser = subparsers.add_parser(
        "init",
        help="Write a default config file",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite an existing config file",
    )

    detect_parser = subparsers.add_parser(
        "detect-ip",
        help="Show the primary/cluster address of this machine",
    )
    detect_parser.add_argument(
        "--overlay",
        help="Overlay provider to query first (netbird, tailscale, none)",
    )

    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Resolve node addresses",
        description="Resolve the address each node should be referenced by "
                    "(overlay hostname > overlay IP > hostname > best IP)",
    )
    resolve_parser.add_argument(
        "hosts",
        nargs="*",
        help="Hosts to resolve (default: all configured nodes)",
    )

    run_parser = subparsers.add_parser(
        "run",
        help="Run a shell command on nodes",
    )
    _setup_run_parser(run_parser)

    keepalived_parser = subparsers.add_parser(
        "keepalived",
        help="Plan or apply virtual-IP failover",
    )
    _setup_keepalived_parser(keepalived_parser)

    keygen_parser = subparsers.add_parser(
        "keygen",
        help="Manage the controller SSH key pair",
    )
    _setup_keygen_parser(keygen_parser)

    geo_parser = subparsers.add_parser(
        "geo",
        help="Show public IP and location of a node",
    )
    geo_parser.add_argument("host", help="Configured node host")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    # Dispatch to subcommand handler
    if args.command == "init":
        from clusterctl.cli.common import handle_init

        return handle_init(args)
    elif args.command == "detect-ip":
        from clusterctl.cli.nodes import handle_detect_ip

        return handle_detect_ip(args)
    elif args.command == "resolve":
        from clusterctl.cli.nodes import handle_resolve

        return handle_resolve(args)
    elif args.command == "run":
        from clusterctl.cli.nodes import handle_run

        return handle_run(args)
    elif args.command == "keepalived":
        from clusterctl.cli.keepalived import handle_keepalived

        return handle_keepalived(args)
    elif args.command == "keygen":
        from clusterctl.cli.keygen import handle_keygen

        return handle_keygen(args)
    elif args.command == "geo":
        from clusterctl.cli.nodes import handle_geo

        return handle_geo(args)
    else:
        parser.print_help()
        return 1


def _setup_run_parser(parser: argparse.ArgumentParser):
    """Set up run subcommand parser."""
    parser.add_argument(
        "remote_command",
        metavar="command",
        help="Shell command to run on every host",
    )
    parser.add_argument(
        "--hosts",
        nargs="+",
        help="Hosts to target (default: all configured nodes)",
    )
    parser.add_argument(
        "--role",
        choices=["manager", "worker"],
        help="Only target nodes with this role",
    )
    parser.add_argument(
        "--timeout", "-t",
        type=float,
        help="Per-command timeout in seconds",
    )
    parser.add_argument(
        "--retry",
        action="store_true",
        help="Retry failed attempts (only for idempotent commands)",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Only print the summary",
    )


def _setup_keepalived_parser(parser: argparse.ArgumentParser):
    """Set up keepalived subcommand parser."""
    subparsers = parser.add_subparsers(dest="keepalived_command", metavar="<action>")

    subparsers.add_parser(
        "plan",
        help="Detect interface/VIP and print the config for each node",
    )

    apply_parser = subparsers.add_parser(
        "apply",
        help="Install and configure keepalived on every enabled node",
    )
    apply_parser.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )


def _setup_keygen_parser(parser: argparse.ArgumentParser):
    """Set up keygen subcommand parser."""
    parser.add_argument(
        "--dir", "-d",
        type=Path,
        help="Key directory (default: ssh.key_dir from config)",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--remove",
        action="store_true",
        help="Delete the key pair",
    )
    action.add_argument(
        "--install",
        action="store_true",
        help="Authorize the public key on every configured node",
    )


if __name__ == "__main__":
    sys.exit(main())
