"""
Keygen CLI handler.

Path: clusterctl/cli/keygen.py

Handles: clusterctl keygen [--dir DIR] [--remove | --install]
"""

from concurrent.futures import ThreadPoolExecutor, as_completed

from clusterctl.cli.common import cancel_on_interrupt, close_pool, load_config, open_pool
from clusterctl.core.errors import ClusterctlError, OperationCancelled
from clusterctl.ssh.keygen import ensure_key_pair, install_public_key, remove_key_pair


def handle_keygen(args) -> int:
    """Handle keygen subcommand."""
    try:
        config = load_config(args)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    key_dir = args.dir or config.ssh.key_dir

    if args.remove:
        remove_key_pair(key_dir)
        print(f"✓ Removed key pair from {key_dir}")
        return 0

    pair = ensure_key_pair(key_dir)
    print(f"Private key: {pair.private_key_path}")
    print(f"Public key:  {pair.public_key_path}")
    print(pair.public_key)

    if not args.install:
        return 0

    if not config.nodes:
        print("Error: No nodes configured")
        return 1

    try:
        pool = open_pool(config)
    except ClusterctlError as e:
        print(f"Error: {e}")
        return 1

    failed = 0
    try:
        with cancel_on_interrupt() as cancel:
            with ThreadPoolExecutor(max_workers=min(pool.max_workers, len(config.nodes))) as executor:
                futures = {
                    executor.submit(install_public_key, pool, node.host, pair.public_key, cancel): node.host
                    for node in config.nodes
                }
                for future in as_completed(futures):
                    host = futures[future]
                    try:
                        future.result()
                    except OperationCancelled:
                        raise
                    except ClusterctlError as e:
                        failed += 1
                        print(f"✗ {host}: {e}")
    except OperationCancelled:
        print("Cancelled")
        return 130
    finally:
        close_pool(pool)

    print(f"\nPublic key installed on {len(config.nodes) - failed}/{len(config.nodes)} nodes")
    return 1 if failed else 0
