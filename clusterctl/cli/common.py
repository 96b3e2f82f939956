"""
Shared CLI plumbing: config loading, logging setup, pool, Ctrl-C handling.

Path: clusterctl/cli/common.py
"""

import os
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from clusterctl.core.config import CONFIG_ENV, DEFAULT_CONFIG_FILE, Config
from clusterctl.core.errors import ClusterctlError
from clusterctl.core.log import LOG_LEVEL_ENV, init_logging
from clusterctl.ssh.executor import SSHExecutorPool


def load_config(args) -> Config:
    """Load config and perform the one-time logging setup."""
    config = Config.load(getattr(args, "config", None))

    level = getattr(args, "log_level", None) or os.environ.get(LOG_LEVEL_ENV) or config.logging.level
    init_logging(level=level, log_file=config.logging.file)
    return config


def open_pool(config: Config) -> SSHExecutorPool:
    """SSH pool for every configured node."""
    return SSHExecutorPool(
        config.auth_configs(),
        connect_timeout=config.execution.connect_timeout,
        max_workers=config.execution.max_workers,
    )


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """
    Yield a cancel event that SIGINT sets instead of raising KeyboardInterrupt.

    A second Ctrl-C falls back to the default handler.
    """
    cancel = threading.Event()

    def _handler(signum, frame):
        print("\nCancelling... (Ctrl-C again to abort)")
        cancel.set()
        signal.signal(signal.SIGINT, previous)

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not in the main thread
        yield cancel
        return

    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def close_pool(pool: SSHExecutorPool) -> None:
    try:
        pool.close()
    except ClusterctlError as e:
        print(f"Warning: {e}")


def handle_init(args) -> int:
    """Handle init subcommand."""
    path = args.config or Path(os.environ.get(CONFIG_ENV, str(DEFAULT_CONFIG_FILE)))
    config = Config(config_file=path.expanduser())

    if config.config_file.exists() and not args.force:
        print(f"Config already exists: {config.config_file}")
        print("Use --force to overwrite")
        return 1

    if config.config_file.exists():
        config.config_file.unlink()

    config.save_default_config()
    print(f"✓ Wrote {config.config_file}")
    print("Edit the nodes section, then run: clusterctl keygen --install")
    return 0
