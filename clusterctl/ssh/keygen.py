"""
SSH key management.

Path: clusterctl/ssh/keygen.py

Generates the Ed25519 key pair the controller uses to reach nodes,
persists it next to the configuration, and installs the public half on
remote hosts. Until the key lands in authorized_keys, dials fail with an
authentication error - which the connection layer treats as transient.
"""

import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from clusterctl.core.errors import CommandError

logger = logging.getLogger(__name__)

PRIVATE_KEY_FILE_NAME = "clusterctl_ed25519"
PUBLIC_KEY_FILE_NAME = "clusterctl_ed25519.pub"
KEY_COMMENT = "clusterctl"


@dataclass
class KeyPair:
    """An SSH key pair, optionally backed by files."""
    private_key: str  # OpenSSH PEM
    public_key: str   # authorized_keys line
    private_key_path: Optional[Path] = None
    public_key_path: Optional[Path] = None


def generate_key_pair(comment: str = KEY_COMMENT) -> KeyPair:
    """Generate a new Ed25519 key pair in OpenSSH formats."""
    key = Ed25519PrivateKey.generate()

    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode()

    if comment:
        public = f"{public} {comment}"

    return KeyPair(private_key=private_pem, public_key=public + "\n")


def ensure_key_pair(key_dir: Path, log: Optional[logging.Logger] = None) -> KeyPair:
    """
    Load the key pair from key_dir, generating it if absent.

    Files: <key_dir>/clusterctl_ed25519 (0600) and .pub (0644), dir 0700.
    """
    log = log or logger
    key_dir = Path(key_dir).expanduser()
    key_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    key_dir.chmod(0o700)

    private_path = key_dir / PRIVATE_KEY_FILE_NAME
    public_path = key_dir / PUBLIC_KEY_FILE_NAME

    if private_path.exists():
        log.info(f"SSH key pair already exists: {private_path}")
        return KeyPair(
            private_key=private_path.read_text(),
            public_key=public_path.read_text(),
            private_key_path=private_path,
            public_key_path=public_path,
        )

    log.info(f"generating new SSH key pair: {private_path}")
    pair = generate_key_pair()

    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(pair.private_key)

    public_path.write_text(pair.public_key)
    public_path.chmod(0o644)

    pair.private_key_path = private_path
    pair.public_key_path = public_path

    log.info(f"SSH key pair generated: {private_path}, {public_path}")
    return pair


def remove_key_pair(key_dir: Path, log: Optional[logging.Logger] = None) -> None:
    """Delete the key pair files. Missing files are fine."""
    log = log or logger
    key_dir = Path(key_dir).expanduser()

    for name in (PRIVATE_KEY_FILE_NAME, PUBLIC_KEY_FILE_NAME):
        path = key_dir / name
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            log.warning(f"failed to remove {path}: {e}")

    log.info(f"SSH key pair removed: {key_dir}")


def authorized_keys_command(public_key: str) -> str:
    """Shell snippet appending public_key to ~/.ssh/authorized_keys once."""
    key = shlex.quote(public_key.strip())
    return (
        "mkdir -p ~/.ssh && chmod 700 ~/.ssh && touch ~/.ssh/authorized_keys && "
        "chmod 600 ~/.ssh/authorized_keys && "
        f"(grep -qxF {key} ~/.ssh/authorized_keys || echo {key} >> ~/.ssh/authorized_keys)"
    )


def install_public_key(runner, host: str, public_key: str, cancel=None) -> None:
    """
    Idempotently authorize public_key on host.

    Raises:
        CommandError: The remote command failed.
    """
    result = runner.run(host, authorized_keys_command(public_key), cancel=cancel)
    if not result.success:
        raise CommandError(host, "install authorized key", result.exit_status, result.stderr, result.error)
    logger.info(f"✓ [{host}] public key installed")
