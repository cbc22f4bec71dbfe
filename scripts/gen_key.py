#!/usr/bin/env python3
"""
Manage the encryption service key file.

This script:
- init:   creates a key file holding one active AES-256 key (version 1)
- rotate: retires the active key and adds a new active version
- purge:  permanently removes a retired key version
- list:   shows key versions and their status (never the key material)

The key file is written with 0o600 permissions. Restart the encryption
service after rotating or purging so it reloads the file.

Usage:
    python scripts/gen_key.py init [--out keys/relay_keys.json] [--force]
    python scripts/gen_key.py rotate
    python scripts/gen_key.py purge VERSION
    python scripts/gen_key.py list
"""

import sys
import argparse
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dotenv import load_dotenv

from securerelay.common.config import load_encryption_service_config
from securerelay.common.errors import RelayError
from securerelay.crypto.key_store import KeyStore, load_key_store, save_key_store


def init_keys(key_file: Path, force: bool = False) -> KeyStore:
    """
    Create a new key file with a single active key.

    Args:
        key_file: Destination path
        force: Overwrite an existing key file

    Returns:
        The new KeyStore
    """
    if key_file.exists() and not force:
        raise FileExistsError(f"{key_file} already exists (use --force to overwrite)")

    print("[*] Generating 256-bit AES key...")
    store = KeyStore.generate()
    save_key_store(store, key_file)
    print(f"[✓] Key version {store.current_key().version} saved to {key_file}")
    return store


def rotate_keys(key_file: Path) -> KeyStore:
    """Retire the active key and install a freshly generated one."""
    store = load_key_store(key_file)
    previous = store.current_key().version

    print("[*] Generating 256-bit AES key...")
    record = store.rotate(AESGCM.generate_key(bit_length=256))
    save_key_store(store, key_file)
    print(f"[✓] Key version {previous} retired, version {record.version} active")
    return store


def purge_key(key_file: Path, version: int) -> KeyStore:
    """Remove a retired key version from the key file."""
    store = load_key_store(key_file)
    store.purge(version)
    save_key_store(store, key_file)
    print(f"[✓] Key version {version} purged")
    print("[!] Messages encrypted under this version can no longer be decrypted")
    return store


def list_keys(key_file: Path) -> None:
    store = load_key_store(key_file)
    print(f"{'VERSION':>8}  {'STATUS':<8}  CREATED")
    for record in store.records():
        print(f"{record.version:>8}  {record.status.value:<8}  {record.created_at.isoformat()}")


def main():
    load_dotenv()
    try:
        default_key_file = load_encryption_service_config().key_file
    except RelayError as e:
        print(f"[✗] {e.kind.value}: {e.message}", file=sys.stderr)
        sys.exit(1)

    parser = argparse.ArgumentParser(description="Manage SecureRelay encryption keys")
    parser.add_argument(
        "--out",
        default=str(default_key_file),
        help=f"Key file path (default: ENCRYPTION_KEY_FILE or {default_key_file})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create a key file with one active key")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing key file")

    subparsers.add_parser("rotate", help="Retire the active key and add a new one")

    purge_parser = subparsers.add_parser("purge", help="Remove a retired key version")
    purge_parser.add_argument("version", type=int, help="Key version to purge")

    subparsers.add_parser("list", help="List key versions")

    args = parser.parse_args()
    key_file = Path(args.out)

    try:
        if args.command == "init":
            init_keys(key_file, force=args.force)
        elif args.command == "rotate":
            rotate_keys(key_file)
        elif args.command == "purge":
            purge_key(key_file, args.version)
        else:
            list_keys(key_file)

    except FileExistsError as e:
        print(f"[✗] {e}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError:
        print(f"[✗] Key file not found: {key_file} (run 'init' first)", file=sys.stderr)
        sys.exit(1)
    except RelayError as e:
        print(f"[✗] {e.kind.value}: {e.message}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"[✗] Error writing key file: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
