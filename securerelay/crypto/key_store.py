"""
Versioned symmetric key store.

Holds the AES-256 keys that protect in-flight chat payloads. Exactly one key
is active at a time; rotation retires it and installs a new active version.
Retired keys stay available for decryption until explicitly purged.

KeyRecords are immutable. Rotation builds new records and swaps them in under
a lock, so a reader always observes either the old or the new record, never a
half-updated one.

Key file format (JSON, written with 0o600 permissions):
    {"keys": [{"version": 1, "key": "<base64>", "created_at": "<ISO 8601>",
               "status": "retired"}, ...]}

Usage:
    store = KeyStore.generate()
    record = store.current_key()
    store.rotate(AESGCM.generate_key(bit_length=256))
"""

import json
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from securerelay.common.errors import ConfigurationError, KeyUnavailable, MalformedMessage
from securerelay.common.protocol import b64encode, b64decode


logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
MAX_KEY_VERSION = 2**32 - 1  # key version travels as uint32 in the envelope


class KeyStatus(str, Enum):
    ACTIVE = "active"
    RETIRED = "retired"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class KeyRecord:
    """
    One version of the service key.

    Fields:
        version: Monotonically increasing key version (>= 1)
        key_material: 32 bytes of AES-256 key material
        created_at: UTC creation time
        status: KeyStatus.ACTIVE or KeyStatus.RETIRED
    """

    version: int
    key_material: bytes
    created_at: datetime
    status: KeyStatus

    @property
    def is_active(self) -> bool:
        return self.status == KeyStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "key": b64encode(self.key_material),
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KeyRecord":
        try:
            record = cls(
                version=int(data["version"]),
                key_material=b64decode(data["key"]),
                created_at=datetime.fromisoformat(data["created_at"]),
                status=KeyStatus(data["status"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid key record: {e}") from e
        except MalformedMessage as e:
            raise ConfigurationError(f"Invalid key material: {e}") from e
        _validate_record(record)
        return record

    def __repr__(self) -> str:
        # Never print key material
        return f"KeyRecord(version={self.version}, status={self.status.value}, created_at={self.created_at.isoformat()})"


def _validate_material(key_material: bytes) -> None:
    if not isinstance(key_material, (bytes, bytearray)):
        raise ConfigurationError(f"Key material must be bytes, got {type(key_material).__name__}")
    if len(key_material) != KEY_SIZE:
        raise ConfigurationError(f"Key material must be {KEY_SIZE} bytes, got {len(key_material)}")


def _validate_record(record: KeyRecord) -> None:
    _validate_material(record.key_material)
    if not 1 <= record.version <= MAX_KEY_VERSION:
        raise ConfigurationError(f"Key version out of range: {record.version}")


class KeyStore:
    """
    Thread-safe, in-memory store of versioned keys.

    Reads take the lock only long enough to fetch an immutable record.
    Mutations (rotate, purge) hold it for the whole swap.
    """

    def __init__(self, records: Optional[Iterable[KeyRecord]] = None):
        self._lock = threading.Lock()
        self._records: Dict[int, KeyRecord] = {}
        self._active_version: Optional[int] = None

        for record in records or ():
            _validate_record(record)
            if record.version in self._records:
                raise ConfigurationError(f"Duplicate key version: {record.version}")
            if record.is_active:
                if self._active_version is not None:
                    raise ConfigurationError(
                        f"More than one active key (versions {self._active_version} and {record.version})"
                    )
                self._active_version = record.version
            self._records[record.version] = record

    @classmethod
    def generate(cls) -> "KeyStore":
        """Create a store holding one freshly generated active key (version 1)."""
        record = KeyRecord(
            version=1,
            key_material=AESGCM.generate_key(bit_length=256),
            created_at=datetime.now(timezone.utc),
            status=KeyStatus.ACTIVE,
        )
        return cls([record])

    def current_key(self) -> KeyRecord:
        """
        Return the active key.

        Raises:
            ConfigurationError: If no key is active (service misconfiguration)
        """
        with self._lock:
            if self._active_version is None:
                raise ConfigurationError("No active encryption key configured")
            return self._records[self._active_version]

    def key_by_version(self, version: int) -> KeyRecord:
        """
        Return the key with the given version, active or retired.

        Raises:
            KeyUnavailable: If the version is unknown or was purged
        """
        with self._lock:
            record = self._records.get(version)
        if record is None:
            raise KeyUnavailable(f"Key version {version} is not available", context={"key_version": version})
        return record

    def rotate(self, new_material: bytes) -> KeyRecord:
        """
        Retire the active key and install new_material as the next active version.

        Retired keys are never deleted here; use purge().

        Args:
            new_material: 32 bytes of fresh AES-256 key material

        Returns:
            The new active KeyRecord

        Raises:
            ConfigurationError: If the key material is invalid
        """
        _validate_material(new_material)

        with self._lock:
            next_version = max(self._records, default=0) + 1
            if next_version > MAX_KEY_VERSION:
                raise ConfigurationError("Key version space exhausted")

            new_record = KeyRecord(
                version=next_version,
                key_material=bytes(new_material),
                created_at=datetime.now(timezone.utc),
                status=KeyStatus.ACTIVE,
            )

            records = dict(self._records)
            if self._active_version is not None:
                records[self._active_version] = replace(
                    records[self._active_version], status=KeyStatus.RETIRED
                )
            records[next_version] = new_record

            previous = self._active_version
            self._records = records
            self._active_version = next_version

        logger.info(f"Key rotated: version {previous} retired, version {next_version} active")
        return new_record

    def purge(self, version: int) -> None:
        """
        Permanently remove a retired key.

        Envelopes encrypted under the purged version can no longer be decrypted.

        Raises:
            KeyUnavailable: If the version does not exist
            ConfigurationError: If the version is the active key
        """
        with self._lock:
            if version not in self._records:
                raise KeyUnavailable(f"Key version {version} is not available", context={"key_version": version})
            if version == self._active_version:
                raise ConfigurationError(f"Refusing to purge active key version {version}")

            records = dict(self._records)
            del records[version]
            self._records = records

        logger.info(f"Key version {version} purged")

    def records(self) -> List[KeyRecord]:
        """Snapshot of all records ordered by version."""
        with self._lock:
            return [self._records[v] for v in sorted(self._records)]

    def versions(self) -> List[int]:
        with self._lock:
            return sorted(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def load_key_store(path: Union[str, Path]) -> KeyStore:
    """
    Load a KeyStore from a JSON key file.

    Raises:
        FileNotFoundError: If the key file does not exist
        ConfigurationError: If the file is malformed
    """
    path = Path(path)
    with open(path, "r") as f:
        try:
            document = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Key file {path} is not valid JSON: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
        raise ConfigurationError(f"Key file {path} must contain a 'keys' list")

    store = KeyStore(KeyRecord.from_dict(entry) for entry in document["keys"])
    logger.info(f"Loaded {len(store)} key(s) from {path}")
    return store


def save_key_store(store: KeyStore, path: Union[str, Path]) -> None:
    """
    Write a KeyStore to a JSON key file readable only by the owner.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    document = {"keys": [record.to_dict() for record in store.records()]}
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(document, indent=2))
    tmp_path.chmod(0o600)  # Restrict permissions on key material
    tmp_path.replace(path)
    logger.info(f"Saved {len(document['keys'])} key(s) to {path}")
