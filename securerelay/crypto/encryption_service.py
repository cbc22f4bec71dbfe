"""
Authenticated encryption of chat payloads (AES-256-GCM).

Algorithm: AES-256, Mode: GCM, Nonce: random 12 bytes, Tag: 16 bytes
Associated data: key version (4 bytes, big-endian) || caller associated data

The whole plaintext is encrypted under a single nonce and verified by a
single tag; there is no block truncation or padding, so payloads of any
length up to max_plaintext_size round-trip exactly.

Nonces come from the OS CSPRNG. With 96-bit random nonces the collision
probability stays negligible well beyond the message volume of one key
version; rotate keys to bound it further.

Usage:
    service = EncryptionService(KeyStore.generate())
    envelope = service.encrypt(EncryptionRequest(b"hello", b"alice"))
    plaintext = service.decrypt(envelope, b"alice")
"""

import logging
import secrets
import struct
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from securerelay.common.config import DEFAULT_MAX_PLAINTEXT_BYTES
from securerelay.common.errors import AuthenticationFailure, PayloadTooLarge
from securerelay.common.protocol import EncryptionEnvelope, EncryptionRequest, NONCE_SIZE, TAG_SIZE
from securerelay.crypto.key_store import KeyStore


logger = logging.getLogger(__name__)
security_logger = logging.getLogger("securerelay.security")


def _associated_data(key_version: int, associated_data: Optional[bytes]) -> bytes:
    return struct.pack(">I", key_version) + (associated_data or b"")


class EncryptionService:
    """
    Stateless encrypt/decrypt handler over a KeyStore.

    Each call is a pure function of its inputs and the current KeyStore
    snapshot; the service holds no per-message or per-session state.
    """

    def __init__(self, key_store: KeyStore, max_plaintext_size: int = DEFAULT_MAX_PLAINTEXT_BYTES):
        if max_plaintext_size < 0:
            raise ValueError(f"max_plaintext_size must be >= 0, got {max_plaintext_size}")
        self.key_store = key_store
        self.max_plaintext_size = max_plaintext_size

    def encrypt(self, request: EncryptionRequest) -> EncryptionEnvelope:
        """
        Encrypt a plaintext under the active key.

        Args:
            request: Plaintext and optional associated data

        Returns:
            EncryptionEnvelope with key version, nonce, ciphertext and tag

        Raises:
            PayloadTooLarge: If the plaintext exceeds max_plaintext_size
            ConfigurationError: If no active key is configured
        """
        plaintext = request.plaintext
        if len(plaintext) > self.max_plaintext_size:
            raise PayloadTooLarge(
                f"Plaintext is {len(plaintext)} bytes (max {self.max_plaintext_size})",
                context={"size": len(plaintext), "max": self.max_plaintext_size},
            )

        record = self.key_store.current_key()
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(record.key_material).encrypt(
            nonce, plaintext, _associated_data(record.version, request.associated_data)
        )

        logger.debug(f"Encrypted {len(plaintext)} bytes under key version {record.version}")

        # cryptography appends the tag to the ciphertext
        return EncryptionEnvelope(
            key_version=record.version,
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
        )

    def decrypt(self, envelope: EncryptionEnvelope, associated_data: Optional[bytes] = None) -> bytes:
        """
        Verify and decrypt an envelope.

        Args:
            envelope: Envelope produced by encrypt()
            associated_data: Same associated data passed at encryption time

        Returns:
            The original plaintext, only if the integrity check verifies

        Raises:
            KeyUnavailable: If the key version is unknown or purged
            AuthenticationFailure: If ciphertext, tag, nonce, key version or
                associated data were modified
        """
        record = self.key_store.key_by_version(envelope.key_version)

        if len(envelope.nonce) != NONCE_SIZE or len(envelope.tag) != TAG_SIZE:
            security_logger.warning(
                f"SECURITY: malformed envelope rejected (key_version={envelope.key_version}, "
                f"nonce={len(envelope.nonce)}B, tag={len(envelope.tag)}B)"
            )
            raise AuthenticationFailure("Envelope nonce or tag has invalid length")

        try:
            return AESGCM(record.key_material).decrypt(
                envelope.nonce,
                envelope.ciphertext + envelope.tag,
                _associated_data(envelope.key_version, associated_data),
            )
        except InvalidTag:
            security_logger.warning(
                f"SECURITY: authentication failure (key_version={envelope.key_version}, "
                f"ciphertext={len(envelope.ciphertext)}B) - possible tampering"
            )
            raise AuthenticationFailure("Envelope failed integrity verification") from None
