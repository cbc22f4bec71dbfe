"""
Shared fixtures for the SecureRelay test suite.

Tests run in-process: the encryption service is reached through
LocalTransport unless a test starts a real TCP server.
"""

import pytest

from securerelay.client.encryption_client import EncryptionClient, LocalTransport
from securerelay.crypto.encryption_service import EncryptionService
from securerelay.crypto.key_store import KeyStore
from securerelay.server.encryption_server import EncryptionRequestHandler
from tests.helpers import MAX_PLAINTEXT, FakeClock


@pytest.fixture
def key_store():
    return KeyStore.generate()


@pytest.fixture
def service(key_store):
    return EncryptionService(key_store, max_plaintext_size=MAX_PLAINTEXT)


@pytest.fixture
def handler(service):
    return EncryptionRequestHandler(service)


@pytest.fixture
def sleeps():
    """Backoff delays requested by an EncryptionClient (no real sleeping)."""
    return []


@pytest.fixture
def local_client(handler, sleeps):
    return EncryptionClient(LocalTransport(handler), sleep=sleeps.append)


@pytest.fixture
def fake_clock():
    return FakeClock()
