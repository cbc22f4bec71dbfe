"""
Live encryption RPC tests.

Starts a real EncryptionServer on an ephemeral port and talks to it through
SocketTransport, so framing, timeouts and error mapping run over TCP.

Test Coverage:
- Encrypt/decrypt round-trip over TCP
- Tampered envelope rejected with AUTHENTICATION_FAILURE
- Malformed frames and unknown request types answered with MALFORMED_MESSAGE
- Payloads at the largest configurable size round-trip whatever their
  characters (control characters, emoji)
- Refused connection and unresponsive peer exhaust retries and surface as
  SERVICE_UNAVAILABLE
"""

import socket
import struct

import pytest

from securerelay.client.circuit_breaker import CircuitBreaker
from securerelay.client.encryption_client import EncryptionClient, SocketTransport
from securerelay.common.config import MAX_PLAINTEXT_LIMIT
from securerelay.common.errors import AuthenticationFailure, PayloadTooLarge, ServiceUnavailable
from securerelay.common.framing import recv_frame, send_frame
from securerelay.common.protocol import EncryptionEnvelope
from securerelay.crypto.encryption_service import EncryptionService
from securerelay.server.encryption_server import EncryptionRequestHandler, EncryptionServer
from tests.helpers import MAX_PLAINTEXT, flip_bit


@pytest.fixture
def server(handler):
    encryption_server = EncryptionServer(handler, "127.0.0.1", 0)
    encryption_server.start()
    yield encryption_server
    encryption_server.shutdown()


def socket_client(host, port, sleeps, timeout=2.0, max_retries=2):
    return EncryptionClient(
        SocketTransport(host, port, timeout=timeout),
        max_retries=max_retries,
        breaker=CircuitBreaker(failure_threshold=100),
        sleep=sleeps.append,
    )


class TestEncryptionRpc:
    def test_round_trip_over_tcp(self, server, sleeps):
        client = socket_client(*server.address, sleeps)

        envelope = client.encrypt_message("hello over tcp", associated_data=b"alice")
        assert client.decrypt_message(envelope.encode(), associated_data=b"alice") == b"hello over tcp"
        assert sleeps == []

    def test_max_size_payload(self, server, sleeps):
        client = socket_client(*server.address, sleeps)
        plaintext = b"\x07" * MAX_PLAINTEXT

        envelope = client.encrypt_message(plaintext)
        assert client.decrypt_message(envelope.encode()) == plaintext

    def test_payload_too_large(self, server, sleeps):
        client = socket_client(*server.address, sleeps)
        with pytest.raises(PayloadTooLarge):
            client.encrypt_message(b"x" * (MAX_PLAINTEXT + 1))
        assert sleeps == []

    def test_tampered_envelope(self, server, sleeps):
        client = socket_client(*server.address, sleeps)
        envelope = client.encrypt_message("hello over tcp", associated_data=b"alice")
        tampered = EncryptionEnvelope(envelope.key_version, envelope.nonce, envelope.ciphertext, flip_bit(envelope.tag))

        with pytest.raises(AuthenticationFailure):
            client.decrypt_message(tampered.encode(), associated_data=b"alice")

    def test_malformed_frame(self, server):
        with socket.create_connection(server.address, timeout=2.0) as sock:
            payload = b"not json at all"
            sock.sendall(struct.pack(">I", len(payload)) + payload)
            response = recv_frame(sock)

        assert response["type"] == "ERROR"
        assert response["error"] == "MALFORMED_MESSAGE"

    def test_unknown_request_type(self, server):
        with socket.create_connection(server.address, timeout=2.0) as sock:
            send_frame(sock, {"type": "ROTATE_KEYS"})
            response = recv_frame(sock)

        assert response["error"] == "MALFORMED_MESSAGE"

    def test_several_requests_on_one_connection(self, server):
        with socket.create_connection(server.address, timeout=2.0) as sock:
            for text in ("one", "two"):
                send_frame(sock, {"type": "ENCRYPT", "message": text, "encoding": "utf-8"})
                assert recv_frame(sock)["type"] == "ENCRYPT_RESULT"


class TestUnavailableService:
    def test_connection_refused(self, sleeps):
        placeholder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        placeholder.bind(("127.0.0.1", 0))
        port = placeholder.getsockname()[1]
        placeholder.close()

        client = socket_client("127.0.0.1", port, sleeps, max_retries=2)
        with pytest.raises(ServiceUnavailable) as exc_info:
            client.encrypt_message("hello")

        assert exc_info.value.context["cause"] == "NETWORK_ERROR"
        assert len(sleeps) == 2

    def test_unresponsive_service_times_out(self, sleeps):
        # Accepts connections (via the backlog) but never answers
        silent = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        silent.bind(("127.0.0.1", 0))
        silent.listen(8)
        try:
            client = socket_client(*silent.getsockname(), sleeps, timeout=0.2, max_retries=1)
            with pytest.raises(ServiceUnavailable):
                client.encrypt_message("hello")
            assert len(sleeps) == 1
        finally:
            silent.close()


class TestLargestConfigurablePayload:
    @pytest.fixture
    def large_server(self, key_store):
        service = EncryptionService(key_store, max_plaintext_size=MAX_PLAINTEXT_LIMIT)
        encryption_server = EncryptionServer(EncryptionRequestHandler(service), "127.0.0.1", 0)
        encryption_server.start()
        yield encryption_server
        encryption_server.shutdown()

    @pytest.mark.parametrize(
        "plaintext",
        [
            b"\x01" * MAX_PLAINTEXT_LIMIT,
            "\U0001f600".encode("utf-8") * (MAX_PLAINTEXT_LIMIT // 4),
        ],
        ids=["control-characters", "emoji"],
    )
    def test_round_trip_at_limit(self, large_server, sleeps, plaintext):
        client = socket_client(*large_server.address, sleeps, timeout=10.0)

        envelope = client.encrypt_message(plaintext, associated_data=b"alice")
        assert client.decrypt_message(envelope.encode(), associated_data=b"alice") == plaintext
        assert sleeps == []
        assert client.breaker.consecutive_failures == 0
