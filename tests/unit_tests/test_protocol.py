"""
Protocol, framing and error taxonomy tests.

Test Coverage:
- Binary envelope layout (format | key version | nonce | ciphertext | tag)
- Malformed envelopes, base64 and JSON are rejected with MalformedMessage
- ENCRYPT requests always carry base64, so control characters and emoji
  do not inflate the frame
- Length-prefixed framing over a socket pair
- RPC error responses map back onto the right RelayError and retry class
"""

import socket
import struct

import pytest

from securerelay.common.errors import (
    AuthenticationFailure,
    ErrorKind,
    MalformedMessage,
    NetworkError,
    PayloadTooLarge,
    ServiceUnavailable,
    error_from_dict,
)
from securerelay.common.framing import MAX_FRAME_SIZE, encode_frame, recv_frame, send_frame
from securerelay.common.protocol import (
    ENVELOPE_FORMAT,
    ChatBroadcastEvent,
    ChatMessage,
    EncryptionEnvelope,
    EncryptionFailedEvent,
    b64decode,
    deserialize_message,
    encrypt_request_dict,
    serialize_message,
)


NONCE = bytes(range(12))
TAG = bytes(range(100, 116))


class TestEncryptionEnvelope:
    def test_wire_layout(self):
        envelope = EncryptionEnvelope(key_version=7, nonce=NONCE, ciphertext=b"abc", tag=TAG)
        data = envelope.to_bytes()

        assert data[0] == ENVELOPE_FORMAT
        assert struct.unpack(">I", data[1:5])[0] == 7
        assert data[5:17] == NONCE
        assert data[17:20] == b"abc"
        assert data[20:] == TAG
        assert EncryptionEnvelope.decode(envelope.encode()) == envelope

    def test_empty_ciphertext(self):
        envelope = EncryptionEnvelope(key_version=1, nonce=NONCE, ciphertext=b"", tag=TAG)
        assert EncryptionEnvelope.from_bytes(envelope.to_bytes()).ciphertext == b""

    def test_truncated_envelope(self):
        data = EncryptionEnvelope(1, NONCE, b"", TAG).to_bytes()
        with pytest.raises(MalformedMessage):
            EncryptionEnvelope.from_bytes(data[:-1])

    def test_unknown_format(self):
        data = bytearray(EncryptionEnvelope(1, NONCE, b"abc", TAG).to_bytes())
        data[0] = 99
        with pytest.raises(MalformedMessage):
            EncryptionEnvelope.from_bytes(bytes(data))

    def test_invalid_base64(self):
        with pytest.raises(MalformedMessage):
            EncryptionEnvelope.decode("not base64!!")

    def test_b64decode_rejects_non_string(self):
        with pytest.raises(MalformedMessage):
            b64decode(None)


class TestMessages:
    def test_chat_message_repr_hides_plaintext(self):
        message = ChatMessage("alice", 1, b"top secret", 1700000000000)
        assert "top secret" not in repr(message)
        assert "size=10" in repr(message)

    def test_chat_event_dict(self):
        event = ChatBroadcastEvent(sender="alice", message="AQID", timestamp=5, seqno=3)
        assert event.to_dict() == {
            "type": "CHAT",
            "sender": "alice",
            "message": "AQID",
            "timestamp": 5,
            "seqno": 3,
        }

    def test_encryption_failed_event_dict(self):
        event = EncryptionFailedEvent(error=ErrorKind.PAYLOAD_TOO_LARGE.value, seqno=2, timestamp=5)
        assert event.to_dict()["type"] == "ENCRYPTION_FAILED"
        assert event.to_dict()["error"] == "PAYLOAD_TOO_LARGE"

    def test_encrypt_request_text(self):
        request = encrypt_request_dict("héllo".encode("utf-8"), b"alice")
        assert request["type"] == "ENCRYPT"
        assert request["encoding"] == "base64"
        assert b64decode(request["message"]) == "héllo".encode("utf-8")
        assert b64decode(request["aad"]) == b"alice"

    @pytest.mark.parametrize("plaintext", [b"\x01" * 3000, "\U0001f600".encode("utf-8") * 750])
    def test_encrypt_request_size_independent_of_content(self, plaintext):
        request = encrypt_request_dict(plaintext)
        assert len(serialize_message(request)) < len(plaintext) * 4 // 3 + 100

    def test_encrypt_request_binary(self):
        request = encrypt_request_dict(b"\xff\xfe\x00")
        assert request["encoding"] == "base64"
        assert b64decode(request["message"]) == b"\xff\xfe\x00"
        assert "aad" not in request

    def test_serialize_is_compact(self):
        assert serialize_message({"type": "MSG", "message": "hi"}) == '{"type":"MSG","message":"hi"}'

    @pytest.mark.parametrize("payload", ["{bad json", "[1, 2]", '{"message": "no type"}'])
    def test_deserialize_rejects(self, payload):
        with pytest.raises(MalformedMessage):
            deserialize_message(payload)


class TestFraming:
    @pytest.fixture
    def sockets(self):
        left, right = socket.socketpair()
        left.settimeout(2.0)
        right.settimeout(2.0)
        yield left, right
        left.close()
        right.close()

    def test_send_and_receive(self, sockets):
        left, right = sockets
        send_frame(left, {"type": "MSG", "message": "first"})
        send_frame(left, ChatBroadcastEvent("alice", "AQID", 1, 1))

        assert recv_frame(right) == {"type": "MSG", "message": "first"}
        assert recv_frame(right)["type"] == "CHAT"

    def test_oversized_length_prefix(self, sockets):
        left, right = sockets
        left.sendall(struct.pack(">I", MAX_FRAME_SIZE + 1))
        with pytest.raises(MalformedMessage):
            recv_frame(right)

    def test_empty_frame(self, sockets):
        left, right = sockets
        left.sendall(struct.pack(">I", 0))
        with pytest.raises(MalformedMessage):
            recv_frame(right)

    def test_peer_closed_mid_frame(self, sockets):
        left, right = sockets
        left.sendall(struct.pack(">I", 50) + b'{"type"')
        left.close()
        with pytest.raises(ConnectionError):
            recv_frame(right)

    def test_oversized_send_rejected(self, sockets):
        left, _ = sockets
        with pytest.raises(MalformedMessage):
            send_frame(left, {"type": "MSG", "message": "x" * MAX_FRAME_SIZE})

    def test_encode_frame_reports_size(self):
        with pytest.raises(MalformedMessage) as exc_info:
            encode_frame({"type": "MSG", "message": "\u0001" * (MAX_FRAME_SIZE // 6 + 1)})
        assert exc_info.value.context["frame_size"] > MAX_FRAME_SIZE


class TestErrorTaxonomy:
    def test_remote_service_unavailable_is_retryable(self):
        error = error_from_dict({"type": "ERROR", "error": "SERVICE_UNAVAILABLE", "message": "busy"})
        assert isinstance(error, ServiceUnavailable)
        assert error.retryable

    def test_local_service_unavailable_is_terminal(self):
        assert not ServiceUnavailable("circuit open").retryable

    def test_network_error_is_retryable(self):
        assert NetworkError("refused").retryable

    @pytest.mark.parametrize(
        "kind, error_class",
        [
            ("AUTHENTICATION_FAILURE", AuthenticationFailure),
            ("PAYLOAD_TOO_LARGE", PayloadTooLarge),
            ("MALFORMED_MESSAGE", MalformedMessage),
        ],
    )
    def test_terminal_kinds(self, kind, error_class):
        error = error_from_dict({"type": "ERROR", "error": kind, "message": "nope"})
        assert isinstance(error, error_class)
        assert not error.retryable
        assert error.message == "nope"

    def test_unknown_kind(self):
        error = error_from_dict({"type": "ERROR", "error": "WHAT", "message": "?"})
        assert isinstance(error, MalformedMessage)

    def test_to_dict(self):
        assert PayloadTooLarge("too big").to_dict() == {
            "type": "ERROR",
            "error": "PAYLOAD_TOO_LARGE",
            "message": "too big",
        }
