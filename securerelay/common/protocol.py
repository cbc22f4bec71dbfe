"""
Protocol message definitions for SecureRelay.

Defines dataclasses for chat messages, encryption envelopes and the events
pushed to sessions, plus JSON (de)serialization helpers. All messages travel
as length-prefixed JSON frames over TCP (see securerelay.common.framing).

Envelope wire format (base64 of):
    [1 byte: format] [4 bytes: key version, big-endian] [12 bytes: nonce]
    [N bytes: ciphertext] [16 bytes: GCM tag]
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional
import base64
import binascii
import json
import struct
import time

from securerelay.common.errors import ErrorKind, MalformedMessage


ENVELOPE_FORMAT = 1
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16  # 128-bit GCM tag
_HEADER = struct.Struct(">BI")


class MessageType(Enum):
    """Message types in the SecureRelay protocol."""

    # Encryption RPC
    ENCRYPT = "ENCRYPT"
    ENCRYPT_RESULT = "ENCRYPT_RESULT"
    DECRYPT = "DECRYPT"
    DECRYPT_RESULT = "DECRYPT_RESULT"
    ERROR = "ERROR"

    # Relay
    WELCOME = "WELCOME"
    MSG = "MSG"
    LEAVE = "LEAVE"
    CHAT = "CHAT"
    ENCRYPTION_FAILED = "ENCRYPTION_FAILED"

    def __str__(self) -> str:
        return self.value


def now_ms() -> int:
    """Current time in milliseconds since the UNIX epoch."""
    return int(time.time() * 1000)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strictly decode base64 text.

    Raises: MalformedMessage if the text is not valid base64
    """
    if not isinstance(text, str):
        raise MalformedMessage(f"Expected base64 string, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise MalformedMessage(f"Invalid base64: {e}") from e


@dataclass(frozen=True)
class ChatMessage:
    """
    Inbound chat message as accepted by the Transport Gateway.

    Fields:
        sender_id: Connection id of the sending session
        sequence_no: Per-sender sequence number (starts at 1)
        plaintext: Raw message bytes (never logged)
        timestamp: Receipt time in milliseconds (UNIX epoch)
    """

    sender_id: str
    sequence_no: int
    plaintext: bytes
    timestamp: int

    def __repr__(self) -> str:
        return (
            f"ChatMessage(sender_id={self.sender_id!r}, sequence_no={self.sequence_no}, "
            f"size={len(self.plaintext)}, timestamp={self.timestamp})"
        )


@dataclass(frozen=True)
class EncryptionRequest:
    """Plaintext plus optional associated data bound into the tag."""

    plaintext: bytes
    associated_data: Optional[bytes] = None

    def __repr__(self) -> str:
        return f"EncryptionRequest(size={len(self.plaintext)})"


@dataclass(frozen=True)
class EncryptionEnvelope:
    """
    Authenticated ciphertext of one message.

    Fields:
        key_version: Version of the KeyRecord used for encryption
        nonce: 12-byte GCM nonce, unique per key version
        ciphertext: Encrypted payload, same length as the plaintext
        tag: 16-byte GCM authentication tag
    """

    key_version: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        """Serialize to the binary envelope format."""
        return _HEADER.pack(ENVELOPE_FORMAT, self.key_version) + self.nonce + self.ciphertext + self.tag

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptionEnvelope":
        """
        Parse the binary envelope format.

        Raises: MalformedMessage if the data is truncated or the format byte is unknown
        """
        minimum = _HEADER.size + NONCE_SIZE + TAG_SIZE
        if len(data) < minimum:
            raise MalformedMessage(f"Envelope too short: {len(data)} bytes (minimum {minimum})")

        fmt, key_version = _HEADER.unpack_from(data)
        if fmt != ENVELOPE_FORMAT:
            raise MalformedMessage(f"Unsupported envelope format: {fmt}")

        offset = _HEADER.size
        nonce = data[offset:offset + NONCE_SIZE]
        offset += NONCE_SIZE
        return cls(
            key_version=key_version,
            nonce=nonce,
            ciphertext=data[offset:-TAG_SIZE],
            tag=data[-TAG_SIZE:],
        )

    def encode(self) -> str:
        """Text-safe (base64) encoding used on every JSON channel."""
        return b64encode(self.to_bytes())

    @classmethod
    def decode(cls, text: str) -> "EncryptionEnvelope":
        return cls.from_bytes(b64decode(text))


@dataclass
class ChatBroadcastEvent:
    """
    Encrypted chat message pushed to recipient sessions.

    Fields:
        type: MessageType.CHAT
        sender: Connection id of the sender
        message: Encoded EncryptionEnvelope
        timestamp: Receipt time in milliseconds
        seqno: Sender's sequence number
    """

    sender: str
    message: str
    timestamp: int
    seqno: int
    type: str = MessageType.CHAT.value

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EncryptionFailedEvent:
    """Rejection sent only to the sender of a message that failed to encrypt."""

    error: str  # ErrorKind.value
    seqno: int
    timestamp: int
    type: str = MessageType.ENCRYPTION_FAILED.value

    def to_dict(self) -> dict:
        return asdict(self)


def encrypt_request_dict(plaintext: bytes, associated_data: Optional[bytes] = None) -> dict:
    """
    Build an ENCRYPT request.

    The plaintext always travels as base64 so its size on the wire is fixed
    at 4/3 of the input, whatever characters it holds.
    """
    request = {"type": MessageType.ENCRYPT.value, "message": b64encode(plaintext), "encoding": "base64"}
    if associated_data is not None:
        request["aad"] = b64encode(associated_data)
    return request


def decrypt_request_dict(encoded_envelope: str, associated_data: Optional[bytes] = None) -> dict:
    """Build a DECRYPT request."""
    request = {"type": MessageType.DECRYPT.value, "encrypted": encoded_envelope}
    if associated_data is not None:
        request["aad"] = b64encode(associated_data)
    return request


def error_response(kind: ErrorKind, message: str) -> dict:
    return {"type": MessageType.ERROR.value, "error": kind.value, "message": message}


def serialize_message(msg_obj) -> str:
    """
    Serialize a message dataclass or dictionary to a compact JSON string.

    Returns: Compact JSON string
    Raises: TypeError, ValueError
    """
    try:
        if isinstance(msg_obj, dict):
            msg_dict = msg_obj
        elif hasattr(msg_obj, "to_dict"):
            msg_dict = msg_obj.to_dict()
        else:
            msg_dict = asdict(msg_obj)
        return json.dumps(msg_dict, separators=(",", ":"))

    except TypeError as e:
        raise TypeError(f"Cannot serialize object: {type(msg_obj).__name__}") from e


def deserialize_message(json_str: str) -> dict:
    """
    Deserialize JSON string to a message dictionary.

    Returns: Message dictionary with a "type" field
    Raises: MalformedMessage
    """
    if not isinstance(json_str, str):
        raise MalformedMessage(f"json_str must be string, got {type(json_str).__name__}")

    try:
        msg_dict = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e

    if not isinstance(msg_dict, dict):
        raise MalformedMessage("JSON must deserialize to a dictionary")
    if not msg_dict.get("type"):
        raise MalformedMessage("Message missing 'type' field")
    return msg_dict
