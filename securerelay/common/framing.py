"""
Length-prefixed JSON framing over TCP sockets.

Each message is prefixed with a 4-byte big-endian length field:
    [4 bytes: message length] [JSON message data]

Example:
    Message: {"type":"MSG","message":"hi"}
    Length: 29 bytes
    Wire format: 0x00 0x00 0x00 0x1d {"type":"MSG","message":"hi"}
"""

import logging
import socket
import struct

from securerelay.common.errors import MalformedMessage
from securerelay.common.protocol import serialize_message, deserialize_message


logger = logging.getLogger(__name__)

LENGTH_PREFIX_SIZE = 4
MAX_FRAME_SIZE = 1024 * 1024  # 1 MB


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    """
    Read exactly `size` bytes from a socket.

    Raises: ConnectionError if the peer closes the connection first
    """
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError(f"Connection closed ({len(data)}/{size} bytes read)")
        data += chunk
    return data


def encode_frame(message) -> bytes:
    """
    Serialize a message (dict or dataclass with to_dict) into one frame.

    Raises:
        MalformedMessage: If the serialized message exceeds MAX_FRAME_SIZE
    """
    json_bytes = serialize_message(message).encode("utf-8")
    if len(json_bytes) > MAX_FRAME_SIZE:
        raise MalformedMessage(
            f"Message too large: {len(json_bytes)} bytes (max {MAX_FRAME_SIZE})",
            context={"frame_size": len(json_bytes)},
        )
    return struct.pack(">I", len(json_bytes)) + json_bytes


def send_frame(sock: socket.socket, message) -> None:
    """
    Send a message as one frame.

    Raises:
        MalformedMessage: If the serialized message exceeds MAX_FRAME_SIZE
        OSError: If the send fails
    """
    frame = encode_frame(message)
    sock.sendall(frame)
    logger.debug(f"Sent frame ({len(frame) - LENGTH_PREFIX_SIZE} bytes)")


def recv_frame(sock: socket.socket) -> dict:
    """
    Receive one frame and deserialize it.

    Returns: Message dictionary
    Raises:
        ConnectionError: If the peer closed the connection
        socket.timeout: If the socket timeout expires
        MalformedMessage: If the frame is empty, oversized or not valid JSON
    """
    length_bytes = recv_exactly(sock, LENGTH_PREFIX_SIZE)
    message_length = struct.unpack(">I", length_bytes)[0]

    if message_length == 0:
        raise MalformedMessage("Empty message received")
    if message_length > MAX_FRAME_SIZE:
        raise MalformedMessage(f"Message too large: {message_length} bytes (max {MAX_FRAME_SIZE})")

    json_bytes = recv_exactly(sock, message_length)
    logger.debug(f"Received frame ({message_length} bytes)")
    try:
        json_str = json_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessage(f"Frame is not valid UTF-8: {e}") from e

    return deserialize_message(json_str)
