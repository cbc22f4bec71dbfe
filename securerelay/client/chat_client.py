"""
SecureRelay console chat client.

This module implements a TCP client that:
    1. Connects to the relay and reads its WELCOME (connection id)
    2. Sends each console line as a MSG
    3. Receives CHAT events and decrypts them through the encryption service,
       binding the sender id as associated data
    4. Reports ENCRYPTION_FAILED rejections for its own messages

Message Framing:
    [4 bytes: message length] [JSON message data]

Usage:
    python -m securerelay.client.chat_client

    Type /quit to leave.

Environment Variables (.env):
    RELAY_HOST, RELAY_PORT: Relay address (default: 127.0.0.1:5000)
    ENCRYPTION_SERVICE_HOST, ENCRYPTION_SERVICE_PORT: Encryption service
"""

import logging
import socket
import sys
import threading

from dotenv import load_dotenv

from securerelay.client.encryption_client import EncryptionClient
from securerelay.common.config import load_relay_config
from securerelay.common.errors import ConfigurationError, MalformedMessage, RelayError
from securerelay.common.framing import recv_frame, send_frame
from securerelay.common.protocol import MessageType


logger = logging.getLogger(__name__)

QUIT_COMMAND = "/quit"


def connect_to_server(host: str, port: int) -> socket.socket:
    """
    Create TCP connection to the relay.

    Raises:
        ValueError: If host or port invalid
        OSError: If connection fails
    """
    if not isinstance(host, str):
        raise ValueError(f"host must be string, got {type(host)}")
    if not isinstance(port, int) or port < 1 or port > 65535:
        raise ValueError(f"port must be integer in range [1, 65535], got {port}")

    logger.info(f"Connecting to relay: {host}:{port}")
    client_socket = socket.create_connection((host, port))
    client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    logger.info(f"Connected to relay: {host}:{port}")
    return client_socket


def read_welcome(sock: socket.socket) -> str:
    """
    Read the relay greeting.

    Returns: Connection id assigned by the relay
    Raises: MalformedMessage if the first frame is not a WELCOME
    """
    welcome = recv_frame(sock)
    if welcome.get("type") != MessageType.WELCOME.value or not welcome.get("connection_id"):
        raise MalformedMessage(f"Expected WELCOME, got {welcome.get('type')!r}")
    return welcome["connection_id"]


def render_event(event: dict, encryption_client: EncryptionClient) -> str:
    """
    Turn a relay event into a display line.

    CHAT events are decrypted; failures are shown, never the raw ciphertext.
    """
    event_type = event.get("type")

    if event_type == MessageType.CHAT.value:
        sender = str(event.get("sender"))
        try:
            plaintext = encryption_client.decrypt_message(
                event.get("message", ""), associated_data=sender.encode("utf-8")
            )
        except RelayError as e:
            return f"[!] Message from {sender} could not be decrypted ({e.kind.value})"
        return f"[{sender}] {plaintext.decode('utf-8', errors='replace')}"

    if event_type == MessageType.ENCRYPTION_FAILED.value:
        return f"[!] Your message #{event.get('seqno')} was not sent: {event.get('error')}"

    if event_type == MessageType.ERROR.value:
        return f"[!] Relay error: {event.get('error')}: {event.get('message')}"

    return f"[?] Unknown event: {event_type}"


def receive_loop(sock: socket.socket, encryption_client: EncryptionClient, stop: threading.Event) -> None:
    """Print relay events until the connection closes."""
    while not stop.is_set():
        try:
            event = recv_frame(sock)
        except (OSError, MalformedMessage) as e:
            if not stop.is_set():
                print(f"\n[*] Disconnected from relay: {e}")
            stop.set()
            return
        print(render_event(event, encryption_client))


def chat(sock: socket.socket, encryption_client: EncryptionClient) -> None:
    """Console loop: send lines as MSG until /quit or EOF."""
    stop = threading.Event()
    receiver = threading.Thread(target=receive_loop, args=(sock, encryption_client, stop), daemon=True)
    receiver.start()

    try:
        while not stop.is_set():
            try:
                line = input()
            except EOFError:
                break
            if line.strip() == QUIT_COMMAND:
                break
            if not line:
                continue
            send_frame(sock, {"type": MessageType.MSG.value, "message": line})
    finally:
        stop.set()
        try:
            send_frame(sock, {"type": MessageType.LEAVE.value})
        except OSError:
            pass


def main():
    """
    Main entry point for the chat client.

    Exit codes:
        0: Normal exit
        1: Fatal error (bad configuration, relay unreachable)
    """
    logging.basicConfig(
        level=logging.WARNING,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    load_dotenv()

    try:
        config = load_relay_config()
        encryption_client = EncryptionClient.from_config(config.client)
        sock = connect_to_server(config.host, config.port)
    except ConfigurationError as e:
        print(f"[!] Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"[!] Cannot connect to relay: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        connection_id = read_welcome(sock)
        print(f"[+] Connected as {connection_id}. Type {QUIT_COMMAND} to leave.")
        chat(sock, encryption_client)
    except (OSError, MalformedMessage) as e:
        print(f"[!] Connection error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[*] Interrupted")
    finally:
        sock.close()


if __name__ == "__main__":
    main()
