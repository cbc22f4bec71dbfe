"""
SecureRelay chat relay server.

This module implements the TCP relay that:
    1. Accepts client connections and registers a session for each
    2. Greets the client with WELCOME carrying its connection id
    3. Hands every inbound MSG to the Transport Gateway (encrypt, then broadcast)
    4. Streams CHAT / ENCRYPTION_FAILED events back through a writer thread
    5. Manages graceful shutdown on SIGINT (Ctrl+C)

Server Architecture:
    - One reader thread and one writer thread per connection
    - Encryption calls run on the gateway's worker pool, never on a reader
    - Plaintext only exists between the reader and the encryption call;
      everything written to other sessions is an encrypted envelope

Usage:
    python -m securerelay.server.relay_server

    To stop the server: Press Ctrl+C
"""

import logging
import queue
import signal
import socket
import sys
import threading
from typing import Optional

from dotenv import load_dotenv

from securerelay.client.encryption_client import EncryptionClient
from securerelay.common.config import load_relay_config
from securerelay.common.errors import ConfigurationError, MalformedMessage
from securerelay.common.framing import recv_frame, send_frame
from securerelay.common.protocol import MessageType
from securerelay.server.fanout import BroadcastFanout, Session
from securerelay.server.gateway import TransportGateway
from securerelay.server.tcp import ThreadedTCPServer


logger = logging.getLogger(__name__)

WRITER_POLL_SECONDS = 0.5


class RelayServer(ThreadedTCPServer):
    """Wires TCP sessions to the gateway and fan-out."""

    name = "Relay server"

    def __init__(
        self,
        gateway: TransportGateway,
        fanout: BroadcastFanout,
        host: str,
        port: int,
        session_queue_size: int = 256,
    ):
        super().__init__(host, port)
        self.gateway = gateway
        self.fanout = fanout
        self.session_queue_size = session_queue_size

    def handle_connection(self, client_socket: socket.socket, client_id: str) -> None:
        session = Session(client_id, queue_size=self.session_queue_size)
        # WELCOME must be queued before any broadcast can reach the session
        session.offer({"type": MessageType.WELCOME.value, "connection_id": client_id})
        self.fanout.connect(session)

        writer = threading.Thread(
            target=self._writer_loop,
            args=(client_socket, session),
            name=f"writer-{client_id}",
            daemon=True,
        )
        writer.start()

        try:
            self._reader_loop(client_socket, session)
        finally:
            self.fanout.disconnect(client_id)
            self.gateway.close_sender(client_id)
            writer.join(timeout=WRITER_POLL_SECONDS * 2)

    def _reader_loop(self, client_socket: socket.socket, session: Session) -> None:
        client_id = session.connection_id
        while not self.is_shutting_down and not session.is_broken:
            try:
                msg_dict = recv_frame(client_socket)
            except OSError:
                # Covers ConnectionError on close
                return
            except MalformedMessage as e:
                # Framing is lost after a bad frame, drop the connection
                logger.warning(f"[{client_id}] Malformed frame: {e.message}")
                return

            msg_type = msg_dict.get("type")
            if msg_type == MessageType.MSG.value:
                message = msg_dict.get("message")
                if not isinstance(message, str):
                    session.offer(MalformedMessage("MSG requires a string 'message' field").to_dict())
                    continue
                chat_message = self.gateway.submit(client_id, message)
                logger.debug(f"[{client_id}] Accepted seqno={chat_message.sequence_no}")

            elif msg_type == MessageType.LEAVE.value:
                logger.info(f"[{client_id}] Client left")
                return

            else:
                logger.warning(f"[{client_id}] Unexpected message type: {msg_type}")
                session.offer(MalformedMessage(f"Unexpected message type: {msg_type}").to_dict())

    def _writer_loop(self, client_socket: socket.socket, session: Session) -> None:
        client_id = session.connection_id
        while True:
            try:
                event = session.outbound_queue.get(timeout=WRITER_POLL_SECONDS)
            except queue.Empty:
                if session.is_broken:
                    return
                continue

            try:
                send_frame(client_socket, event)
            except OSError as e:
                logger.warning(f"[{client_id}] Send failed, marking session broken: {e}")
                session.mark_broken()
                return


def build_relay(config, encryption_client: Optional[EncryptionClient] = None) -> RelayServer:
    """
    Assemble fan-out, gateway and server from a RelayConfig.

    Args:
        config: RelayConfig
        encryption_client: Override (defaults to a socket client from config)
    """
    if encryption_client is None:
        encryption_client = EncryptionClient.from_config(config.client)

    fanout = BroadcastFanout(exclude_origin=not config.echo_to_sender)
    gateway = TransportGateway(encryption_client, fanout, max_workers=config.gateway_workers)
    return RelayServer(gateway, fanout, config.host, config.port, config.session_queue_size)


# Global server reference for the signal handler
_server: Optional[RelayServer] = None


def signal_handler(signum, frame):
    """
    Handle SIGINT (Ctrl+C) for graceful shutdown.

    Args:
        signum: Signal number (signal.SIGINT for Ctrl+C)
        frame: Current stack frame
    """
    logger.info("Shutdown signal received (SIGINT)")
    if _server is not None:
        _server.shutdown()


def start_server():
    """
    Start the relay and serve until shutdown.

    The relay does not need the encryption service to be up at start; calls
    fail over to rejections and the circuit breaker until it is.
    """
    global _server

    try:
        config = load_relay_config()
        logging.getLogger().setLevel(config.log_level)

        _server = build_relay(config)
        _server.bind()
        logger.info(
            f"Encryption service endpoint: {config.client.service_host}:{config.client.service_port} "
            f"(timeout={config.client.timeout}s, retries={config.client.max_retries})"
        )

        signal.signal(signal.SIGINT, signal_handler)
        print(f"[*] SecureRelay server started on {config.host}:{_server.address[1]}")
        print("[*] Press Ctrl+C to stop the server")
        _server.serve_forever()

        logger.info("Shutting down server...")
        _server.gateway.shutdown(timeout=config.client.timeout * (config.client.max_retries + 1))
        print("[*] Server stopped")

    except ConfigurationError as e:
        logger.critical(f"Cannot start server: {e.message}")
        sys.exit(1)

    except OSError as e:
        logger.critical(f"Socket error: {e}")
        sys.exit(1)


def main():
    """
    Main entry point for the relay server.

    Exit codes:
        0: Normal shutdown
        1: Fatal error (bad configuration, socket error)
    """
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    load_dotenv()

    try:
        start_server()
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
        print("\n[*] Server stopped by user")


if __name__ == "__main__":
    main()
