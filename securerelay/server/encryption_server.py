"""
Encryption RPC server.

Exposes the EncryptionService across a process boundary:
    1. Loads the key store from ENCRYPTION_KEY_FILE
    2. Refuses to start without an active key (configuration error)
    3. Listens on ENCRYPTION_SERVICE_HOST:ENCRYPTION_SERVICE_PORT
    4. Answers length-prefixed JSON requests on each connection
    5. Shuts down gracefully on SIGINT (Ctrl+C)

Requests / responses:
    {"type": "ENCRYPT", "message": str, "encoding": "utf-8"|"base64", "aad"?: b64}
        -> {"type": "ENCRYPT_RESULT", "encrypted": <encoded envelope>}
    {"type": "DECRYPT", "encrypted": <encoded envelope>, "aad"?: b64}
        -> {"type": "DECRYPT_RESULT", "message": b64}
    any failure
        -> {"type": "ERROR", "error": <ErrorKind>, "message": str}

Usage:
    python -m securerelay.server.encryption_server
"""

import logging
import signal
import socket
import sys
from typing import Optional

from dotenv import load_dotenv

from securerelay.common.config import load_encryption_service_config
from securerelay.common.errors import ConfigurationError, ErrorKind, MalformedMessage, RelayError
from securerelay.common.framing import recv_frame, send_frame
from securerelay.common.protocol import (
    EncryptionEnvelope,
    EncryptionRequest,
    MessageType,
    b64decode,
    b64encode,
    error_response,
)
from securerelay.crypto.encryption_service import EncryptionService
from securerelay.crypto.key_store import load_key_store
from securerelay.server.tcp import ThreadedTCPServer


logger = logging.getLogger(__name__)

CONNECTION_IDLE_TIMEOUT = 30.0


def _optional_aad(request: dict) -> Optional[bytes]:
    aad = request.get("aad")
    return None if aad is None else b64decode(aad)


class EncryptionRequestHandler:
    """
    Maps RPC request dictionaries onto EncryptionService calls.

    Shared by the TCP server and the in-process LocalTransport so both paths
    speak exactly the same protocol.
    """

    def __init__(self, service: EncryptionService):
        self.service = service

    def handle(self, request: dict) -> dict:
        """
        Handle one request and always return a response dictionary.

        RelayErrors become ERROR responses with their kind; unexpected
        exceptions are logged and reported as SERVICE_UNAVAILABLE.
        """
        try:
            msg_type = request.get("type")
            if msg_type == MessageType.ENCRYPT.value:
                return self._encrypt(request)
            if msg_type == MessageType.DECRYPT.value:
                return self._decrypt(request)
            raise MalformedMessage(f"Unknown request type: {msg_type!r}")

        except ConfigurationError as e:
            logger.critical(f"Encryption service misconfigured: {e.message}")
            return e.to_dict()
        except RelayError as e:
            logger.warning(f"Request rejected: {e.kind.value}: {e.message}")
            return e.to_dict()
        except Exception as e:
            logger.error(f"Unexpected error handling request: {e}", exc_info=True)
            return error_response(ErrorKind.SERVICE_UNAVAILABLE, "Internal encryption service error")

    def _encrypt(self, request: dict) -> dict:
        message = request.get("message")
        if not isinstance(message, str):
            raise MalformedMessage("ENCRYPT request requires a string 'message' field")

        encoding = request.get("encoding", "utf-8")
        if encoding == "utf-8":
            plaintext = message.encode("utf-8")
        elif encoding == "base64":
            plaintext = b64decode(message)
        else:
            raise MalformedMessage(f"Unsupported message encoding: {encoding!r}")

        envelope = self.service.encrypt(EncryptionRequest(plaintext, _optional_aad(request)))
        return {"type": MessageType.ENCRYPT_RESULT.value, "encrypted": envelope.encode()}

    def _decrypt(self, request: dict) -> dict:
        encoded = request.get("encrypted")
        if not isinstance(encoded, str):
            raise MalformedMessage("DECRYPT request requires a string 'encrypted' field")

        envelope = EncryptionEnvelope.decode(encoded)
        plaintext = self.service.decrypt(envelope, _optional_aad(request))
        return {"type": MessageType.DECRYPT_RESULT.value, "message": b64encode(plaintext)}


class EncryptionServer(ThreadedTCPServer):
    """TCP front-end for an EncryptionRequestHandler."""

    name = "Encryption service"

    def __init__(self, handler: EncryptionRequestHandler, host: str, port: int):
        super().__init__(host, port)
        self.handler = handler

    def handle_connection(self, client_socket: socket.socket, client_id: str) -> None:
        client_socket.settimeout(CONNECTION_IDLE_TIMEOUT)
        while not self.is_shutting_down:
            try:
                request = recv_frame(client_socket)
            except (ConnectionError, socket.timeout):
                return
            except MalformedMessage as e:
                logger.warning(f"[{client_id}] Malformed request frame: {e.message}")
                try:
                    send_frame(client_socket, e.to_dict())
                except OSError:
                    pass
                return

            response = self.handler.handle(request)
            try:
                send_frame(client_socket, response)
            except OSError as e:
                # Caller gave up (timeout) or went away
                logger.debug(f"[{client_id}] Could not send response: {e}")
                return


# Global server reference for the signal handler
_server: Optional[EncryptionServer] = None


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
    Load keys, bind and serve until shutdown.

    Exits with status 1 if the key file is missing, has no active key, or
    the socket cannot be bound.
    """
    global _server

    try:
        config = load_encryption_service_config()
        logging.getLogger().setLevel(config.log_level)

        key_store = load_key_store(config.key_file)
        active = key_store.current_key()
        logger.info(f"Active key version {active.version} ({len(key_store)} key(s) loaded)")

        service = EncryptionService(key_store, max_plaintext_size=config.max_plaintext_bytes)
        _server = EncryptionServer(EncryptionRequestHandler(service), config.host, config.port)
        _server.bind()

        signal.signal(signal.SIGINT, signal_handler)
        print(f"[*] Encryption service started on {config.host}:{_server.address[1]}")
        print("[*] Press Ctrl+C to stop the service")
        _server.serve_forever()
        print("[*] Encryption service stopped")

    except FileNotFoundError as e:
        logger.critical(f"Cannot start encryption service, key file missing: {e}")
        print("[!] Generate one with: python scripts/gen_key.py init", file=sys.stderr)
        sys.exit(1)

    except ConfigurationError as e:
        logger.critical(f"Cannot start encryption service: {e.message}")
        sys.exit(1)

    except OSError as e:
        logger.critical(f"Socket error: {e}")
        sys.exit(1)


def main():
    """
    Main entry point for the encryption service.

    Exit codes:
        0: Normal shutdown
        1: Fatal error (missing keys, bad configuration, socket error)
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
        logger.info("Encryption service interrupted by user")
        print("\n[*] Encryption service stopped by user")


if __name__ == "__main__":
    main()
