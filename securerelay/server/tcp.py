"""
Threaded TCP accept loop shared by the relay and encryption servers.

The listening socket polls with a 1 second timeout so shutdown() is noticed
promptly; every accepted connection is handled in its own daemon thread.
"""

import logging
import socket
import threading
from typing import Optional, Tuple


logger = logging.getLogger(__name__)

ACCEPT_POLL_SECONDS = 1.0


class ThreadedTCPServer:
    """
    Base class: subclasses implement handle_connection().

    Usage:
        server = MyServer("127.0.0.1", 0)
        host, port = server.start()   # background accept thread
        ...
        server.shutdown()
    """

    name = "server"

    def __init__(self, host: str, port: int, backlog: int = 16):
        self.host = host
        self.port = port
        self.backlog = backlog
        self._server_socket: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()

    @property
    def address(self) -> Tuple[str, int]:
        if self._server_socket is None:
            raise RuntimeError(f"{self.name} is not bound")
        return self._server_socket.getsockname()[:2]

    def bind(self) -> Tuple[str, int]:
        """Create, bind and listen. Port 0 picks an ephemeral port."""
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self.host, self.port))
            server_socket.listen(self.backlog)
        except OSError:
            server_socket.close()
            raise
        server_socket.settimeout(ACCEPT_POLL_SECONDS)
        self._server_socket = server_socket

        logger.info(f"{self.name} listening on {self.address[0]}:{self.address[1]}")
        return self.address

    def start(self) -> Tuple[str, int]:
        """Bind and run the accept loop in a background thread."""
        address = self.bind()
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name=f"{self.name}-accept", daemon=True
        )
        self._accept_thread.start()
        return address

    def serve_forever(self) -> None:
        """Bind (if needed) and run the accept loop in the calling thread."""
        if self._server_socket is None:
            self.bind()
        self._accept_loop()

    def _accept_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                client_socket, client_address = self._server_socket.accept()
            except socket.timeout:
                # Timeout is normal, just loop to check the shutdown flag
                continue
            except OSError as e:
                if not self._shutdown.is_set():
                    logger.error(f"Error in {self.name} accept loop: {e}")
                break

            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            client_id = f"{client_address[0]}:{client_address[1]}"
            threading.Thread(
                target=self._run_connection,
                args=(client_socket, client_id),
                name=f"{self.name}-{client_id}",
                daemon=True,
            ).start()

        logger.info(f"{self.name} accept loop stopped")

    def _run_connection(self, client_socket: socket.socket, client_id: str) -> None:
        logger.info(f"[{client_id}] Client connected")
        try:
            self.handle_connection(client_socket, client_id)
        except Exception as e:
            logger.error(f"[{client_id}] Connection handler error: {e}", exc_info=True)
        finally:
            try:
                client_socket.close()
            except OSError:
                pass
            logger.info(f"[{client_id}] Client disconnected")

    def handle_connection(self, client_socket: socket.socket, client_id: str) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        """Stop accepting connections and close the listening socket."""
        self._shutdown.set()
        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=ACCEPT_POLL_SECONDS * 2)
        if self._server_socket is not None:
            self._server_socket.close()
        logger.info(f"{self.name} stopped")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()
