"""
Resilient client for the encryption service.

Wraps every call with:
    - a bounded per-call timeout (enforced by the transport)
    - retries with exponential backoff for transient failures only
      (NETWORK_ERROR, SERVICE_UNAVAILABLE reported by the service)
      that stop early once another caller has opened the breaker
    - a circuit breaker that short-circuits calls with ServiceUnavailable
      while the service is considered down

Terminal errors (PAYLOAD_TOO_LARGE, AUTHENTICATION_FAILURE, KEY_UNAVAILABLE,
MALFORMED_MESSAGE, CONFIGURATION_ERROR) are raised immediately, never retried.
A call either returns a fully parsed EncryptionEnvelope or raises a
RelayError.

Transports:
    SocketTransport - one TCP connection per call, length-prefixed JSON
    LocalTransport  - in-process call into an EncryptionRequestHandler

Usage:
    client = EncryptionClient.from_config(load_client_config())
    envelope = client.encrypt_message(b"hello", associated_data=b"alice")
"""

import logging
import socket
import time
from typing import Callable, Optional, Union

from securerelay.client.circuit_breaker import BreakerState, CircuitBreaker
from securerelay.common.config import ClientConfig
from securerelay.common.errors import (
    MalformedMessage,
    NetworkError,
    PayloadTooLarge,
    AuthenticationFailure,
    KeyUnavailable,
    RelayError,
    ServiceUnavailable,
    error_from_dict,
)
from securerelay.common.framing import encode_frame, recv_frame, send_frame
from securerelay.common.protocol import (
    EncryptionEnvelope,
    MessageType,
    b64decode,
    decrypt_request_dict,
    encrypt_request_dict,
)


logger = logging.getLogger(__name__)

# Service answered, so these say nothing about its health
_HEALTHY_TERMINAL_ERRORS = (PayloadTooLarge, AuthenticationFailure, KeyUnavailable)


class SocketTransport:
    """
    Sends one request per TCP connection and waits for the response.

    The timeout bounds the whole call: connect, send and receive share one
    deadline.
    """

    def __init__(self, host: str, port: int, timeout: float = 2.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def call(self, request: dict) -> dict:
        """
        Raises:
            NetworkError: On connection refused, timeout or broken connection
            MalformedMessage: If the response frame cannot be parsed
        """
        deadline = time.monotonic() + self.timeout
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                sock.settimeout(max(deadline - time.monotonic(), 0.001))
                send_frame(sock, request)
                sock.settimeout(max(deadline - time.monotonic(), 0.001))
                return recv_frame(sock)

        except socket.timeout:
            raise NetworkError(
                f"Encryption service at {self.host}:{self.port} timed out after {self.timeout}s"
            ) from None
        except OSError as e:
            raise NetworkError(f"Encryption service at {self.host}:{self.port} unreachable: {e}") from e


class LocalTransport:
    """
    Calls an EncryptionRequestHandler in-process.

    Used when the relay and the encryption service share a process, and in
    tests.
    """

    def __init__(self, handler):
        self.handler = handler

    def call(self, request: dict) -> dict:
        return self.handler.handle(dict(request))


class EncryptionClient:
    """Timeout, retry and circuit-breaker wrapper around a transport."""

    def __init__(
        self,
        transport,
        max_retries: int = 2,
        backoff_base: float = 0.1,
        backoff_max: float = 2.0,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        self.transport = transport
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ClientConfig, transport=None) -> "EncryptionClient":
        """Build a client from ClientConfig; defaults to a SocketTransport."""
        if transport is None:
            transport = SocketTransport(config.service_host, config.service_port, config.timeout)
        return cls(
            transport,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            breaker=CircuitBreaker(config.failure_threshold, config.cooldown),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt + 1 (attempt counts from 0)."""
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    def encrypt_message(
        self, plaintext: Union[str, bytes], associated_data: Optional[bytes] = None
    ) -> EncryptionEnvelope:
        """
        Encrypt a message through the encryption service.

        Args:
            plaintext: Message text or bytes
            associated_data: Context bound into the tag (e.g. sender id)

        Returns:
            Parsed EncryptionEnvelope

        Raises:
            ServiceUnavailable: Breaker open, or transient failures exhausted retries
            PayloadTooLarge, AuthenticationFailure, KeyUnavailable,
            MalformedMessage, ConfigurationError: Terminal errors
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        response = self._call(encrypt_request_dict(plaintext, associated_data), MessageType.ENCRYPT_RESULT)
        encoded = response.get("encrypted")
        if not isinstance(encoded, str):
            raise MalformedMessage("ENCRYPT_RESULT missing 'encrypted' field")
        return EncryptionEnvelope.decode(encoded)

    def decrypt_message(self, encoded_envelope: str, associated_data: Optional[bytes] = None) -> bytes:
        """
        Verify and decrypt an encoded envelope through the encryption service.

        Raises: Same classification as encrypt_message()
        """
        response = self._call(
            decrypt_request_dict(encoded_envelope, associated_data), MessageType.DECRYPT_RESULT
        )
        message = response.get("message")
        if not isinstance(message, str):
            raise MalformedMessage("DECRYPT_RESULT missing 'message' field")
        return b64decode(message)

    def _call(self, request: dict, expected: MessageType) -> dict:
        try:
            encode_frame(request)
        except MalformedMessage as e:
            # Rejected before any call, so the breaker is not involved
            raise PayloadTooLarge(f"Request does not fit in one frame: {e.message}", context=e.context) from e

        if not self.breaker.allow_request():
            raise ServiceUnavailable("Encryption service circuit breaker is open")

        attempts = self.max_retries + 1
        made = 0
        last_error: Optional[RelayError] = None

        while made < attempts:
            made += 1
            try:
                response = self.transport.call(request)
                if response.get("type") == MessageType.ERROR.value:
                    raise error_from_dict(response)
                if response.get("type") != expected.value:
                    raise MalformedMessage(
                        f"Expected {expected.value} response, got {response.get('type')!r}"
                    )

            except RelayError as e:
                if not e.retryable:
                    if isinstance(e, _HEALTHY_TERMINAL_ERRORS):
                        self.breaker.record_success()
                    else:
                        self.breaker.record_failure()
                    raise

                last_error = e
                if made < attempts:
                    if self.breaker.state == BreakerState.OPEN:
                        logger.warning("Circuit breaker opened during retries; giving up early")
                        break
                    delay = self.backoff_delay(made - 1)
                    logger.warning(
                        f"Encryption call failed ({e.kind.value}: {e.message}); "
                        f"retry {made}/{self.max_retries} in {delay:.2f}s"
                    )
                    self._sleep(delay)
                continue

            except Exception:
                self.breaker.record_failure()
                raise

            self.breaker.record_success()
            return response

        self.breaker.record_failure()
        logger.error(f"Encryption service unavailable after {made} attempt(s): {last_error.message}")
        raise ServiceUnavailable(
            f"Encryption service unavailable after {made} attempt(s): {last_error.message}",
            context={"cause": last_error.kind.value},
        )
