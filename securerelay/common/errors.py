"""
Error taxonomy for SecureRelay.

Every failure that crosses a component boundary is a RelayError carrying an
ErrorKind. The kind is what travels over the wire (RPC error responses,
ENCRYPTION_FAILED events) and what the Encryption Client uses to decide
whether a call may be retried.

Retryable:
    NETWORK_ERROR        - connection refused, timeout, broken connection
    SERVICE_UNAVAILABLE  - remote service reported itself unavailable

Terminal:
    PAYLOAD_TOO_LARGE       - plaintext exceeds the configured maximum
    KEY_UNAVAILABLE         - key version unknown or purged
    AUTHENTICATION_FAILURE  - integrity check failed (possible tampering)
    MALFORMED_MESSAGE       - request/response/envelope could not be parsed
    CONFIGURATION_ERROR     - service misconfigured (e.g. no active key)
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """Error kinds shared by the RPC protocol and gateway events."""

    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    KEY_UNAVAILABLE = "KEY_UNAVAILABLE"
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    def __str__(self) -> str:
        return self.value


class RelayError(Exception):
    """Base error with a kind, retry classification and optional context."""

    kind = ErrorKind.SERVICE_UNAVAILABLE
    retryable = False

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to an RPC error response."""
        return {
            "type": "ERROR",
            "error": self.kind.value,
            "message": self.message,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NetworkError(RelayError):
    """Transport-level failure talking to the encryption service."""

    kind = ErrorKind.NETWORK_ERROR
    retryable = True


class ServiceUnavailable(RelayError):
    """Encryption service cannot be reached or has been short-circuited."""

    kind = ErrorKind.SERVICE_UNAVAILABLE


class PayloadTooLarge(RelayError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class KeyUnavailable(RelayError):
    kind = ErrorKind.KEY_UNAVAILABLE


class AuthenticationFailure(RelayError):
    """Ciphertext, tag, nonce or associated data failed verification."""

    kind = ErrorKind.AUTHENTICATION_FAILURE


class MalformedMessage(RelayError):
    kind = ErrorKind.MALFORMED_MESSAGE


class ConfigurationError(RelayError):
    """Fatal misconfiguration, never a per-message condition."""

    kind = ErrorKind.CONFIGURATION_ERROR


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        NetworkError,
        ServiceUnavailable,
        PayloadTooLarge,
        KeyUnavailable,
        AuthenticationFailure,
        MalformedMessage,
        ConfigurationError,
    )
}


def error_from_dict(response: Dict[str, Any]) -> RelayError:
    """
    Rebuild a RelayError from an RPC error response.

    A SERVICE_UNAVAILABLE reported by the remote service is retryable: the
    service answered, but asked us to come back later. Unknown kinds are
    treated as malformed responses.

    Args:
        response: Dictionary with "error" and optional "message" fields

    Returns:
        RelayError subclass instance matching the error kind
    """
    message = str(response.get("message") or "remote error")
    try:
        kind = ErrorKind(response.get("error"))
    except ValueError:
        return MalformedMessage(f"Unknown error kind in response: {response.get('error')!r}")

    if kind == ErrorKind.SERVICE_UNAVAILABLE:
        return ServiceUnavailable(message, retryable=True)
    return _ERRORS_BY_KIND[kind](message)
