"""
Configuration loaded from environment variables (.env supported).

Environment Variables (.env):
    RELAY_HOST, RELAY_PORT: Chat relay bind address (default: 127.0.0.1:5000)
    ENCRYPTION_SERVICE_HOST, ENCRYPTION_SERVICE_PORT: Encryption RPC endpoint
        (default: 127.0.0.1:5100)
    ENCRYPTION_TIMEOUT_SECONDS: Per-call timeout (default: 2.0)
    ENCRYPTION_MAX_RETRIES: Retries for transient failures (default: 2)
    ENCRYPTION_BACKOFF_BASE_SECONDS, ENCRYPTION_BACKOFF_MAX_SECONDS:
        Exponential backoff base and cap (default: 0.1, 2.0)
    BREAKER_FAILURE_THRESHOLD: Consecutive failures before opening (default: 5)
    BREAKER_COOLDOWN_SECONDS: Open-state duration (default: 10.0)
    MAX_PLAINTEXT_BYTES: Largest accepted plaintext (default: 65536)
    SESSION_QUEUE_SIZE: Outbound queue bound per session (default: 256)
    GATEWAY_WORKERS: Encryption worker threads (default: 8)
    ECHO_TO_SENDER: Deliver broadcasts back to the origin (default: false)
    ENCRYPTION_KEY_FILE: Key store file (default: keys/relay_keys.json)
    LOG_LEVEL: Logging level for entry points (default: INFO)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Mapping

from dotenv import load_dotenv

from securerelay.common.errors import ConfigurationError


DEFAULT_MAX_PLAINTEXT_BYTES = 64 * 1024
DEFAULT_KEY_FILE = Path("keys") / "relay_keys.json"
# Plaintext travels base64-encoded (4/3) and must still fit in one 1 MB frame
MAX_PLAINTEXT_LIMIT = 512 * 1024


def _get(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name)
    return default if value is None or value == "" else value


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _get(env, name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(env, name, "true" if default else "false").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class ClientConfig:
    """Settings for calling the encryption service."""

    service_host: str = "127.0.0.1"
    service_port: int = 5100
    timeout: float = 2.0
    max_retries: int = 2
    backoff_base: float = 0.1
    backoff_max: float = 2.0
    failure_threshold: int = 5
    cooldown: float = 10.0


@dataclass(frozen=True)
class RelayConfig:
    """Settings for the chat relay (gateway + fan-out)."""

    host: str = "127.0.0.1"
    port: int = 5000
    client: ClientConfig = field(default_factory=ClientConfig)
    session_queue_size: int = 256
    gateway_workers: int = 8
    echo_to_sender: bool = False
    log_level: str = "INFO"


@dataclass(frozen=True)
class EncryptionServiceConfig:
    """Settings for the encryption RPC server."""

    host: str = "127.0.0.1"
    port: int = 5100
    key_file: Path = DEFAULT_KEY_FILE
    max_plaintext_bytes: int = DEFAULT_MAX_PLAINTEXT_BYTES
    log_level: str = "INFO"


def _port(env: Mapping[str, str], name: str, default: int) -> int:
    port = _get_int(env, name, default, minimum=0)
    if port > 65535:
        raise ConfigurationError(f"{name} must be in range [0, 65535], got {port}")
    return port


def load_client_config(env: Optional[Mapping[str, str]] = None) -> ClientConfig:
    if env is None:
        load_dotenv()
        env = os.environ

    backoff_base = _get_float(env, "ENCRYPTION_BACKOFF_BASE_SECONDS", 0.1)
    backoff_max = _get_float(env, "ENCRYPTION_BACKOFF_MAX_SECONDS", 2.0)
    if backoff_max < backoff_base:
        raise ConfigurationError("ENCRYPTION_BACKOFF_MAX_SECONDS must be >= ENCRYPTION_BACKOFF_BASE_SECONDS")

    return ClientConfig(
        service_host=_get(env, "ENCRYPTION_SERVICE_HOST", "127.0.0.1"),
        service_port=_port(env, "ENCRYPTION_SERVICE_PORT", 5100),
        timeout=_get_float(env, "ENCRYPTION_TIMEOUT_SECONDS", 2.0),
        max_retries=_get_int(env, "ENCRYPTION_MAX_RETRIES", 2),
        backoff_base=backoff_base,
        backoff_max=backoff_max,
        failure_threshold=_get_int(env, "BREAKER_FAILURE_THRESHOLD", 5, minimum=1),
        cooldown=_get_float(env, "BREAKER_COOLDOWN_SECONDS", 10.0),
    )


def load_relay_config(env: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """
    Build RelayConfig from the environment.

    Args:
        env: Mapping to read instead of os.environ (after load_dotenv)

    Raises:
        ConfigurationError: If any value is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    return RelayConfig(
        host=_get(env, "RELAY_HOST", "127.0.0.1"),
        port=_port(env, "RELAY_PORT", 5000),
        client=load_client_config(env),
        session_queue_size=_get_int(env, "SESSION_QUEUE_SIZE", 256, minimum=1),
        gateway_workers=_get_int(env, "GATEWAY_WORKERS", 8, minimum=1),
        echo_to_sender=_get_bool(env, "ECHO_TO_SENDER", False),
        log_level=_get(env, "LOG_LEVEL", "INFO").upper(),
    )


def load_encryption_service_config(env: Optional[Mapping[str, str]] = None) -> EncryptionServiceConfig:
    """
    Build EncryptionServiceConfig from the environment.

    Raises:
        ConfigurationError: If any value is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    max_plaintext_bytes = _get_int(env, "MAX_PLAINTEXT_BYTES", DEFAULT_MAX_PLAINTEXT_BYTES, minimum=1)
    if max_plaintext_bytes > MAX_PLAINTEXT_LIMIT:
        raise ConfigurationError(f"MAX_PLAINTEXT_BYTES must be <= {MAX_PLAINTEXT_LIMIT}, got {max_plaintext_bytes}")

    return EncryptionServiceConfig(
        host=_get(env, "ENCRYPTION_SERVICE_HOST", "127.0.0.1"),
        port=_port(env, "ENCRYPTION_SERVICE_PORT", 5100),
        key_file=Path(_get(env, "ENCRYPTION_KEY_FILE", str(DEFAULT_KEY_FILE))),
        max_plaintext_bytes=max_plaintext_bytes,
        log_level=_get(env, "LOG_LEVEL", "INFO").upper(),
    )
