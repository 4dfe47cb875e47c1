#Filename: config.py
"""
GATEWAY CONFIGURATION
Process-wide, immutable settings built once at start-up and passed by
parameter into the manager and every relay handler.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_PORT = 3000
DEFAULT_RELAY_TIMEOUT_MS = 30000
DEFAULT_CHUNK_SIZE = 65536
MAX_HEADER_SIZE = 262144


@dataclass(frozen=True)
class GatewayConfig:
    """Settings shared read-only by all concurrent relays."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    production: bool = False
    relay_timeout: float = DEFAULT_RELAY_TIMEOUT_MS / 1000.0
    verify_upstream_tls: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_header_size: int = MAX_HEADER_SIZE

    def __post_init__(self) -> None:
        if self.relay_timeout <= 0:
            raise ValueError("relay_timeout must be positive")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")

    def with_overrides(self, **changes) -> "GatewayConfig":
        """Returns a copy with the non-None values in changes applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _bool_env(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_config(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Load configuration from environment variables."""

    env = os.environ if environ is None else environ
    timeout_ms = _int_env(env, "GATEWAY_TIMEOUT_MS", DEFAULT_RELAY_TIMEOUT_MS)

    return GatewayConfig(
        host=env.get("GATEWAY_HOST") or "0.0.0.0",
        port=_int_env(env, "PORT", DEFAULT_PORT),
        production=env.get("GATEWAY_ENV", "").strip().lower() == "production",
        relay_timeout=timeout_ms / 1000.0,
        verify_upstream_tls=_bool_env(env, "GATEWAY_VERIFY_TLS"),
        chunk_size=_int_env(env, "GATEWAY_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
    )
