"""
Unified configuration management for clashub.

Centralizes all environment variables and paths with validation.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


def _parse_bool(env_var: str, default: bool = False) -> bool:
    """Parse boolean environment variable."""
    value = os.environ.get(env_var, "").strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(env_var: str, default: int, min_val: int | None = None) -> int:
    """Parse integer environment variable with optional minimum value."""
    try:
        value = int(os.environ.get(env_var, str(default)))
        if min_val is not None and value < min_val:
            return default
        return value
    except ValueError:
        return default


def _parse_float(env_var: str, default: float, min_val: float | None = None) -> float:
    """Parse float environment variable with optional minimum value."""
    try:
        value = float(os.environ.get(env_var, str(default)))
        if min_val is not None and value < min_val:
            return default
        return value
    except ValueError:
        return default


def _parse_choice(env_var: str, default: str, choices: set[str]) -> str:
    """Parse a lowercase string restricted to a fixed set of values."""
    value = os.environ.get(env_var, default).strip().lower()
    return value if value in choices else default


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server configuration."""

    host: str = field(default_factory=lambda: os.environ.get("API_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _parse_int("API_PORT", 19093, min_val=1))
    debug: bool = field(default_factory=lambda: _parse_bool("API_DEBUG", False))


@dataclass(frozen=True)
class StoreConfig:
    """Key-value store backend configuration."""

    backend: str = field(default_factory=lambda: _parse_choice("KV_BACKEND", "file", {"file", "memory"}))
    file_path: Path = field(
        default_factory=lambda: Path(os.environ.get("KV_FILE", "./data/clashub-kv.json"))
    )

    @property
    def is_persistent(self) -> bool:
        return self.backend == "file"


@dataclass(frozen=True)
class AuthConfig:
    """Session cookie configuration."""

    session_max_age: int = field(default_factory=lambda: _parse_int("SESSION_MAX_AGE", 60 * 60 * 24 * 30, min_val=60))


@dataclass(frozen=True)
class RelayConfig:
    """Outbound relay configuration."""

    subscription_user_agent: str = field(
        default_factory=lambda: os.environ.get("SUBSCRIPTION_USER_AGENT", "Clashub/1.0").strip() or "Clashub/1.0"
    )
    fetcher_user_agent: str = field(
        default_factory=lambda: os.environ.get("FETCHER_USER_AGENT", "Clashub-Fetcher/1.0").strip()
        or "Clashub-Fetcher/1.0"
    )
    client_ip_header: str = field(
        default_factory=lambda: os.environ.get("CLIENT_IP_HEADER", "CF-Connecting-IP").strip() or "CF-Connecting-IP"
    )
    timeout: float = field(default_factory=lambda: _parse_float("RELAY_TIMEOUT", 0.0, min_val=0.0))

    @property
    def request_timeout(self) -> float | None:
        """Timeout handed to requests; ``None`` leaves the deadline to the hosting server."""
        return self.timeout if self.timeout > 0 else None


@dataclass(frozen=True)
class Constants:
    """Application constants."""

    id_pattern: re.Pattern = field(default_factory=lambda: re.compile(r"^[a-z0-9.]+(-[a-z0-9.]+)*$"))
    min_token_length: int = 6
    relay_response_headers: tuple[str, ...] = (
        "content-type",
        "content-length",
        "content-encoding",
        "content-disposition",
        "cache-control",
        "expires",
        "last-modified",
        "etag",
    )


@dataclass(frozen=True)
class Config:
    """Root configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    constants: Constants = field(default_factory=Constants)

    def validate_security(self) -> list[str]:
        """Validate security-critical settings. Returns list of warnings."""
        warnings = []

        if not self.store.is_persistent:
            warnings.append("KV_BACKEND is 'memory' - the token and all records are lost on restart")

        if self.relay.request_timeout is None:
            warnings.append("RELAY_TIMEOUT is not set - outbound relays rely on the server worker timeout")

        if self.server.debug:
            warnings.append("API_DEBUG is enabled - do not expose this instance publicly")

        return warnings


# Global configuration singleton
_config: Config | None = None


def get_config() -> Config:
    """Get global configuration singleton."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Force reload configuration (useful for testing)."""
    global _config
    _config = Config()
    return _config
