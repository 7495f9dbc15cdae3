"""
ProxyBase Configuration
-----------------------
Centralized configuration for the ProxyBase MCP server.
Loads from environment variables; command-line flags override on top.
"""

import os
import logging
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

logger = logging.getLogger("ProxyBase.Config")

DEFAULT_API_URL = "https://api.proxybase.xyz"
DEFAULT_LOG_LEVEL = "info"
SUPPORTED_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(ValueError):
    """Raised for startup misconfiguration; the server must not start."""


def normalize_api_url(api_url: str) -> str:
    value = (api_url or "").strip().rstrip("/")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid ProxyBase API URL: {api_url!r}")
    return value


def normalize_log_level(level: Optional[str]) -> str:
    candidate = (level or DEFAULT_LOG_LEVEL).strip().lower()
    # env_logger style spellings
    if candidate == "warn":
        candidate = "warning"
    if candidate not in SUPPORTED_LOG_LEVELS:
        raise ConfigError(
            f"Unsupported log level {level!r}; expected one of {SUPPORTED_LOG_LEVELS}"
        )
    return candidate


def _parse_positive_env(name: str, default, cast=float):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive %s. Using default %s.",
            name,
            raw,
            cast.__name__,
            default,
        )
        return default


def _parse_non_negative_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
        if value < 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'; using default %d.", name, raw, default)
        return default


class BackendConfig(BaseModel):
    """HTTP client configuration for the ProxyBase REST backend."""
    api_url: str = DEFAULT_API_URL
    timeout_sec: float = 10.0
    max_retries: int = 2


class DispatchConfig(BaseModel):
    """Worker pool and deadline configuration for the MCP transport."""
    max_workers: int = 16
    queue_limit: int = 64
    call_timeout_sec: float = 30.0
    shutdown_timeout_sec: float = 35.0


class ProxyBaseConfig(BaseModel):
    """Root configuration for the ProxyBase MCP server."""
    backend: BackendConfig = Field(default_factory=BackendConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "ProxyBaseConfig":
        """
        Load configuration from environment variables.

        - PROXYBASE_API_URL: backend base URL (validated, fatal if unusable)
        - PROXYBASE_LOG_LEVEL: stderr log verbosity (default info)
        - PROXYBASE_MCP_MAX_WORKERS / PROXYBASE_MCP_QUEUE_LIMIT: admission bounds
        - PROXYBASE_MCP_CALL_TIMEOUT_SEC: per-request deadline
        - PROXYBASE_MCP_SHUTDOWN_TIMEOUT_SEC: drain budget after stdin closes
        - PROXYBASE_HTTP_TIMEOUT_SEC / PROXYBASE_HTTP_MAX_RETRIES: backend calls
        """
        api_url = normalize_api_url(os.environ.get("PROXYBASE_API_URL", DEFAULT_API_URL))
        log_level = normalize_log_level(os.environ.get("PROXYBASE_LOG_LEVEL"))

        max_workers = _parse_positive_env("PROXYBASE_MCP_MAX_WORKERS", 16, int)
        queue_limit = max(
            max_workers,
            _parse_positive_env("PROXYBASE_MCP_QUEUE_LIMIT", max_workers * 4, int),
        )

        return cls(
            backend=BackendConfig(
                api_url=api_url,
                timeout_sec=_parse_positive_env("PROXYBASE_HTTP_TIMEOUT_SEC", 10.0),
                max_retries=_parse_non_negative_int_env("PROXYBASE_HTTP_MAX_RETRIES", 2),
            ),
            dispatch=DispatchConfig(
                max_workers=max_workers,
                queue_limit=queue_limit,
                call_timeout_sec=_parse_positive_env("PROXYBASE_MCP_CALL_TIMEOUT_SEC", 30.0),
                shutdown_timeout_sec=_parse_positive_env("PROXYBASE_MCP_SHUTDOWN_TIMEOUT_SEC", 35.0),
            ),
            log_level=log_level,
        )
