"""Configuration management for the z.ai OpenAI-compatible proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass

from models import RenderingMode


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable; unparsable values are a config error."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {v!r}") from None


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable; unparsable values are a config error."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {v!r}") from None


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback (empty counts as unset)."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v


def _env_port(name: str, default: int) -> int:
    """Parse a listen port, tolerating the ':3007' address form."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        port = int(raw.rsplit(":", 1)[-1])
    except ValueError:
        raise ValueError(f"{name} must be a port number, got {raw!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"{name} out of range: {port}")
    return port


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Upstream chat service
    upstream_url: str
    upstream_origin: str
    upstream_token: str
    upstream_model_id: str
    upstream_model_name: str
    anon_token_enabled: bool

    # Model exposed to OpenAI clients
    model_name: str

    # Inbound auth
    default_key: str

    # Rendering of thinking output
    think_tags_mode: RenderingMode

    # Timeouts and limits
    request_timeout_s: float
    token_timeout_s: float
    max_request_bytes: int

    # Outbound proxies
    http_proxy: str
    https_proxy: str

    # Server settings
    port: int
    debug_mode: bool
    log_level: str
    log_path: str
    log_color: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        debug_mode = _env_bool("DEBUG_MODE", False)
        log_level = os.getenv("LOG_LEVEL", "INFO").upper().strip()
        if debug_mode and log_level != "DISABLE":
            log_level = "DEBUG"
        return cls(
            upstream_url=_env_str("UPSTREAM_URL", "https://chat.z.ai/api/chat/completions"),
            upstream_origin=_env_str("UPSTREAM_ORIGIN", "https://chat.z.ai").rstrip("/"),
            upstream_token=_env_str("UPSTREAM_TOKEN", ""),
            upstream_model_id=_env_str("UPSTREAM_MODEL_ID", "0727-360B-API"),
            upstream_model_name=_env_str("UPSTREAM_MODEL_NAME", "GLM-4.5"),
            anon_token_enabled=_env_bool("ANON_TOKEN_ENABLED", True),
            model_name=_env_str("MODEL_NAME", "GLM-4.5"),
            default_key=_env_str("DEFAULT_KEY", "sk-123456"),
            think_tags_mode=RenderingMode.parse(_env_str("THINK_TAGS_MODE", "think")),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            token_timeout_s=_env_float("TOKEN_TIMEOUT_S", 10.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            http_proxy=_env_str("HTTP_PROXY", ""),
            https_proxy=_env_str("HTTPS_PROXY", ""),
            port=_env_port("PORT", 3007),
            debug_mode=debug_mode,
            log_level=log_level,
            log_path=_env_str("LOG_PATH", "/var/log/zai-proxy/zai-proxy.log"),
            log_color=_env_bool("LOG_COLOR", True),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if not self.upstream_url:
            raise ValueError("UPSTREAM_URL must be non-empty")
        if not self.upstream_origin.startswith(("http://", "https://")):
            raise ValueError("UPSTREAM_ORIGIN must be an http(s) URL")
        if not self.default_key:
            raise ValueError("DEFAULT_KEY must be non-empty")
        if not self.model_name:
            raise ValueError("MODEL_NAME must be non-empty")
        if not self.upstream_token and not self.anon_token_enabled:
            raise ValueError("UPSTREAM_TOKEN is required when ANON_TOKEN_ENABLED is off")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.token_timeout_s <= 0:
            raise ValueError("TOKEN_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be in 1..65535")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
