"""Startup helpers: .env loading and config dump."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("zai_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== z.ai proxy startup config ===")
    log.info("UPSTREAM_URL=%s", config.upstream_url)
    log.info("UPSTREAM_ORIGIN=%s", config.upstream_origin)
    log.info("UPSTREAM_MODEL_ID=%s name=%s", config.upstream_model_id, config.upstream_model_name)
    log.info("MODEL_NAME=%s", config.model_name)
    log.info(
        "UPSTREAM_TOKEN_set=%s value=%s",
        bool(config.upstream_token),
        mask_secret(config.upstream_token),
    )
    log.info("DEFAULT_KEY=%s", mask_secret(config.default_key, keep_start=3, keep_end=2))
    log.info("ANON_TOKEN_ENABLED=%s", config.anon_token_enabled)
    log.info("THINK_TAGS_MODE=%s", config.think_tags_mode.value)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("TOKEN_TIMEOUT_S=%s", config.token_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    if config.https_proxy or config.http_proxy:
        log.info("HTTPS_PROXY=%s HTTP_PROXY=%s", config.https_proxy, config.http_proxy)
    log.info("PORT=%s", config.port)
    log.info("DEBUG_MODE=%s", config.debug_mode)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("LOG_COLOR=%s", config.log_color)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("=================================")
