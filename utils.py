"""Utility functions for the chat relay service."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import mask_secret

log = logging.getLogger("chat_relay")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Chat relay startup config ===")
    log.info("OPENAI_BASE_URL=%s", config.openai_base_url)
    log.info(
        "OPENAI_API_KEY_set=%s value=%s len=%s",
        bool(config.openai_api_key),
        mask_secret(config.openai_api_key),
        len(config.openai_api_key or ""),
    )
    log.info("OPENAI_DEFAULT_MODEL=%s", config.openai_default_model)
    log.info("OPENAI_ALLOWED_MODELS=%s", sorted(config.openai_allowed_models))
    log.info("OPENAI_UNITY_TEMPERATURE_MARKERS=%s", list(config.openai_unity_temperature_markers))
    log.info("GEMINI_BASE_URL=%s", config.gemini_base_url)
    log.info(
        "GEMINI_API_KEY_set=%s value=%s len=%s",
        bool(config.gemini_api_key),
        mask_secret(config.gemini_api_key),
        len(config.gemini_api_key or ""),
    )
    log.info("GEMINI_DEFAULT_MODEL=%s", config.gemini_default_model)
    log.info("GEMINI_UNITY_TEMPERATURE_MARKERS=%s", list(config.gemini_unity_temperature_markers))
    log.info("PROXY_ORIGINS=%s", list(config.allowed_origins) or "*")
    log.info("PROXY_CLIENT_KEYS count=%d", len(config.client_keys))
    if not config.client_keys:
        log.info("PROXY_CLIENT_KEYS empty means every caller is accepted.")
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("===============================")
