"""Configuration management for the chat relay service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Tuple


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _env_first(*names: str, default: str = "") -> str:
    """Return the first non-empty value among several environment variable aliases."""
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return v
    return default


def _csv_list(value: str) -> Tuple[str, ...]:
    """Parse a comma-separated string into an ordered tuple of non-empty items."""
    items = [x.strip() for x in (value or "").split(",")]
    return tuple(x for x in items if x and x.lower() != "empty")


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # OpenAI-compatible upstream
    openai_api_key: str
    openai_base_url: str
    openai_default_model: str
    openai_allowed_models: FrozenSet[str]
    openai_unity_temperature_markers: Tuple[str, ...]

    # Gemini-compatible upstream
    gemini_api_key: str
    gemini_base_url: str
    gemini_default_model: str
    gemini_unity_temperature_markers: Tuple[str, ...]

    # Access control / CORS collaborators
    allowed_origins: Tuple[str, ...]
    client_keys: FrozenSet[str]

    # Timeouts and limits
    request_timeout_s: float
    max_request_bytes: int

    # Server settings
    port: int
    log_level: str
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            openai_api_key=_env_first("OPENAI_API_KEY", "OPENAI_KEY"),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_default_model=_env_str("OPENAI_DEFAULT_MODEL", "gpt-5-mini").strip(),
            openai_allowed_models=frozenset(
                _csv_list(_env_str("OPENAI_ALLOWED_MODELS", "gpt-5-mini,gpt-4o"))
            ),
            openai_unity_temperature_markers=_csv_list(
                _env_str("OPENAI_UNITY_TEMPERATURE_MARKERS", "mini")
            ),
            gemini_api_key=_env_first("GEMINI_API_KEY", "GEMINI_KEY"),
            gemini_base_url=_env_str(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
            ).rstrip("/"),
            gemini_default_model=_env_str("GEMINI_DEFAULT_MODEL", "gemini-3-flash-preview").strip(),
            gemini_unity_temperature_markers=_csv_list(
                _env_str("GEMINI_UNITY_TEMPERATURE_MARKERS", "flash")
            ),
            allowed_origins=_csv_list(_env_first("PROXY_ORIGINS", "ALLOWED_ORIGINS")),
            client_keys=frozenset(_csv_list(_env_first("PROXY_CLIENT_KEYS", "CLIENT_KEYS"))),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/chat-relay/chat-relay.log"),
            user_agent=_env_str("USER_AGENT", "chat-relay/1.0.0"),
        )

    def validate(self) -> None:
        """Validate configuration.

        Provider keys are not required here: a missing key is reported per request
        as a server misconfiguration so the other provider keeps working.
        """
        if not self.openai_base_url:
            raise ValueError("OPENAI_BASE_URL must be non-empty")
        if not self.gemini_base_url:
            raise ValueError("GEMINI_BASE_URL must be non-empty")
        if not self.openai_default_model:
            raise ValueError("OPENAI_DEFAULT_MODEL must be non-empty")
        if not self.gemini_default_model:
            raise ValueError("GEMINI_DEFAULT_MODEL must be non-empty")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
