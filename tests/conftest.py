"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/chat_relay_test.log")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def test_config():
    """Create test configuration."""
    return AppConfig(
        openai_api_key="test-openai-key",
        openai_base_url="https://openai.test/v1",
        openai_default_model="gpt-5-mini",
        openai_allowed_models=frozenset({"gpt-5-mini", "gpt-4o"}),
        openai_unity_temperature_markers=("mini",),
        gemini_api_key="test-gemini-key",
        gemini_base_url="https://gemini.test/v1beta",
        gemini_default_model="gemini-3-flash-preview",
        gemini_unity_temperature_markers=("flash",),
        allowed_origins=(),
        client_keys=frozenset(),
        request_timeout_s=30.0,
        max_request_bytes=2_000_000,
        port=8000,
        log_level="DEBUG",
        log_path="/tmp/chat_relay_test.log",
        user_agent="chat-relay-test/1.0",
    )


@pytest.fixture(autouse=True)
def reset_logged_once():
    """Forget logged-once warning kinds between tests to avoid order coupling."""
    from logger import logged_once

    logged_once.reset()
    yield
    logged_once.reset()
