"""
Pytest configuration and shared fixtures.
"""

from typing import Callable, List

import httpx
import pytest

from ferry.configuration import FerryConfig, clear_settings_cache
from ferry.providers import OpenAIStreamingClient
from ferry.structures import CallStatus


@pytest.fixture
def make_openai_client() -> Callable[..., OpenAIStreamingClient]:
    """Build an OpenAI streaming client whose HTTP traffic goes to ``handler``."""

    def factory(handler, *, retry_interval: float = 0.0) -> OpenAIStreamingClient:
        settings = FerryConfig(
            OPENAI_API_KEY="sk-test",
            OPENAI_BASE_URL="https://api.test/v1",
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return OpenAIStreamingClient(
            settings,
            retry_interval=retry_interval,
            http_client=http_client,
        )

    return factory


@pytest.fixture
def status_log() -> List[CallStatus]:
    return []


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch, tmp_path):
    """Keep user configuration out of the tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    clear_settings_cache()
    yield
    clear_settings_cache()
