"""
开品宝 Backend — Shared Test Fixtures

Provides in-memory versions of external services (Gemini stream, LLM, Supabase,
Firecrawl) for deterministic, fast unit tests.
"""

import json
import os
import sys
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient, ASGITransport

# Ensure the kaipinbao package and the test doubles are importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))


# -----------------------------------------------------------------------------
# Environment Setup (before importing app modules)
# -----------------------------------------------------------------------------

os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("FIRECRAWL_API_KEY", "test-firecrawl-key")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-supabase-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")

from fakes import (  # noqa: E402
    FakeDatabase,
    FakeFirecrawl,
    FakeGemini,
    MockLLMResponse,
    create_mock_llm_response,
    parse_sse_events,
)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def fake_db() -> FakeDatabase:
    db = FakeDatabase()
    db.add_project()
    return db


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def fake_firecrawl() -> FakeFirecrawl:
    return FakeFirecrawl()


@pytest.fixture
def app(fake_db, fake_gemini, fake_firecrawl):
    """The FastAPI app with every external dependency replaced by a fake."""
    from kaipinbao.db import get_db
    from kaipinbao.gemini import get_gemini
    from kaipinbao.main import app
    from kaipinbao.ratelimit import limiter
    from kaipinbao.scraper import get_firecrawl

    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_gemini] = lambda: fake_gemini
    app.dependency_overrides[get_firecrawl] = lambda: fake_firecrawl
    limiter.enabled = False
    yield app
    app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture
async def client(app):
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# -----------------------------------------------------------------------------
# LLM Mocking Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_llm_with_response(monkeypatch):
    """
    Factory fixture to mock LLM with a specific response.

    Usage:
        def test_example(mock_llm_with_response):
            mock = mock_llm_with_response({"key": "value"})
    """
    def _create_mock(response_data):
        content = response_data if isinstance(response_data, str) else json.dumps(response_data, ensure_ascii=False)

        async def mock_acompletion(*args, **kwargs) -> MockLLMResponse:
            return create_mock_llm_response(content)

        mock = AsyncMock(side_effect=mock_acompletion)
        monkeypatch.setattr("litellm.acompletion", mock)
        return mock

    return _create_mock


@pytest.fixture
def mock_llm_failure(monkeypatch):
    """Mock LLM to simulate all providers failing."""
    async def mock_acompletion(*args, **kwargs):
        raise Exception("Rate limit exceeded")

    mock = AsyncMock(side_effect=mock_acompletion)
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


@pytest.fixture
def mock_llm_rate_limit_then_success(monkeypatch):
    """Mock LLM to fail with rate limit once, then succeed."""
    call_count = 0

    async def mock_acompletion(*args, **kwargs) -> MockLLMResponse:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise Exception("429 rate_limit_exceeded")
        return create_mock_llm_response('{"ok": true}')

    mock = AsyncMock(side_effect=mock_acompletion)
    monkeypatch.setattr("litellm.acompletion", mock)
    return mock


@pytest.fixture(autouse=True)
def reset_llm_state():
    """Reset LLM cooldowns before each test."""
    import kaipinbao.llm as llm_module
    llm_module._rate_limited_until.clear()
    yield
    llm_module._rate_limited_until.clear()


@pytest.fixture
def parse_sse():
    """Fixture providing SSE parsing helper."""
    return parse_sse_events
