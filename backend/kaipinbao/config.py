"""
开品宝 Backend — Central Configuration

All environment variables and LLM settings live here.
Import `settings`, `LLM_CONFIG`, `log`, and `generate_error_code` from this module.
Do not read `os.environ` anywhere else.
"""

import uuid
from datetime import datetime, timezone

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All environment variables. Loaded from .env or the deployment env."""

    # LLM Providers
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openai_api_key: str = ""          # Optional fallback for single-shot calls
    anthropic_api_key: str = ""       # Optional fallback for single-shot calls

    # Scraping
    firecrawl_api_key: str = ""

    # Database
    supabase_url: str
    supabase_service_key: str

    # Tables / buckets
    projects_table: str = "projects"
    messages_table: str = "chat_messages"
    competitor_products_table: str = "competitor_products"
    competitor_reviews_table: str = "competitor_reviews"
    screenshot_bucket: str = "review-screenshots"

    # App
    environment: str = "development"  # "development" | "production"
    cors_origins: str = "http://localhost:5173"  # Comma-separated for multiple origins

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton, import this everywhere
settings = Settings()


# ──────────────────────────────────────────────────────
# Logging Utilities
# ──────────────────────────────────────────────────────

def generate_error_code() -> str:
    """Generate a short, user-friendly error reference code.

    Format: 'KP-' followed by 6 uppercase hex characters.
    Example: 'KP-3F8A2C'

    Used whenever an error is surfaced to the user (JSON error body or SSE error event).
    The same code is logged on the backend AND sent to the user, so the user can
    quote it and the team can grep logs for it.
    """
    return f"KP-{uuid.uuid4().hex[:6].upper()}"


def log(level: str, message: str, **context) -> None:
    """Structured print-based logger.

    Every log line follows the format:
        [ISO_TIMESTAMP] [LEVEL] message | key1=value1 key2=value2

    Args:
        level: One of "INFO", "WARN", "ERROR".
        message: Human-readable description of what happened.
        **context: Arbitrary key-value pairs. Always include project_id when available.

    Usage:
        log("INFO", "chat turn started", project_id="abc-123", stage=1)
        log("ERROR", "gemini stream failed", project_id="abc-123",
            error_code="KP-3F8A2C", error=str(e))
    """
    ts = datetime.now(timezone.utc).isoformat()
    ctx = " ".join(f"{k}={v}" for k, v in context.items())
    print(f"[{ts}] [{level}] {message} | {ctx}", flush=True)


# ──────────────────────────────────────────────────────
# LLM Configuration
# ──────────────────────────────────────────────────────

# Single-shot calls (market analysis, competitor analysis) go through litellm.
# The streaming chat talks to Gemini directly, see gemini.py.
LLM_CONFIG = {
    "persona": {
        "name": "开品宝",
        "system_prompt": (
            "你是“开品宝”的资深市场分析专家，服务于跨境电商卖家和工厂，"
            "拥有消费电子与跨境电商行业的多年研究经验。\n\n"
            "Guidelines:\n"
            "- 结论必须基于提供的数据；信息不足时基于行业经验做合理推断，并说明是推断。\n"
            "- 建议要具体、可执行，重点寻找差异化机会和市场空白。\n"
            "- Output strictly valid JSON when instructed. No markdown code fences, "
            "no explanation text outside the JSON."
        ),
    },
    "temperature": 0.3,
    "max_tokens": 4000,
    "fallback_chain": [
        "gemini/gemini-2.5-flash",       # Primary
        "gemini/gemini-2.0-flash",       # Fallback 1: free tier
        "openai/gpt-4o-mini",            # Fallback 2: non-Google
        "anthropic/claude-3-haiku",      # Fallback 3: last resort
    ],
}

# Vision model used to OCR review-page screenshots.
OCR_MODEL = "gemini/gemini-2.5-pro"

# Chat streaming (direct Gemini SSE)
CHAT_CONFIG = {
    "temperature": 0.7,
    "max_output_tokens": 8192,
    "connect_timeout_seconds": 10.0,
    "read_timeout_seconds": 120.0,
}
