"""
开品宝 Backend — Test Doubles

In-memory stand-ins for the Database, Gemini stream, Firecrawl and litellm
response objects, plus SSE helpers. Fixtures in conftest.py wire them in.
"""

import json
from dataclasses import dataclass
from typing import Optional

from kaipinbao.db import DatabaseError
from kaipinbao.gemini import GeminiStreamError
from kaipinbao.scraper import ScraperError


# -----------------------------------------------------------------------------
# Mock LLM Response Classes (litellm shape)
# -----------------------------------------------------------------------------


@dataclass
class MockLLMMessage:
    """Mock message from LLM response."""
    content: str
    reasoning_content: Optional[str] = None


@dataclass
class MockLLMChoice:
    """Mock choice from LLM response."""
    message: MockLLMMessage


@dataclass
class MockLLMUsage:
    """Mock usage stats from LLM response."""
    total_tokens: int = 100
    prompt_tokens: int = 50
    completion_tokens: int = 50


@dataclass
class MockLLMResponse:
    """Mock LLM completion response."""
    choices: list[MockLLMChoice]
    usage: MockLLMUsage = None

    def __post_init__(self):
        if self.usage is None:
            self.usage = MockLLMUsage()


def create_mock_llm_response(content: str) -> MockLLMResponse:
    """Create a mock LLM response with given content."""
    return MockLLMResponse(
        choices=[MockLLMChoice(message=MockLLMMessage(content=content))]
    )


# -----------------------------------------------------------------------------
# Gemini SSE helpers
# -----------------------------------------------------------------------------


def gemini_event(text: str = "", finish: bool = False) -> bytes:
    """One upstream Gemini SSE event carrying `text`."""
    candidate = {"content": {"parts": [{"text": text}], "role": "model"}}
    if finish:
        candidate["finishReason"] = "STOP"
    return f"data: {json.dumps({'candidates': [candidate]}, ensure_ascii=False)}\r\n\r\n".encode("utf-8")


def gemini_stream_bytes(*texts: str) -> list[bytes]:
    """Upstream events for `texts`, the last one carrying finishReason."""
    if not texts:
        return [gemini_event("", finish=True)]
    events = [gemini_event(t) for t in texts[:-1]]
    events.append(gemini_event(texts[-1], finish=True))
    return events


async def aiter_list(items):
    for item in items:
        yield item


def parse_sse_events(content: str) -> list[dict]:
    """Parse SSE event stream into list of event dicts ([DONE] becomes {"done": True})."""
    events = []
    for line in content.split("\n"):
        if not line.startswith("data: "):
            continue
        raw = line[6:]
        if raw == "[DONE]":
            events.append({"done": True})
            continue
        try:
            events.append(json.loads(raw))
        except json.JSONDecodeError:
            continue
    return events


def streamed_text(events: list[dict]) -> str:
    """Concatenate the delta content of normalized chunks."""
    return "".join(
        e["choices"][0]["delta"]["content"] for e in events if "choices" in e
    )


# -----------------------------------------------------------------------------
# Fake collaborators
# -----------------------------------------------------------------------------


class FakeGeminiStream:
    """Stands in for GeminiStream: yields pre-baked byte chunks, optionally raising midway."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeGemini:
    """Stands in for GeminiStreamClient."""

    def __init__(self):
        self.chunks: list[bytes] = gemini_stream_bytes("好的")
        self.error: Exception | None = None
        self.open_error: GeminiStreamError | None = None
        self.calls: list[dict] = []
        self.streams: list[FakeGeminiStream] = []

    def respond_with(self, *texts: str) -> None:
        self.chunks = gemini_stream_bytes(*texts)

    async def open_stream(self, system_prompt, messages, project_id=None):
        self.calls.append({"system_prompt": system_prompt, "messages": messages, "project_id": project_id})
        if self.open_error is not None:
            raise self.open_error
        stream = FakeGeminiStream(list(self.chunks), self.error)
        self.streams.append(stream)
        return stream


class FakeDatabase:
    """
    In-memory Database with the same async method names.

    Set `fail_writes` / `fail_reads` to exercise the DatabaseError paths.
    """

    def __init__(self):
        self.projects: dict[str, dict] = {}
        self.messages: list[dict] = []
        self.products: dict[str, dict] = {}
        self.reviews: list[dict] = []
        self.screenshots: dict[str, bytes] = {}
        self.status_history: list[tuple[str, str]] = []
        self.prd_writes = 0
        self.fail_writes = False
        self.fail_reads = False

    def add_project(self, project_id="p1", name="便携榨汁杯", description="户外用的无线榨汁杯", prd_data=None):
        self.projects[project_id] = {
            "id": project_id,
            "name": name,
            "description": description,
            "prd_data": prd_data or {},
        }
        return self.projects[project_id]

    def add_product(self, product_id="c1", project_id="p1", **fields):
        row = {"id": product_id, "project_id": project_id, "status": "pending", **fields}
        self.products[product_id] = row
        return row

    def _check_write(self, operation):
        if self.fail_writes:
            raise DatabaseError(operation, "simulated failure", "KP-TEST01")

    async def get_project(self, project_id, strict=False):
        if self.fail_reads:
            if strict:
                raise DatabaseError("get_project", "simulated failure", "KP-TEST02")
            return None
        project = self.projects.get(project_id)
        return dict(project) if project else None

    async def get_prd_data(self, project_id, strict=False):
        project = await self.get_project(project_id, strict=strict)
        return dict(project.get("prd_data") or {}) if project else {}

    async def update_prd_data(self, project_id, prd_data):
        self._check_write("update_prd_data")
        self.prd_writes += 1
        self.projects[project_id]["prd_data"] = prd_data

    async def insert_message(self, project_id, role, content, stage):
        self._check_write("insert_message")
        row = {
            "id": f"m{len(self.messages) + 1}",
            "project_id": project_id,
            "role": role,
            "content": content,
            "stage": stage,
        }
        self.messages.append(row)
        return row

    async def list_messages(self, project_id, stage=None):
        return [
            m for m in self.messages
            if m["project_id"] == project_id and (stage is None or m["stage"] == stage)
        ]

    async def get_competitor_product(self, product_id):
        product = self.products.get(product_id)
        return dict(product) if product else None

    async def list_competitor_products(self, project_id, status=None):
        return [
            dict(p) for p in self.products.values()
            if p["project_id"] == project_id and (status is None or p.get("status") == status)
        ]

    async def list_reviews(self, product_ids):
        return [r for r in self.reviews if r["competitor_product_id"] in product_ids]

    async def set_product_status(self, product_id, status):
        self._check_write("set_product_status")
        self.status_history.append((product_id, status))
        self.products[product_id]["status"] = status

    async def update_competitor_product(self, product_id, fields):
        self._check_write("update_competitor_product")
        self.products[product_id].update(fields)
        if "status" in fields:
            self.status_history.append((product_id, fields["status"]))

    async def insert_reviews(self, product_id, reviews):
        for r in reviews:
            self.reviews.append({
                "id": f"r{len(self.reviews) + 1}",
                "competitor_product_id": product_id,
                "review_text": r["text"],
                "rating": r.get("rating"),
                "sentiment": "neutral",
                "is_positive": None,
            })
        return len(reviews)

    async def update_review_sentiment(self, review_id, sentiment, is_positive):
        self._check_write("update_review_sentiment")
        for r in self.reviews:
            if r.get("id") == review_id:
                r["sentiment"] = sentiment
                r["is_positive"] = is_positive

    async def upload_screenshot(self, product_id, image_bytes):
        self.screenshots[product_id] = image_bytes
        return f"https://test.supabase.co/storage/v1/object/public/review-screenshots/{product_id}.png"


class FakeFirecrawl:
    """Stands in for FirecrawlClient. `pages` maps URL → data dict (or an exception to raise)."""

    def __init__(self, api_key="test-firecrawl-key"):
        self.api_key = api_key
        self.pages: dict[str, object] = {}
        self.review_pages: dict[str, object] = {}
        self.downloads: dict[str, bytes] = {}
        self.requested: list[str] = []

    @staticmethod
    def _resolve(table, url):
        result = table.get(url)
        if result is None:
            raise ScraperError(f"no fixture for {url}")
        if isinstance(result, Exception):
            raise result
        return result

    async def scrape_page(self, url):
        self.requested.append(url)
        return self._resolve(self.pages, url)

    async def scrape_review_page(self, url):
        self.requested.append(url)
        return self._resolve(self.review_pages, url)

    async def download(self, url):
        return self.downloads[url]


