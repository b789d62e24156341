"""
开品宝 Backend — Competitor Scrape Job Tests

Firecrawl, the vision model and the datastore are all faked; these tests pin
the status lifecycle and which extraction path runs for which page.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from kaipinbao.llm import LLMError
from kaipinbao.scraper import (
    AMAZON_REVIEW_TARGET,
    FirecrawlClient,
    ScraperError,
    amazon_review_urls,
    parse_ocr_reviews,
    scrape_competitor,
    screenshot_to_base64,
)
from fakes import FakeDatabase, FakeFirecrawl


SHOP_URL = "https://shop.example.com/products/mini-juicer"
AMAZON_URL = "https://www.amazon.com/Portable-Blender/dp/B08XYZ1234/ref=sr_1_1"

REVIEW_TEXT = "Blends frozen fruit in seconds and the battery easily lasts a full week of smoothies."
OTHER_REVIEW = "The lid seal started leaking after a month, so I now carry it in a separate bag."

PRODUCT_MARKDOWN = (
    "# Mini Juicer Cup\n\n"
    "![main](https://shop.example.com/img/juicer.jpg)\n\n"
    "Price: $19.99\n\n"
    "4.2 out of 5 stars\n\n"
    "356 ratings\n\n"
    "Customers like the great value of this cup.\n"
)

PRODUCT_HTML = (
    "<html><body>"
    f'<div data-hook="review"><i class="a-icon a-star-5"></i><span data-hook="review-body">{REVIEW_TEXT}</span></div>'
    f'<div data-hook="review"><i class="a-icon a-star-2"></i><span data-hook="review-body">{OTHER_REVIEW}</span></div>'
    "</body></html>"
)


@pytest.fixture
def db() -> FakeDatabase:
    db = FakeDatabase()
    db.add_project()
    db.add_product("c1")
    return db


@pytest.fixture
def firecrawl() -> FakeFirecrawl:
    return FakeFirecrawl()


class TestParseOcrReviews:
    def test_valid_array(self):
        content = json.dumps([
            {"text": REVIEW_TEXT, "rating": 5, "title": "Love it"},
            {"text": "too short", "rating": 4},
            {"text": OTHER_REVIEW, "rating": 9},
            "not an object",
        ])

        reviews = parse_ocr_reviews(content)

        assert [(r.text, r.rating) for r in reviews] == [(REVIEW_TEXT, 5), (OTHER_REVIEW, None)]

    def test_fenced_array(self):
        assert len(parse_ocr_reviews(f'```json\n[{{"text": "{REVIEW_TEXT}"}}]\n```')) == 1

    def test_not_an_array(self):
        assert parse_ocr_reviews('{"text": "x"}') is None
        assert parse_ocr_reviews("I could not read the image") is None

    def test_empty_array(self):
        assert parse_ocr_reviews("[]") == []


class TestScreenshotToBase64:
    @pytest.mark.asyncio
    async def test_data_url(self, firecrawl):
        assert await screenshot_to_base64(firecrawl, "data:image/png;base64,aGVsbG8=") == "aGVsbG8="

    @pytest.mark.asyncio
    async def test_remote_url_is_downloaded(self, firecrawl):
        firecrawl.downloads["https://cdn.firecrawl.dev/shot.png"] = b"hello"
        assert await screenshot_to_base64(firecrawl, "https://cdn.firecrawl.dev/shot.png") == "aGVsbG8="

    @pytest.mark.asyncio
    async def test_bare_base64(self, firecrawl):
        assert await screenshot_to_base64(firecrawl, "aGVsbG8=") == "aGVsbG8="


class TestScrapeCompetitor:
    """Status lifecycle: pending → scraping → completed | failed."""

    @pytest.mark.asyncio
    async def test_generic_page(self, db, firecrawl):
        firecrawl.pages[SHOP_URL] = {
            "markdown": PRODUCT_MARKDOWN,
            "html": PRODUCT_HTML,
            "metadata": {"title": "Mini Juicer Cup | AliExpress", "description": "USB juicer"},
        }

        outcome = await scrape_competitor(db, firecrawl, "c1", SHOP_URL)

        assert outcome.success
        assert outcome.product_info.title == "Mini Juicer Cup"
        assert [(r.text, r.rating) for r in outcome.reviews] == [(REVIEW_TEXT, 5), (OTHER_REVIEW, 2)]

        product = db.products["c1"]
        assert db.status_history == [("c1", "scraping"), ("c1", "completed")]
        assert product["price"] == "$19.99"
        assert product["rating"] == 4.2
        assert product["review_count"] == 356
        assert product["main_image"] == "https://shop.example.com/img/juicer.jpg"
        assert product["review_summary"]["topPositives"] == ["the great value of this cup."]
        assert product["scraped_data"]["asin"] is None
        assert len(db.reviews) == 2
        assert all(r["sentiment"] == "neutral" for r in db.reviews)

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_failed(self, db, firecrawl):
        firecrawl.pages[SHOP_URL] = ScraperError("502 Bad Gateway")

        outcome = await scrape_competitor(db, firecrawl, "c1", SHOP_URL)

        assert not outcome.success
        assert outcome.error_code.startswith("KP-")
        assert db.status_history == [("c1", "scraping"), ("c1", "failed")]
        assert db.reviews == []

    @pytest.mark.asyncio
    async def test_empty_extraction_still_completes(self, db, firecrawl):
        firecrawl.pages[SHOP_URL] = {"markdown": "nothing useful", "html": "", "metadata": {}}

        outcome = await scrape_competitor(db, firecrawl, "c1", SHOP_URL)

        assert outcome.success
        assert outcome.reviews == []
        assert db.products["c1"]["status"] == "completed"
        assert db.products["c1"]["main_image"] is None

    @pytest.mark.asyncio
    async def test_write_failure_marks_failed(self, db, firecrawl):
        firecrawl.pages[SHOP_URL] = {"markdown": PRODUCT_MARKDOWN, "html": "", "metadata": {}}

        original = db.update_competitor_product

        async def failing_update(product_id, fields):
            db.fail_writes = True
            try:
                await original(product_id, fields)
            finally:
                db.fail_writes = False

        db.update_competitor_product = failing_update

        outcome = await scrape_competitor(db, firecrawl, "c1", SHOP_URL)

        assert not outcome.success
        assert outcome.error_code == "KP-TEST01"
        assert db.status_history[-1] == ("c1", "failed")

    @pytest.mark.asyncio
    async def test_amazon_uses_screenshot_ocr(self, db, firecrawl, monkeypatch):
        firecrawl.pages[AMAZON_URL] = {"markdown": PRODUCT_MARKDOWN, "html": PRODUCT_HTML, "metadata": {}}
        for url in amazon_review_urls("B08XYZ1234"):
            firecrawl.review_pages[url] = {"screenshot": "data:image/png;base64,aGVsbG8=", "markdown": ""}
        ocr = AsyncMock(return_value=json.dumps([{"text": REVIEW_TEXT, "rating": 4}]))
        monkeypatch.setattr("kaipinbao.scraper.call_llm_vision", ocr)

        outcome = await scrape_competitor(db, firecrawl, "c1", AMAZON_URL)

        assert outcome.success
        assert [(r.text, r.rating) for r in outcome.reviews] == [(REVIEW_TEXT, 4)]
        assert ocr.await_count == 2
        assert ocr.await_args.args[1] == "aGVsbG8="
        assert db.screenshots["c1"] == b"hello"
        assert outcome.screenshot_url.endswith("c1.png")
        assert db.products["c1"]["scraped_data"]["asin"] == "B08XYZ1234"
        assert firecrawl.requested[1:] == amazon_review_urls("B08XYZ1234")

    @pytest.mark.asyncio
    async def test_amazon_ocr_failure_falls_back_to_markdown(self, db, firecrawl, monkeypatch):
        review_markdown = f"4.0 out of 5 stars Solid\nVerified Purchase\n{REVIEW_TEXT}\nHelpful\n"
        firecrawl.pages[AMAZON_URL] = {"markdown": PRODUCT_MARKDOWN, "html": "", "metadata": {}}
        for url in amazon_review_urls("B08XYZ1234"):
            firecrawl.review_pages[url] = {"screenshot": "data:image/png;base64,aGVsbG8=", "markdown": review_markdown}
        monkeypatch.setattr(
            "kaipinbao.scraper.call_llm_vision",
            AsyncMock(side_effect=LLMError("All LLM providers failed", reason="other")),
        )

        outcome = await scrape_competitor(db, firecrawl, "c1", AMAZON_URL)

        assert [(r.text, r.rating) for r in outcome.reviews] == [(REVIEW_TEXT, 4)]

    @pytest.mark.asyncio
    async def test_amazon_without_review_pages_falls_back_to_html(self, db, firecrawl):
        firecrawl.pages[AMAZON_URL] = {"markdown": PRODUCT_MARKDOWN, "html": PRODUCT_HTML, "metadata": {}}

        outcome = await scrape_competitor(db, firecrawl, "c1", AMAZON_URL)

        assert outcome.success
        assert len(outcome.reviews) == 2
        assert outcome.screenshot_url is None

    @pytest.mark.asyncio
    async def test_amazon_stops_after_target(self, db, firecrawl, monkeypatch):
        firecrawl.pages[AMAZON_URL] = {"markdown": "", "html": "", "metadata": {}}
        for url in amazon_review_urls("B08XYZ1234"):
            firecrawl.review_pages[url] = {"screenshot": "aGVsbG8=", "markdown": ""}
        many = [{"text": f"{i:03d} " + REVIEW_TEXT, "rating": 5} for i in range(AMAZON_REVIEW_TARGET)]
        ocr = AsyncMock(return_value=json.dumps(many))
        monkeypatch.setattr("kaipinbao.scraper.call_llm_vision", ocr)

        outcome = await scrape_competitor(db, firecrawl, "c1", AMAZON_URL)

        assert len(outcome.reviews) == AMAZON_REVIEW_TARGET
        assert ocr.await_count == 1


class TestFirecrawlClient:
    """The HTTP layer itself, with httpx's transport mocked."""

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_io(self):
        with pytest.raises(ScraperError, match="not configured"):
            await FirecrawlClient(api_key="").scrape_page(SHOP_URL)

    @pytest.mark.asyncio
    async def test_unsuccessful_body_raises(self, monkeypatch):
        async def fake_post(self, url, json=None, headers=None):
            return httpx.Response(200, json={"success": False, "error": "blocked"}, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

        with pytest.raises(ScraperError, match="blocked"):
            await FirecrawlClient(api_key="k").scrape_page(SHOP_URL)

    @pytest.mark.asyncio
    async def test_returns_data(self, monkeypatch):
        captured = {}

        async def fake_post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return httpx.Response(200, json={"success": True, "data": {"markdown": "# hi"}}, request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

        data = await FirecrawlClient(api_key="k").scrape_review_page(SHOP_URL)

        assert data == {"markdown": "# hi"}
        assert captured["headers"]["Authorization"] == "Bearer k"
        assert captured["json"]["formats"] == ["screenshot", "markdown"]
        assert captured["json"]["actions"][0]["type"] == "wait"

    @pytest.mark.asyncio
    async def test_http_error_raises(self, monkeypatch):
        async def fake_post(self, url, json=None, headers=None):
            return httpx.Response(500, text="boom", request=httpx.Request("POST", url))

        monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

        with pytest.raises(ScraperError):
            await FirecrawlClient(api_key="k").scrape_page(SHOP_URL)
