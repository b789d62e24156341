"""
开品宝 Backend — Competitor Scraping

Firecrawl fetches the page (markdown + HTML + metadata, or a screenshot for
Amazon review pages); extraction.py turns it into product info and reviews.

Status lifecycle of a competitor product: pending → scraping → completed | failed.
Only a failed fetch of the product page marks the job failed; thin or empty
heuristic results still complete it.
"""

import asyncio
import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

from kaipinbao.config import generate_error_code, log, settings
from kaipinbao.db import Database, DatabaseError
from kaipinbao.extraction import (
    ENOUGH_REVIEWS,
    MAX_REVIEWS,
    extract_asin,
    extract_main_image,
    extract_product_info,
    extract_review_summary,
    extract_reviews_from_html,
    extract_reviews_from_markdown,
    is_amazon_url,
    merge_unique_reviews,
)
from kaipinbao.llm import LLMError, call_llm_vision, extract_json_text
from kaipinbao.models import ProductInfo, ReviewRecord, ReviewSummary
from kaipinbao.prompts import REVIEW_OCR_PROMPT


_scrape_semaphore = asyncio.Semaphore(2)

FIRECRAWL_SCRAPE_URL = "https://api.firecrawl.dev/v1/scrape"
AMAZON_REVIEW_TARGET = 50
MIN_OCR_REVIEW_CHARS = 20
MAX_STORED_MARKDOWN = 50000

REVIEW_PAGE_ACTIONS = [
    {"type": "wait", "milliseconds": 3000},
    {"type": "scroll", "direction": "down", "amount": 800},
    {"type": "wait", "milliseconds": 2000},
    {"type": "scroll", "direction": "down", "amount": 800},
    {"type": "wait", "milliseconds": 2000},
]


class ScraperError(Exception):
    pass


class FirecrawlClient:
    def __init__(self, api_key: str, timeout: float = 90.0):
        self.api_key = api_key
        self.timeout = timeout

    async def scrape(self, url: str, formats: list[str], wait_for: int = 5000, actions: list[dict] | None = None) -> dict:
        """POST /v1/scrape and return its `data` object."""
        if not self.api_key:
            raise ScraperError("FIRECRAWL_API_KEY is not configured")

        payload = {"url": url, "formats": formats, "onlyMainContent": False, "waitFor": wait_for}
        if actions:
            payload["actions"] = actions
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        async with _scrape_semaphore:
            log("INFO", "firecrawl scrape started", url=url, formats=",".join(formats))
            start = time.monotonic()
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(FIRECRAWL_SCRAPE_URL, json=payload, headers=headers)
                    response.raise_for_status()
                    body = response.json()
            except (httpx.HTTPError, json.JSONDecodeError) as e:
                raise ScraperError(str(e)) from e

        if not body.get("success"):
            raise ScraperError(str(body.get("error") or "Scraping failed"))
        data = body.get("data") or {}
        log("INFO", "firecrawl scrape completed", url=url,
            markdown_length=len(data.get("markdown") or ""),
            duration_ms=int((time.monotonic() - start) * 1000))
        return data

    async def scrape_page(self, url: str) -> dict:
        return await self.scrape(url, ["markdown", "html", "links"], wait_for=5000)

    async def scrape_review_page(self, url: str) -> dict:
        return await self.scrape(url, ["screenshot", "markdown"], wait_for=8000, actions=REVIEW_PAGE_ACTIONS)

    async def download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise ScraperError(str(e)) from e


def get_firecrawl() -> FirecrawlClient:
    """FastAPI dependency. Override in tests via app.dependency_overrides[get_firecrawl]."""
    return FirecrawlClient(api_key=settings.firecrawl_api_key)


# ─────────────────────────────────────────────
# Amazon review pages
# ─────────────────────────────────────────────

def amazon_review_urls(asin: str) -> list[str]:
    return [
        f"https://www.amazon.com/product-reviews/{asin}/?sortBy=recent&pageNumber=1",
        f"https://www.amazon.com/product-reviews/{asin}/?sortBy=helpful&pageNumber=1",
    ]


def parse_ocr_reviews(content: str) -> Optional[list[ReviewRecord]]:
    """Reviews from the OCR model's JSON array; None when the output is not a JSON array."""
    try:
        parsed = json.loads(extract_json_text(content))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None

    reviews = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or len(text.strip()) < MIN_OCR_REVIEW_CHARS:
            continue
        rating = item.get("rating")
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            rating = None
        reviews.append(ReviewRecord(text=text.strip(), rating=rating))
    return reviews


async def screenshot_to_base64(firecrawl: FirecrawlClient, screenshot: str) -> Optional[str]:
    """Firecrawl hands back a URL, a data: URL or bare base64."""
    if screenshot.startswith("http"):
        try:
            return base64.b64encode(await firecrawl.download(screenshot)).decode("ascii")
        except ScraperError as e:
            log("WARN", "screenshot download failed", error=str(e))
            return None
    if screenshot.startswith("data:"):
        return screenshot.split(",", 1)[1] if "," in screenshot else None
    return screenshot


async def collect_amazon_reviews(
    firecrawl: FirecrawlClient,
    db: Database,
    asin: str,
    product_id: str,
) -> tuple[list[ReviewRecord], Optional[str]]:
    """
    Screenshot each review page and OCR it. A page whose screenshot or OCR
    fails falls back to the markdown heuristics for that page.

    Returns (reviews, public URL of the first uploaded screenshot).
    """
    reviews: list[ReviewRecord] = []
    screenshot_url: Optional[str] = None

    for review_url in amazon_review_urls(asin):
        if len(reviews) >= AMAZON_REVIEW_TARGET:
            break
        try:
            data = await firecrawl.scrape_review_page(review_url)
        except ScraperError as e:
            log("WARN", "review page scrape failed", product_id=product_id, url=review_url, error=str(e))
            continue

        markdown = data.get("markdown") or ""
        screenshot = data.get("screenshot")
        image_b64 = await screenshot_to_base64(firecrawl, screenshot) if screenshot else None

        page_reviews: Optional[list[ReviewRecord]] = None
        if image_b64:
            try:
                page_reviews = parse_ocr_reviews(await call_llm_vision(REVIEW_OCR_PROMPT, image_b64, project_id=product_id))
                if page_reviews is None:
                    log("WARN", "ocr output unparsable, using markdown", product_id=product_id, url=review_url)
            except LLMError as e:
                log("WARN", "ocr failed, using markdown", product_id=product_id, url=review_url, error=str(e))

        if page_reviews is None:
            page_reviews = extract_reviews_from_markdown(markdown)

        reviews = merge_unique_reviews(reviews, page_reviews, limit=MAX_REVIEWS)
        log("INFO", "review page processed", product_id=product_id, url=review_url,
            page_reviews=len(page_reviews), total=len(reviews))

        if image_b64 and screenshot_url is None:
            try:
                screenshot_url = await db.upload_screenshot(product_id, base64.b64decode(image_b64))
            except (binascii.Error, ValueError) as e:
                log("WARN", "screenshot is not valid base64", product_id=product_id, error=str(e))

    return reviews, screenshot_url


# ─────────────────────────────────────────────
# Scrape job
# ─────────────────────────────────────────────

@dataclass
class ScrapeOutcome:
    success: bool
    product_info: Optional[ProductInfo] = None
    reviews: list[ReviewRecord] = field(default_factory=list)
    review_summary: Optional[ReviewSummary] = None
    screenshot_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


async def scrape_competitor(
    db: Database,
    firecrawl: FirecrawlClient,
    product_id: str,
    url: str,
) -> ScrapeOutcome:
    """Run one scrape job end to end and persist its results."""
    await db.set_product_status(product_id, "scraping")

    try:
        page = await firecrawl.scrape_page(url)
    except ScraperError as e:
        code = generate_error_code()
        log("ERROR", "competitor scrape failed", product_id=product_id, url=url, error=str(e), error_code=code)
        await db.set_product_status(product_id, "failed")
        return ScrapeOutcome(success=False, error=str(e), error_code=code)

    markdown = page.get("markdown") or ""
    html = page.get("html") or ""
    metadata = page.get("metadata") or {}

    info = extract_product_info(markdown, metadata)
    main_image = extract_main_image(markdown)
    summary = extract_review_summary(markdown)

    asin = extract_asin(url) if is_amazon_url(url) else None
    screenshot_url = None
    if asin:
        log("INFO", "amazon product detected", product_id=product_id, asin=asin)
        reviews, screenshot_url = await collect_amazon_reviews(firecrawl, db, asin, product_id)
        if not reviews:
            reviews = extract_reviews_from_html(html)
    else:
        reviews = extract_reviews_from_html(html)
        if len(reviews) < ENOUGH_REVIEWS:
            reviews = merge_unique_reviews(reviews, extract_reviews_from_markdown(markdown))
    reviews = reviews[:MAX_REVIEWS]

    fields = {
        "product_title": info.title,
        "product_description": info.description,
        "price": info.price,
        "rating": info.rating,
        "review_count": info.reviewCount,
        "main_image": main_image,
        "product_images": [main_image] if main_image else [],
        "review_summary": summary.model_dump(),
        "review_screenshot_url": screenshot_url,
        "scraped_data": {
            "markdown": markdown[:MAX_STORED_MARKDOWN],
            "extractedAt": datetime.now(timezone.utc).isoformat(),
            "asin": asin,
        },
        "status": "completed",
    }
    try:
        await db.update_competitor_product(product_id, fields)
    except DatabaseError as e:
        try:
            await db.set_product_status(product_id, "failed")
        except DatabaseError:
            log("ERROR", "could not mark product failed", product_id=product_id)
        return ScrapeOutcome(success=False, error=str(e), error_code=e.error_code)

    stored = await db.insert_reviews(product_id, [r.model_dump() for r in reviews])
    log("INFO", "competitor scraped", product_id=product_id, title=info.title,
        reviews=len(reviews), stored=stored, has_screenshot=bool(screenshot_url))

    return ScrapeOutcome(
        success=True,
        product_info=info,
        reviews=reviews,
        review_summary=summary,
        screenshot_url=screenshot_url,
    )
