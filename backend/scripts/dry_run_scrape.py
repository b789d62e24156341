"""
Dry-run competitor scraper — via Firecrawl

Fetches each product page through Firecrawl, runs the extraction heuristics
and prints what would be stored. Nothing is written to Supabase.

Pass saved pages instead of URLs to iterate on the heuristics offline
(`.md` files are read as markdown, `.html` files as HTML).

Usage:
    cd backend
    python3 -m scripts.dry_run_scrape https://www.amazon.com/dp/B08XYZ1234
    python3 -m scripts.dry_run_scrape /tmp/competitor_raw.md
"""

import asyncio
import json
import os
import sys
import time

from kaipinbao.config import settings
from kaipinbao.extraction import (
    REVIEW_STRATEGIES,
    extract_asin,
    extract_main_image,
    extract_product_info,
    extract_review_summary,
    extract_reviews_from_html,
    extract_reviews_from_markdown,
    is_amazon_url,
)
from kaipinbao.scraper import FirecrawlClient, ScraperError, amazon_review_urls


DEFAULT_TARGETS = [
    "https://www.amazon.com/dp/B0BZ7Y8Y7N",
    "https://www.aliexpress.com/item/1005004877372853.html",
]


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────


def load_saved_page(path: str) -> dict:
    with open(path, encoding="utf-8") as f:
        content = f.read()
    if path.endswith(".html"):
        return {"markdown": "", "html": content, "metadata": {}}
    return {"markdown": content, "html": "", "metadata": {}}


async def fetch_page(firecrawl: FirecrawlClient, target: str) -> dict:
    if os.path.exists(target):
        return load_saved_page(target)
    page = await firecrawl.scrape_page(target)
    slug = target.rstrip("/").rsplit("/", 1)[-1][:40] or "page"
    with open(f"/tmp/competitor_{slug}_raw.md", "w", encoding="utf-8") as f:
        f.write(page.get("markdown") or "")
    return page


# ─────────────────────────────────────────────────────────────────────────────
# Report
# ─────────────────────────────────────────────────────────────────────────────


def print_strategy_breakdown(markdown: str) -> None:
    for strategy in REVIEW_STRATEGIES:
        found = strategy.try_extract(markdown) or []
        print(f"       {strategy.name:<18} {len(found)} reviews")


def print_page_report(target: str, page: dict) -> None:
    markdown = page.get("markdown") or ""
    html = page.get("html") or ""
    info = extract_product_info(markdown, page.get("metadata"))
    summary = extract_review_summary(markdown)

    print(f"  Title:   {info.title or '(none)'}")
    print(f"  Price:   {info.price or '(none)'}")
    print(f"  Rating:  {info.rating}  ({info.reviewCount} reviews)")
    print(f"  Image:   {extract_main_image(markdown) or '(none)'}")

    if summary.ratingBreakdown:
        bars = ", ".join(f"{s.stars}★ {s.percentage}%" for s in summary.ratingBreakdown)
        print(f"  Breakdown: {bars}")
    for text in summary.topPositives:
        print(f"       + {text[:100]}")
    for text in summary.topNegatives:
        print(f"       - {text[:100]}")

    html_reviews = extract_reviews_from_html(html)
    md_reviews = extract_reviews_from_markdown(markdown)
    print(f"\n  🔍 HTML reviews: {len(html_reviews)}   markdown reviews: {len(md_reviews)}")
    print_strategy_breakdown(markdown)

    for i, review in enumerate((html_reviews or md_reviews)[:5]):
        stars = f"{review.rating}★" if review.rating else "?★"
        print(f"  [{i+1:>2}] {stars} {review.text[:120]}")

    asin = extract_asin(target) if is_amazon_url(target) else None
    if asin:
        print(f"\n  Amazon ASIN {asin}: screenshot OCR would read")
        for url in amazon_review_urls(asin):
            print(f"       → {url}")


async def main():
    targets = sys.argv[1:] or DEFAULT_TARGETS

    print("=" * 80)
    print("  开品宝 — Dry Run Competitor Scraper (Firecrawl)")
    print("=" * 80)
    key = settings.firecrawl_api_key
    print(f"  Firecrawl API key: {'...' + key[-6:] if key else '(not set, saved pages only)'}")
    print()

    firecrawl = FirecrawlClient(api_key=key)
    stored: list[dict] = []

    for target in targets:
        print("─" * 80)
        print(f"▸ {target}")
        start = time.monotonic()
        try:
            page = await fetch_page(firecrawl, target)
        except ScraperError as e:
            ms = int((time.monotonic() - start) * 1000)
            print(f"  ✗ Error: {e} ({ms}ms)")
            continue
        ms = int((time.monotonic() - start) * 1000)
        print(f"  ✓ Loaded {len(page.get('markdown') or '')} chars markdown, "
              f"{len(page.get('html') or '')} chars html ({ms}ms)\n")

        print_page_report(target, page)
        info = extract_product_info(page.get("markdown") or "", page.get("metadata"))
        stored.append({"target": target, "productInfo": info.model_dump()})
        print()

    print("=" * 80)
    print("  What would be stored (product info only):")
    print(json.dumps(stored, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
