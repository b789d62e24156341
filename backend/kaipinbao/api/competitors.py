"""
开品宝 Backend — Competitor Scrape API (POST /api/scrape-competitor)
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from kaipinbao.db import Database, get_db
from kaipinbao.models import ScrapeRequest, ScrapeResponse
from kaipinbao.ratelimit import SCRAPE_RATE_LIMIT, limiter
from kaipinbao.scraper import FirecrawlClient, get_firecrawl, scrape_competitor

router = APIRouter(prefix="/api", tags=["competitors"])


@router.post("/scrape-competitor", response_model=ScrapeResponse)
@limiter.limit(SCRAPE_RATE_LIMIT)
async def scrape(
    request: Request,
    body: ScrapeRequest,
    db: Database = Depends(get_db),
    firecrawl: FirecrawlClient = Depends(get_firecrawl),
):
    """
    POST /api/scrape-competitor

    Body: {productId, url}
    Runs synchronously; the product row moves pending → scraping → completed | failed.
    """
    if not firecrawl.api_key:
        raise HTTPException(status_code=500, detail="Firecrawl not configured")

    if not await db.get_competitor_product(body.product_id):
        raise HTTPException(status_code=404, detail="竞品不存在")

    outcome = await scrape_competitor(db, firecrawl, body.product_id, body.url)
    if not outcome.success:
        failed = ScrapeResponse(success=False, error=outcome.error or "Scraping failed")
        content = failed.model_dump(exclude_none=True)
        content["error_code"] = outcome.error_code
        return JSONResponse(status_code=500, content=content)

    return ScrapeResponse(
        success=True,
        productInfo=outcome.product_info,
        reviewCount=len(outcome.reviews),
        hasScreenshot=bool(outcome.screenshot_url),
        hasReviewSummary=bool(outcome.review_summary and outcome.review_summary.has_highlights),
    )
