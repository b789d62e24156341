"""
开品宝 Backend — Market Analysis API

POST /api/market-analysis              concept-only analysis from project name + description
POST /api/market-analysis/competitors  report over completed competitor products and reviews

Both results are folded into the project's prd_data (initialMarketAnalysis /
marketAnalysis) so the chat prompt builder can read them.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.requests import Request

from kaipinbao import llm, prompts
from kaipinbao.config import generate_error_code, log
from kaipinbao.db import Database, DatabaseError, get_db
from kaipinbao.llm import LLMError, LLMValidationError
from kaipinbao.models import (
    CompetitorMarketReport,
    InitialMarketAnalysis,
    MarketAnalysisResponse,
    MarketOverview,
    PriceAnalysis,
    PriceDistribution,
    ProjectRequest,
    ReviewInsights,
)
from kaipinbao.prd import merge_prd_data
from kaipinbao.ratelimit import ANALYSIS_RATE_LIMIT, limiter

router = APIRouter(prefix="/api/market-analysis", tags=["market"])

_PRICE_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")

ANALYSIS_FAILED_MESSAGE = "市场分析生成失败，请稍后重试"


def _failure(status_code: int, message: str, error_code: Optional[str] = None) -> JSONResponse:
    """{success: false, error, error_code} with the given status."""
    content = MarketAnalysisResponse(success=False, error=message).model_dump(exclude_none=True)
    content["error_code"] = error_code or generate_error_code()
    return JSONResponse(status_code=status_code, content=content)


def _parse_price(value) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    match = _PRICE_NUMBER_RE.search(str(value or ""))
    if not match:
        return None
    return float(match.group(0).replace(",", ""))


def fallback_market_report(products: list[dict]) -> CompetitorMarketReport:
    """Deterministic report from the scraped numbers alone, used when the model output is unusable."""
    ratings = [float(p["rating"]) for p in products if isinstance(p.get("rating"), (int, float))]
    prices = [(p.get("price"), _parse_price(p.get("price"))) for p in products]
    prices = [(raw, num) for raw, num in prices if num is not None]

    min_price = max_price = "N/A"
    if prices:
        min_price = str(min(prices, key=lambda x: x[1])[0])
        max_price = str(max(prices, key=lambda x: x[1])[0])

    return CompetitorMarketReport(
        marketOverview=MarketOverview(
            competitorCount=len(products),
            priceDistribution=PriceDistribution(low=33, mid=34, high=33),
            averageRating=round(sum(ratings) / len(ratings), 1) if ratings else 0,
        ),
        priceAnalysis=PriceAnalysis(
            minPrice=min_price,
            maxPrice=max_price,
            sweetSpot="待定",
            opportunityGap="需要更多数据分析",
        ),
        reviewInsights=ReviewInsights(
            positiveHighlights=["需要更多评论数据"],
            negativeHighlights=["需要更多评论数据"],
            unmetNeeds=["需要深入分析"],
        ),
        differentiationOpportunities=["需要更多数据分析"],
        marketTrends=["需要更多数据分析"],
        strategicRecommendations=["建议添加更多竞品数据以获得更准确的分析"],
    )


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.post("", response_model=MarketAnalysisResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def initial_market_analysis(
    request: Request,
    body: ProjectRequest,
    db: Database = Depends(get_db),
) -> MarketAnalysisResponse:
    """
    POST /api/market-analysis

    Body: {projectId}
    Returns: {success, analysis} and stores the analysis under prd_data.initialMarketAnalysis.
    """
    project_id = body.project_id
    project = await db.get_project(project_id)
    if not project:
        return _failure(404, "项目不存在")

    try:
        result = await llm.call_llm_structured(
            prompts.build_initial_market_analysis_prompt(project.get("name"), project.get("description")),
            InitialMarketAnalysis,
            project_id=project_id,
            system_prompt=prompts.INITIAL_MARKET_ANALYSIS_PROMPT,
        )
    except LLMError as e:
        status, message = e.http_status(ANALYSIS_FAILED_MESSAGE)
        code = generate_error_code()
        log("ERROR", "market analysis llm call failed", project_id=project_id,
            reason=e.reason, error=str(e)[:300], error_code=code)
        return _failure(status, message, code)
    except LLMValidationError as e:
        code = generate_error_code()
        log("ERROR", "initial market analysis unparsable", project_id=project_id,
            raw_output=e.raw_output[:300], error_code=code)
        return _failure(500, "市场分析结果解析失败，请重试", code)

    analysis = {**result.model_dump(), "generatedAt": datetime.now(timezone.utc).isoformat()}

    try:
        current = await db.get_prd_data(project_id, strict=True)
        # Regenerating replaces the previous analysis instead of merging into it.
        await db.update_prd_data(project_id, {**current, "initialMarketAnalysis": analysis})
    except DatabaseError as e:
        return _failure(500, "市场分析保存失败，请稍后重试", e.error_code)

    log("INFO", "initial market analysis stored", project_id=project_id)
    return MarketAnalysisResponse(success=True, analysis=analysis)


@router.post("/competitors", response_model=MarketAnalysisResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def competitor_market_analysis(
    request: Request,
    body: ProjectRequest,
    db: Database = Depends(get_db),
) -> MarketAnalysisResponse:
    """
    POST /api/market-analysis/competitors

    Body: {projectId}
    Returns: {success, analysis, usedFallback}; analysis is merged into prd_data.marketAnalysis.
    """
    project_id = body.project_id
    products = await db.list_competitor_products(project_id, status="completed")
    if not products:
        return _failure(400, "暂无已完成的竞品数据")
    reviews = await db.list_reviews([p["id"] for p in products if p.get("id")])

    log("INFO", "competitor market analysis started", project_id=project_id,
        competitors=len(products), reviews=len(reviews))

    used_fallback = False
    try:
        report = await llm.call_llm_structured(
            prompts.build_competitor_analysis_prompt(products, reviews),
            CompetitorMarketReport,
            project_id=project_id,
            system_prompt=prompts.COMPETITOR_ANALYSIS_PROMPT,
        )
    except LLMError as e:
        status, message = e.http_status(ANALYSIS_FAILED_MESSAGE)
        code = generate_error_code()
        log("ERROR", "market analysis llm call failed", project_id=project_id,
            reason=e.reason, error=str(e)[:300], error_code=code)
        return _failure(status, message, code)
    except LLMValidationError:
        log("WARN", "competitor report unparsable, using fallback", project_id=project_id)
        report = fallback_market_report(products)
        used_fallback = True

    analysis = report.model_dump()
    try:
        current = await db.get_prd_data(project_id, strict=True)
        await db.update_prd_data(project_id, merge_prd_data(current, {"marketAnalysis": analysis}))
    except DatabaseError as e:
        return _failure(500, "市场分析保存失败，请稍后重试", e.error_code)

    return MarketAnalysisResponse(success=True, analysis=analysis, usedFallback=used_fallback)
