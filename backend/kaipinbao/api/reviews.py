"""
开品宝 Backend — Review Analysis API

POST /api/analyze-reviews  positive / negative points and insights over a
                           project's competitor reviews

Each analysed review is labelled with the points it mentions, which fills the
sentiment / is_positive columns the chat prompt uses to pick review excerpts.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.requests import Request

from kaipinbao import llm, prompts
from kaipinbao.config import generate_error_code, log
from kaipinbao.db import Database, DatabaseError, get_db
from kaipinbao.llm import LLMError, LLMValidationError
from kaipinbao.models import (
    ProjectRequest,
    ReviewAnalysis,
    ReviewAnalysisResponse,
    ReviewAnalysisSummary,
    ReviewPoint,
)
from kaipinbao.ratelimit import ANALYSIS_RATE_LIMIT, limiter

router = APIRouter(prefix="/api", tags=["reviews"])


def _failure(status_code: int, message: str, error_code: Optional[str] = None) -> JSONResponse:
    content = ReviewAnalysisResponse(success=False, error=message).model_dump(exclude_none=True)
    content["error_code"] = error_code or generate_error_code()
    return JSONResponse(status_code=status_code, content=content)


def empty_review_analysis() -> ReviewAnalysis:
    return ReviewAnalysis(actionableInsights=["暂无评论数据，建议添加更多竞品链接获取用户反馈"])


def fallback_review_analysis(review_count: int) -> ReviewAnalysis:
    """Fixed analysis used when the model output cannot be parsed."""
    return ReviewAnalysis(
        summary=ReviewAnalysisSummary(totalReviews=review_count, positivePercent=60, negativePercent=40),
        positivePoints=[
            ReviewPoint(point="产品质量好", frequency=int(review_count * 0.3)),
            ReviewPoint(point="外观设计美观", frequency=int(review_count * 0.2)),
        ],
        negativePoints=[
            ReviewPoint(point="价格偏高", frequency=int(review_count * 0.15)),
            ReviewPoint(point="发货速度慢", frequency=int(review_count * 0.1)),
        ],
        actionableInsights=["建议优化产品定价策略", "可考虑改进物流合作伙伴"],
    )


def classify_review(text: str, analysis: ReviewAnalysis) -> tuple[str, Optional[bool]]:
    """(sentiment, is_positive) from the analysis points the review text mentions. Positive wins."""
    text = text or ""
    if any(p.point and p.point in text for p in analysis.positivePoints):
        return "positive", True
    if any(p.point and p.point in text for p in analysis.negativePoints):
        return "negative", False
    return "neutral", None


@router.post("/analyze-reviews", response_model=ReviewAnalysisResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def analyze_reviews(
    request: Request,
    body: ProjectRequest,
    db: Database = Depends(get_db),
) -> ReviewAnalysisResponse:
    """
    POST /api/analyze-reviews

    Body: {projectId}
    Returns: {success, analysis, usedFallback} and labels every review's sentiment.
    """
    project_id = body.project_id
    products = await db.list_competitor_products(project_id, status="completed")
    if not products:
        return _failure(404, "暂无已完成的竞品数据")

    reviews = await db.list_reviews([p["id"] for p in products if p.get("id")])
    if not reviews:
        return ReviewAnalysisResponse(success=True, analysis=empty_review_analysis())

    log("INFO", "review analysis started", project_id=project_id, reviews=len(reviews))

    used_fallback = False
    try:
        analysis = await llm.call_llm_structured(
            prompts.build_review_analysis_prompt(reviews),
            ReviewAnalysis,
            project_id=project_id,
            system_prompt=prompts.REVIEW_ANALYSIS_PROMPT,
        )
    except LLMError as e:
        status, message = e.http_status("评论分析失败，请稍后重试")
        code = generate_error_code()
        log("ERROR", "review analysis llm call failed", project_id=project_id,
            reason=e.reason, error=str(e)[:300], error_code=code)
        return _failure(status, message, code)
    except LLMValidationError:
        log("WARN", "review analysis unparsable, using fallback", project_id=project_id)
        analysis = fallback_review_analysis(len(reviews))
        used_fallback = True

    counts = {"positive": 0, "negative": 0, "neutral": 0}
    try:
        for review in reviews:
            if not review.get("id"):
                continue
            sentiment, is_positive = classify_review(review.get("review_text"), analysis)
            await db.update_review_sentiment(review["id"], sentiment, is_positive)
            counts[sentiment] += 1
    except DatabaseError as e:
        return _failure(500, "评论情感保存失败，请稍后重试", e.error_code)

    log("INFO", "review analysis stored", project_id=project_id, used_fallback=used_fallback, **counts)
    return ReviewAnalysisResponse(success=True, analysis=analysis, usedFallback=used_fallback)
