"""
Single source of truth for all Pydantic models (requests, responses, SSE events, internal types).
Backend types live here; the frontend's types mirror these definitions (camelCase on the wire).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Accept both the camelCase wire names and the snake_case attribute names."""

    model_config = ConfigDict(populate_by_name=True)


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------


class ChatTurnMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(CamelModel):
    messages: list[ChatTurnMessage] = Field(..., min_length=1)
    project_id: str = Field(..., alias="projectId", min_length=1)
    current_stage: int = Field(1, alias="currentStage")
    prd_data: Optional[dict] = Field(None, alias="prdData")


class ProjectRequest(CamelModel):
    project_id: str = Field(..., alias="projectId", min_length=1)


class ScrapeRequest(CamelModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    url: str = Field(..., min_length=1)


class RegenerateSectionRequest(BaseModel):
    section: str = Field(..., min_length=1)


# -----------------------------------------------------------------------------
# PrdData (accumulating structured document)
# -----------------------------------------------------------------------------
# Every field is optional and extra keys are allowed: the model only rejects
# blocks whose values have the wrong JSON type (e.g. coreFeatures as a string).


class FeatureMatrixItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    feature: Optional[str] = None
    priority: Optional[str] = None  # 'must-have' | 'important' | 'nice-to-have'
    painPointAddressed: Optional[str] = None
    differentiator: Optional[str] = None
    implementationNote: Optional[str] = None


class PrdData(BaseModel):
    model_config = ConfigDict(extra="allow")

    productName: Optional[str] = None
    productTagline: Optional[str] = None
    productCategory: Optional[str] = None
    selectedDirection: Optional[str] = None
    usageScenario: Optional[str] = None
    targetAudience: Optional[str] = None
    designStyle: Optional[str] = None
    pricingRange: Optional[str] = None
    # 'direction-exploration' | 'direction-confirmed' | 'details-refinement' | 'prd-ready'
    dialoguePhase: Optional[str] = None

    coreFeatures: Optional[list[str]] = None
    painPoints: Optional[list[str]] = None
    sellingPoints: Optional[list[str]] = None

    specifications: Optional[dict] = None
    cmfDesign: Optional[dict] = None
    userExperience: Optional[dict] = None
    marketPositioning: Optional[dict] = None
    packaging: Optional[dict] = None
    marketAnalysis: Optional[dict] = None
    marketingAssets: Optional[dict] = None
    videoAssets: Optional[dict] = None
    competitorInsights: Optional[dict] = None
    initialMarketAnalysis: Optional[dict] = None

    featureMatrix: Optional[list[FeatureMatrixItem]] = None


class CompletionStatus(BaseModel):
    ready: bool
    reason: Optional[str] = None  # 'sentinel' | 'fields_complete'
    sentinel: Optional[str] = None
    completed: list[str] = []
    missing: list[str] = []
    percent: int = 0


# -----------------------------------------------------------------------------
# LLM Response Models (for structured output validation)
# -----------------------------------------------------------------------------


class InitialMarketAnalysis(BaseModel):
    marketSize: str
    targetUserProfile: str
    competitionLandscape: str
    pricingStrategy: str
    differentiationOpportunities: list[str] = []


class PriceDistribution(BaseModel):
    low: float = 0
    mid: float = 0
    high: float = 0


class MarketOverview(BaseModel):
    competitorCount: int = 0
    priceDistribution: PriceDistribution = PriceDistribution()
    averageRating: float = 0


class PriceAnalysis(BaseModel):
    minPrice: str = "N/A"
    maxPrice: str = "N/A"
    sweetSpot: str = ""
    opportunityGap: str = ""


class ReviewInsights(BaseModel):
    positiveHighlights: list[str] = []
    negativeHighlights: list[str] = []
    unmetNeeds: list[str] = []


class CompetitorMarketReport(BaseModel):
    marketOverview: MarketOverview = MarketOverview()
    priceAnalysis: PriceAnalysis = PriceAnalysis()
    reviewInsights: ReviewInsights = ReviewInsights()
    differentiationOpportunities: list[str] = []
    marketTrends: list[str] = []
    strategicRecommendations: list[str] = []


class ReviewPoint(BaseModel):
    point: str
    frequency: int = 0


class ReviewAnalysisSummary(BaseModel):
    totalReviews: int = 0
    positivePercent: float = 0
    negativePercent: float = 0


class ReviewAnalysis(BaseModel):
    summary: ReviewAnalysisSummary = ReviewAnalysisSummary()
    positivePoints: list[ReviewPoint] = []
    negativePoints: list[ReviewPoint] = []
    actionableInsights: list[str] = []


# -----------------------------------------------------------------------------
# Scraping Models
# -----------------------------------------------------------------------------


class ReviewRecord(BaseModel):
    text: str
    rating: Optional[int] = None


class StarShare(BaseModel):
    stars: int
    percentage: int


class ReviewSummary(BaseModel):
    overallRating: Optional[float] = None
    totalReviews: Optional[int] = None
    ratingBreakdown: list[StarShare] = []
    topPositives: list[str] = []
    topNegatives: list[str] = []

    @property
    def has_highlights(self) -> bool:
        return bool(self.topPositives or self.topNegatives)


class ProductInfo(BaseModel):
    title: str = ""
    description: str = ""
    price: str = ""
    rating: Optional[float] = None
    reviewCount: Optional[int] = None


# -----------------------------------------------------------------------------
# SSE Event Models (non-chunk events on the chat stream)
# -----------------------------------------------------------------------------


class PrdUpdateEvent(BaseModel):
    type: str = "prd_update"
    prdData: Optional[dict] = None
    extracted: bool
    completion: CompletionStatus


class ErrorEvent(BaseModel):
    type: str = "error"
    message: str
    recoverable: bool
    error_code: str


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------


class ChatMessageOut(BaseModel):
    id: Optional[str] = None
    role: str
    content: str
    stage: int = 1
    created_at: Optional[datetime] = None


class MessageListResponse(BaseModel):
    messages: list[ChatMessageOut]


class PrdResponse(BaseModel):
    prdData: dict
    completion: CompletionStatus


class RegenerateSectionResponse(PrdResponse):
    section: str
    regeneratedContent: Any = None


class MarketAnalysisResponse(BaseModel):
    success: bool
    analysis: Optional[dict] = None
    usedFallback: bool = False
    error: Optional[str] = None


class ReviewAnalysisResponse(BaseModel):
    success: bool
    analysis: Optional[ReviewAnalysis] = None
    usedFallback: bool = False
    error: Optional[str] = None


class ScrapeResponse(BaseModel):
    success: bool
    productInfo: Optional[ProductInfo] = None
    reviewCount: Optional[int] = None
    hasScreenshot: Optional[bool] = None
    hasReviewSummary: Optional[bool] = None
    error: Optional[str] = None
