"""
开品宝 Backend — LLM Prompt Templates

All prompts are defined here. The analyst persona for single-shot calls is
injected in llm.py; the chat system prompt is assembled by build_chat_system_prompt().
"""

import json
from typing import Optional

from kaipinbao.prd import COMPLETION_SENTINELS, PRD_FENCE_TAG


# -----------------------------------------------------------------------------
# 1. Chat system prompt
# -----------------------------------------------------------------------------

CHAT_SYSTEM_PROMPT = f"""你是"开品宝"的 AI 产品研发专家，带领跨境卖家和工厂以"对话即研发"的方式，完成从创意到市场测试的全链路。

# 工作流程
严格按阶段推进，用户未确认完成当前阶段前，不要跨到下一阶段。

## 阶段一：ID 探索与 PRD 细化
- 不要直接给结论，通过连续追问确认：
  1. 使用环境：室内/户外、极端天气、特定地区。
  2. ID 细节：材质感（金属/亲肤/磨砂）、形态风格（圆润/硬朗）、交互逻辑。
  3. 目标客群：谁在用，痛点是什么。
- 信息足够时，整理出包含【产品定义、核心规格、ID 设计要求】的 PRD。

## 阶段二：视觉生成与 ID 确认
- 根据阶段一结论给出 2-3 个图像生成提示词，请用户确认或提出修改，反复迭代直到用户满意。

## 阶段三：营销落地页与广告测款
- 描述落地页内容（Hero Image、痛点文案、信任背书、CTA），给出 Meta/TikTok 广告测试方案。

# 结构化数据
每当本轮对话确认或更新了产品信息，在回复末尾附上一个代码块，语言标记为 {PRD_FENCE_TAG}，内容是只包含本轮新增或变更字段的 JSON 对象：

```{PRD_FENCE_TAG}
{{"selectedDirection": "...", "usageScenario": "...", "targetAudience": "...", "designStyle": "...", "coreFeatures": ["..."], "pricingRange": "..."}}
```

可用字段：productName, productTagline, productCategory, selectedDirection, usageScenario, targetAudience,
designStyle, pricingRange, dialoguePhase (direction-exploration | direction-confirmed | details-refinement | prd-ready),
coreFeatures, painPoints, sellingPoints, specifications, cmfDesign, userExperience, featureMatrix
(每项 {{feature, priority: must-have|important|nice-to-have, painPointAddressed, differentiator, implementationNote}}，
每次输出完整矩阵), marketPositioning, packaging, marketingAssets, videoAssets, competitorInsights。
不要重复已经确认且没有变化的字段。

# 完成信号
当 PRD 已经完整、用户确认可以进入下一阶段时，在回复中单独输出 {COMPLETION_SENTINELS[0]}；
视觉设计确认完成时输出 {COMPLETION_SENTINELS[1]}。

# 语气与格式
- 中文引导；PRD 专业术语、落地页文案和广告词同时给出英文。
- 严谨、商业化、具备工业设计思维。
- 每轮回复开头用 [当前阶段：XXX] 标注进度。
- 使用 Markdown，重点内容加粗。"""

STAGE_NAMES = {1: "PRD细化", 2: "视觉生成", 3: "落地页"}

COMPETITOR_SECTION_TITLE = "# 竞品研究数据"
GENERIC_CONTEXT_TITLE = "# 项目背景"
PRD_SECTION_TITLE = "# 已确认的产品信息"
MARKET_SECTION_TITLE = "# 市场分析报告"

MAX_EXCERPTS_PER_SIDE = 5
EXCERPT_CHARS = 200

# Keys shown in their own section, not in the PRD summary.
_PRD_SUMMARY_SKIP = {"initialMarketAnalysis", "marketAnalysis"}


def stage_label(stage: Optional[int]) -> tuple[int, str]:
    """Known stage number and name; anything else falls back to stage 1."""
    if stage in STAGE_NAMES:
        return stage, STAGE_NAMES[stage]
    return 1, STAGE_NAMES[1]


def summarize_prd_data(prd_data: Optional[dict]) -> str:
    """One line per populated field. Empty string when nothing is known yet."""
    if not prd_data:
        return ""
    lines = []
    for key, value in prd_data.items():
        if key in _PRD_SUMMARY_SKIP or value in (None, "", [], {}):
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False)
        lines.append(f"- {key}: {value}")
    return "\n".join(lines)


def _excerpt(text: str, limit: int = EXCERPT_CHARS) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit].rstrip() + "…"


def summarize_competitors(products: list[dict], reviews: list[dict]) -> str:
    """
    Concrete competitor facts: title, price, rating, review count per product,
    plus a bounded sample of positive (>=4 stars) and negative (<=2 stars) excerpts.
    """
    lines = []
    for i, p in enumerate(products, 1):
        title = p.get("product_title") or "未知产品"
        lines.append(
            f"{i}. {title} | 价格: {p.get('price') or 'N/A'} | "
            f"评分: {p.get('rating') or 'N/A'} | 评论数: {p.get('review_count') or 0}"
        )

    positives = [r for r in reviews if (r.get("rating") or 0) >= 4 or r.get("is_positive") is True]
    negatives = [
        r for r in reviews
        if (r.get("rating") is not None and r["rating"] <= 2) or r.get("is_positive") is False
    ]
    if positives:
        lines.append("\n好评摘录：")
        lines.extend(f"- {_excerpt(r.get('review_text', ''))}" for r in positives[:MAX_EXCERPTS_PER_SIDE])
    if negatives:
        lines.append("\n差评摘录：")
        lines.extend(f"- {_excerpt(r.get('review_text', ''))}" for r in negatives[:MAX_EXCERPTS_PER_SIDE])
    return "\n".join(lines)


def build_chat_system_prompt(
    prd_data: Optional[dict] = None,
    competitors: Optional[list[dict]] = None,
    reviews: Optional[list[dict]] = None,
    market_analysis: Optional[dict] = None,
    stage: Optional[int] = 1,
    project: Optional[dict] = None,
) -> str:
    """
    Deterministic system prompt for one chat turn.

    Sections, in order: base instructions, competitor facts (or the generic
    project block when there are no competitors), market analysis, PRD summary,
    current stage.
    """
    parts = [CHAT_SYSTEM_PROMPT]

    if competitors:
        parts.append(f"{COMPETITOR_SECTION_TITLE}\n{summarize_competitors(competitors, reviews or [])}")
    else:
        project = project or {}
        parts.append(
            f"{GENERIC_CONTEXT_TITLE}\n"
            f"项目名称：{project.get('name') or '未命名项目'}\n"
            f"项目描述：{project.get('description') or '暂无详细描述'}\n"
            "目前还没有竞品数据。请从使用场景和目标用户开始提问，"
            "基于行业常识给出方向建议，并提醒用户可以添加竞品链接获得更准确的分析。"
        )

    if market_analysis:
        parts.append(f"{MARKET_SECTION_TITLE}\n{json.dumps(market_analysis, ensure_ascii=False, indent=2)}")

    prd_summary = summarize_prd_data(prd_data)
    if prd_summary:
        parts.append(f"{PRD_SECTION_TITLE}\n{prd_summary}\n\n只在结构化数据块中输出新增或变更的字段。")

    number, name = stage_label(stage)
    parts.append(f"当前阶段：{number} - {name}")
    return "\n\n".join(parts)


# -----------------------------------------------------------------------------
# 2. Initial market analysis (concept only)
# -----------------------------------------------------------------------------

INITIAL_MARKET_ANALYSIS_PROMPT = """你是资深市场分析专家，拥有 15 年消费电子与跨境电商行业经验。
基于用户提供的产品概念和描述做专业市场分析，覆盖：
1. 市场规模与增长趋势、关键细分市场
2. 目标用户画像：人口属性、购买习惯、心理特征
3. 竞争格局预判：品牌/白牌、集中度、进入壁垒
4. 定价策略：价格区间、各价位段用户期望、利润空间
5. 差异化机会：未被满足的需求、创新点

只返回以下 JSON（不要 markdown 代码块）：
{
  "marketSize": "市场规模与增长趋势（100-200字）",
  "targetUserProfile": "目标用户画像（100-200字）",
  "competitionLandscape": "竞争格局分析（100-200字）",
  "pricingStrategy": "定价策略与区间（100-150字）",
  "differentiationOpportunities": ["差异化机会1", "差异化机会2", "差异化机会3"]
}
分析要具体、专业，避免泛泛而谈；信息不足时基于行业经验推断。"""


def build_initial_market_analysis_prompt(name: str, description: Optional[str]) -> list[dict]:
    content = (
        "请分析以下产品项目：\n\n"
        f"**项目名称**：{name or '未命名项目'}\n\n"
        f"**项目描述**：{description or '暂无详细描述'}\n\n"
        "请基于以上信息进行市场分析，返回 JSON 格式结果。"
    )
    return [{"role": "user", "content": content}]


# -----------------------------------------------------------------------------
# 3. Competitor market analysis (scraped data)
# -----------------------------------------------------------------------------

COMPETITOR_ANALYSIS_PROMPT = """你是资深市场分析专家，专精竞品分析、市场趋势预测和用户需求洞察。
基于提供的竞品数据（产品信息、价格、评分、用户评论）生成市场分析报告。

只返回以下 JSON（不要 markdown 代码块）：
{
  "marketOverview": {
    "competitorCount": 竞品数量,
    "priceDistribution": {"low": 低端占比, "mid": 中端占比, "high": 高端占比},
    "averageRating": 平均评分
  },
  "priceAnalysis": {"minPrice": "最低价", "maxPrice": "最高价", "sweetSpot": "甜点价格区间", "opportunityGap": "价格机会缺口"},
  "reviewInsights": {
    "positiveHighlights": ["好评点"],
    "negativeHighlights": ["差评点"],
    "unmetNeeds": ["未满足需求"]
  },
  "differentiationOpportunities": ["差异化机会"],
  "marketTrends": ["市场趋势"],
  "strategicRecommendations": ["战略建议"]
}

原则：数据驱动、建议可执行、优先发现市场空白、从评论中提取真实痛点。"""

MAX_ANALYSIS_REVIEWS = 50
ANALYSIS_REVIEW_CHARS = 500


def build_competitor_analysis_prompt(products: list[dict], reviews: list[dict]) -> list[dict]:
    summaries = [
        {
            "title": p.get("product_title") or "Unknown",
            "price": p.get("price") or "N/A",
            "rating": p.get("rating") or "N/A",
            "reviewCount": p.get("review_count") or 0,
        }
        for p in products
    ]
    samples = [
        {"text": (r.get("review_text") or "")[:ANALYSIS_REVIEW_CHARS], "rating": r.get("rating")}
        for r in reviews[:MAX_ANALYSIS_REVIEWS]
    ]
    content = (
        "请分析以下竞品数据，生成市场分析报告：\n\n"
        f"## 竞品列表\n{json.dumps(summaries, ensure_ascii=False, indent=2)}\n\n"
        f"## 用户评论样本 (共{len(reviews)}条)\n{json.dumps(samples, ensure_ascii=False, indent=2)}\n\n"
        "请基于以上数据，输出 JSON 格式的市场分析报告。"
    )
    return [{"role": "user", "content": content}]


# -----------------------------------------------------------------------------
# 4. Review screenshot OCR
# -----------------------------------------------------------------------------

REVIEW_OCR_PROMPT = """You are an expert OCR specialist. Extract ALL user reviews from this Amazon reviews page screenshot.

Return a JSON array with this exact format (no markdown code blocks, just raw JSON):
[
  {"text": "Full review content", "rating": 5, "title": "Review title if visible"}
]

Rules:
- Extract ONLY actual user reviews, not product descriptions or UI elements
- Include the complete review text, not truncated
- rating is 1-5 from the visible star icons; omit rating or title when not visible
- Return [] if no reviews are visible
- Return ONLY the JSON array"""


# -----------------------------------------------------------------------------
# 5. Review analysis
# -----------------------------------------------------------------------------

REVIEW_ANALYSIS_PROMPT = """你是产品分析专家。请分析以下电商产品评论，提取关键信息。

只返回以下 JSON（不要 markdown 代码块）：
{
  "summary": {"totalReviews": 评论总数, "positivePercent": 正面评论百分比(0-100), "negativePercent": 负面评论百分比(0-100)},
  "positivePoints": [{"point": "优点描述", "frequency": 出现次数}],
  "negativePoints": [{"point": "缺点描述", "frequency": 出现次数}],
  "actionableInsights": ["可操作的产品建议"]
}

要求：
1. 提取 3-5 个最常见的好评点和差评点，point 尽量使用评论原文中的短语
2. 针对差评点给出 2-3 条可操作的产品改进建议
3. 使用中文输出"""

MAX_REVIEW_ANALYSIS_TEXTS = 100


def build_review_analysis_prompt(reviews: list[dict]) -> list[dict]:
    texts = "\n---\n".join(r.get("review_text") or "" for r in reviews[:MAX_REVIEW_ANALYSIS_TEXTS])
    content = f"以下是{len(reviews)}条产品评论，请进行分析：\n\n{texts}"
    return [{"role": "user", "content": content}]


# -----------------------------------------------------------------------------
# 6. PRD section regeneration
# -----------------------------------------------------------------------------

SECTION_REGENERATION_PROMPT = """你是"开品宝"的资深产品经理，擅长工业设计和跨境电商选品。
根据提供的项目背景、当前 PRD 和竞品信息，重新撰写用户指定的 PRD 章节。
内容要具体、可落地，与已确认的信息保持一致，使用中文输出。"""

SECTION_INSTRUCTIONS = {
    "productOverview": (
        "生成产品概览，返回 JSON 对象：productName（中英文产品名）、productTagline（中英文标语）、"
        "productCategory（产品品类）、pricingRange（建议定价区间）。"
    ),
    "usageScenario": (
        "详细描述 3-5 个具体使用场景，说明环境（室内/户外、具体地点）、情境（工作、休闲、出行）"
        "和用户状态（独自、多人、移动中）。直接输出文字，不要 JSON。"
    ),
    "targetAudience": (
        "描述目标用户画像：年龄与人口属性、职业或生活方式、核心痛点、最看重的产品价值、购买行为特征。"
        "直接输出文字，不要 JSON。"
    ),
    "designStyle": (
        "生成 CMF 设计方案，返回 JSON 对象：designStyle（整体设计方向），cmfDesign {primaryColor, "
        "secondaryColor, accentColor, surfaceFinish, textureDetails, "
        "materialBreakdown: [{material, percentage, location}]}。"
    ),
    "coreFeatures": (
        "列出 4-6 个核心功能，每个功能对应一个用户痛点、与竞品形成差异、技术可行。"
        '返回 JSON 字符串数组，例如 ["功能1", "功能2"]。'
    ),
    "specifications": (
        "生成产品规格，返回 JSON 对象：dimensions（毫米）、weight（克）、materials（数组）、"
        "colors（可选颜色）、powerSource、connectivity。"
    ),
    "marketPositioning": (
        "生成市场定位，返回 JSON 对象：priceTier（budget | mid-range | premium | luxury）、"
        "primaryCompetitors（数组）、uniqueSellingPoints（3 个）、competitiveAdvantages（数组）、targetMarketSize。"
    ),
    "packaging": (
        "生成包装方案，返回 JSON 对象：packageType、includedAccessories（数组）、"
        "specialPackagingFeatures（开箱体验）、sustainabilityFeatures（环保设计）。"
    ),
    "marketingAssets": (
        "生成营销素材描述，返回 JSON 对象：sceneDescription（产品摄影场景：光线、背景、道具）、"
        "usageScenarios（3 个使用场景描述）、lifestyleContext（要传达的生活方式）。"
    ),
    "videoAssets": (
        "生成 6 秒产品短视频创意，返回 JSON 对象：storyLine（起承转合）、keyActions（2-3 个关键动作）、"
        "emotionalTone（情绪基调）。"
    ),
}

# Document fields quoted back to the model as the current state.
_SECTION_CONTEXT_FIELDS = (
    ("productName", "产品名称"),
    ("usageScenario", "使用场景"),
    ("targetAudience", "目标用户"),
    ("designStyle", "外观风格"),
    ("coreFeatures", "核心功能"),
    ("pricingRange", "定价区间"),
)


def build_section_regeneration_prompt(
    section: str,
    project: dict,
    prd_data: Optional[dict],
    competitors: Optional[list[dict]] = None,
) -> list[dict]:
    prd_data = prd_data or {}
    lines = [f"产品项目：{project.get('name') or '未命名'}"]
    if project.get("description"):
        lines.append(f"产品描述：{project['description']}")

    lines.append("\n当前PRD数据：")
    for key, label in _SECTION_CONTEXT_FIELDS:
        value = prd_data.get(key)
        if not value:
            continue
        if isinstance(value, list):
            value = "、".join(str(v) for v in value)
        lines.append(f"- {label}：{value}")

    if competitors:
        lines.append("\n竞品分析：")
        lines.extend(
            f"- {c.get('product_title') or '未知产品'} ({c.get('price') or '价格未知'}, {c.get('rating') or 0}★)"
            for c in competitors
        )

    content = "\n".join(lines) + f"\n\n{SECTION_INSTRUCTIONS[section]}"
    return [{"role": "user", "content": content}]
