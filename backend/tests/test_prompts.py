"""
开品宝 Backend — Prompt Template Tests

The chat system prompt is a deterministic function of project context;
these tests pin its sections and their order.
"""

import json

from kaipinbao.prompts import (
    CHAT_SYSTEM_PROMPT,
    COMPETITOR_SECTION_TITLE,
    GENERIC_CONTEXT_TITLE,
    MARKET_SECTION_TITLE,
    MAX_ANALYSIS_REVIEWS,
    MAX_REVIEW_ANALYSIS_TEXTS,
    PRD_SECTION_TITLE,
    SECTION_INSTRUCTIONS,
    build_chat_system_prompt,
    build_competitor_analysis_prompt,
    build_initial_market_analysis_prompt,
    build_review_analysis_prompt,
    build_section_regeneration_prompt,
    stage_label,
    summarize_competitors,
    summarize_prd_data,
)
from kaipinbao.sections import SECTIONS


PRODUCTS = [
    {"id": "c1", "product_title": "BlendJet 2 Portable Blender", "price": "$49.99", "rating": 4.4, "review_count": 5210},
    {"id": "c2", "product_title": "Mini Juicer Cup", "price": "$19.99", "rating": 3.9, "review_count": 88},
]

REVIEWS = [
    {"competitor_product_id": "c1", "review_text": "Blends frozen fruit easily and charges fast over USB-C.", "rating": 5},
    {"competitor_product_id": "c1", "review_text": "The lid cracked after two weeks of daily use.", "rating": 1},
    {"competitor_product_id": "c2", "review_text": "It is okay for the price.", "rating": 3},
]


class TestStageLabel:
    def test_known_stages(self):
        assert stage_label(1) == (1, "PRD细化")
        assert stage_label(3) == (3, "落地页")

    def test_unknown_stage_falls_back_to_first(self):
        assert stage_label(9) == (1, "PRD细化")
        assert stage_label(None) == (1, "PRD细化")


class TestSummaries:
    def test_prd_summary_skips_empty_and_market_fields(self):
        summary = summarize_prd_data({
            "usageScenario": "露营",
            "coreFeatures": ["无线充电"],
            "designStyle": "",
            "initialMarketAnalysis": {"marketSize": "big"},
        })

        assert "- usageScenario: 露营" in summary
        assert '- coreFeatures: ["无线充电"]' in summary
        assert "designStyle" not in summary
        assert "initialMarketAnalysis" not in summary

    def test_empty_prd_summary(self):
        assert summarize_prd_data(None) == ""
        assert summarize_prd_data({}) == ""

    def test_competitor_summary_has_concrete_facts(self):
        summary = summarize_competitors(PRODUCTS, REVIEWS)

        assert "BlendJet 2 Portable Blender" in summary
        assert "$49.99" in summary
        assert "5210" in summary
        assert "好评摘录" in summary
        assert "Blends frozen fruit easily" in summary
        assert "差评摘录" in summary
        assert "The lid cracked" in summary
        # 3 stars is neither side
        assert "okay for the price" not in summary

    def test_analysed_sentiment_selects_unrated_excerpts(self):
        unrated = [
            {"review_text": "Keeps smoothies cold all afternoon.", "rating": None, "is_positive": True},
            {"review_text": "Shipping took three weeks.", "rating": None, "is_positive": False},
            {"review_text": "Arrived on Tuesday.", "rating": None, "is_positive": None},
        ]

        summary = summarize_competitors(PRODUCTS, unrated)

        positives, negatives = summary.split("差评摘录", 1)
        assert "Keeps smoothies cold" in positives
        assert "Shipping took three weeks" in negatives
        assert "Arrived on Tuesday" not in summary

    def test_excerpts_are_bounded(self):
        many = [{"review_text": f"great product number {i} " + "x" * 400, "rating": 5} for i in range(12)]
        summary = summarize_competitors(PRODUCTS[:1], many)

        excerpt_lines = [line for line in summary.split("\n") if line.startswith("- great product")]
        assert len(excerpt_lines) == 5
        assert all(len(line) <= 2 + 200 + 1 for line in excerpt_lines)


class TestBuildChatSystemPrompt:
    """Section selection and ordering."""

    def test_no_competitors_uses_generic_project_block(self):
        prompt = build_chat_system_prompt(project={"name": "便携榨汁杯", "description": "户外用"})

        assert prompt.startswith(CHAT_SYSTEM_PROMPT)
        assert GENERIC_CONTEXT_TITLE in prompt
        assert "便携榨汁杯" in prompt
        assert COMPETITOR_SECTION_TITLE not in prompt
        assert PRD_SECTION_TITLE not in prompt
        assert prompt.endswith("当前阶段：1 - PRD细化")

    def test_competitors_replace_generic_block(self):
        prompt = build_chat_system_prompt(competitors=PRODUCTS, reviews=REVIEWS, project={"name": "x"})

        assert COMPETITOR_SECTION_TITLE in prompt
        assert GENERIC_CONTEXT_TITLE not in prompt
        assert "Mini Juicer Cup" in prompt

    def test_section_order(self):
        prompt = build_chat_system_prompt(
            prd_data={"usageScenario": "露营"},
            competitors=PRODUCTS,
            reviews=REVIEWS,
            market_analysis={"initialMarketAnalysis": {"marketSize": "12 亿美元"}},
            stage=2,
        )

        positions = [
            prompt.index(COMPETITOR_SECTION_TITLE),
            prompt.index(MARKET_SECTION_TITLE),
            prompt.index(PRD_SECTION_TITLE),
            prompt.index("当前阶段：2 - 视觉生成"),
        ]
        assert positions == sorted(positions)
        assert "12 亿美元" in prompt

    def test_deterministic(self):
        kwargs = dict(prd_data={"a": "b"}, competitors=PRODUCTS, reviews=REVIEWS, stage=1)
        assert build_chat_system_prompt(**kwargs) == build_chat_system_prompt(**kwargs)

    def test_base_prompt_teaches_block_and_sentinels(self):
        assert "```prd-data" in CHAT_SYSTEM_PROMPT
        assert "[PRD_READY]" in CHAT_SYSTEM_PROMPT
        assert "[DESIGN_READY]" in CHAT_SYSTEM_PROMPT


class TestAnalysisPrompts:
    def test_initial_market_analysis_prompt(self):
        messages = build_initial_market_analysis_prompt("便携榨汁杯", None)

        assert messages[0]["role"] == "user"
        assert "便携榨汁杯" in messages[0]["content"]
        assert "暂无详细描述" in messages[0]["content"]

    def test_competitor_prompt_bounds_reviews(self):
        reviews = [{"review_text": "r" * 900, "rating": 4} for _ in range(80)]

        content = build_competitor_analysis_prompt(PRODUCTS, reviews)[0]["content"]

        samples_json = content.split("## 用户评论样本 (共80条)\n", 1)[1].rsplit("\n\n请基于", 1)[0]
        samples = json.loads(samples_json)
        assert len(samples) == MAX_ANALYSIS_REVIEWS
        assert all(len(s["text"]) == 500 for s in samples)
        assert "BlendJet 2 Portable Blender" in content

    def test_review_analysis_prompt_bounds_texts(self):
        reviews = [{"review_text": f"review {i}"} for i in range(130)]

        content = build_review_analysis_prompt(reviews)[0]["content"]

        assert content.startswith("以下是130条产品评论")
        assert content.count("\n---\n") == MAX_REVIEW_ANALYSIS_TEXTS - 1
        assert "review 99" in content
        assert "review 100" not in content


class TestSectionRegenerationPrompt:
    def test_every_section_has_an_instruction(self):
        assert set(SECTION_INSTRUCTIONS) == set(SECTIONS)

    def test_context_and_instruction(self):
        project = {"name": "便携榨汁杯", "description": "户外用的无线榨汁杯"}
        prd_data = {"usageScenario": "露营", "coreFeatures": ["防漏", "快充"], "painPoints": ["漏水"]}

        content = build_section_regeneration_prompt("coreFeatures", project, prd_data, PRODUCTS)[0]["content"]

        assert "产品项目：便携榨汁杯" in content
        assert "产品描述：户外用的无线榨汁杯" in content
        assert "- 使用场景：露营" in content
        assert "- 核心功能：防漏、快充" in content
        assert "漏水" not in content
        assert "- BlendJet 2 Portable Blender ($49.99, 4.4★)" in content
        assert content.endswith(SECTION_INSTRUCTIONS["coreFeatures"])

    def test_sparse_project(self):
        content = build_section_regeneration_prompt("packaging", {}, None)[0]["content"]

        assert "产品项目：未命名" in content
        assert "产品描述" not in content
        assert "竞品分析" not in content
