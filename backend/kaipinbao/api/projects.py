"""
开品宝 Backend — Projects API

GET   /api/projects/{project_id}/messages  chat history in creation order
GET   /api/projects/{project_id}/prd       current PrdData + completion status
PATCH /api/projects/{project_id}/prd       manual field edit, merged like a chat turn
POST  /api/projects/{project_id}/prd/regenerate  rewrite one PRD section with the LLM
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError
from starlette.requests import Request

from kaipinbao import llm, prompts
from kaipinbao.config import generate_error_code, log
from kaipinbao.db import Database, DatabaseError, get_db
from kaipinbao.llm import LLMError
from kaipinbao.models import (
    ChatMessageOut,
    MessageListResponse,
    PrdData,
    PrdResponse,
    RegenerateSectionRequest,
    RegenerateSectionResponse,
)
from kaipinbao.prd import FieldKind, evaluate_completion, merge_prd_data
from kaipinbao.ratelimit import ANALYSIS_RATE_LIMIT, limiter
from kaipinbao.sections import SECTIONS, apply_section, parse_section_output

router = APIRouter(prefix="/api/projects", tags=["projects"])


async def _require_project(db: Database, project_id: str) -> dict:
    project = await db.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="项目不存在")
    return project


@router.get("/{project_id}/messages", response_model=MessageListResponse)
async def list_messages(
    project_id: str,
    stage: Optional[int] = None,
    db: Database = Depends(get_db),
) -> MessageListResponse:
    await _require_project(db, project_id)
    rows = await db.list_messages(project_id, stage=stage)
    return MessageListResponse(messages=[ChatMessageOut.model_validate(r) for r in rows])


@router.get("/{project_id}/prd", response_model=PrdResponse)
async def get_prd(project_id: str, db: Database = Depends(get_db)) -> PrdResponse:
    project = await _require_project(db, project_id)
    prd_data = dict(project.get("prd_data") or {})
    return PrdResponse(prdData=prd_data, completion=evaluate_completion(prd_data))


@router.patch("/{project_id}/prd", response_model=PrdResponse)
async def patch_prd(
    project_id: str,
    fields: dict = Body(...),
    db: Database = Depends(get_db),
) -> PrdResponse:
    """
    Merge user-edited fields into the stored document.

    Uses the same rules as a chat turn, so arrays are unioned: an edit can add
    array items but not remove them.
    """
    try:
        incoming = PrdData.model_validate(fields).model_dump(exclude_none=True)
    except ValidationError as e:
        code = generate_error_code()
        log("WARN", "prd edit rejected", project_id=project_id, error=str(e)[:300], error_code=code)
        raise HTTPException(status_code=400, detail="PRD 字段格式不正确")

    await _require_project(db, project_id)
    try:
        current = await db.get_prd_data(project_id, strict=True)
        merged = merge_prd_data(current, incoming)
        await db.update_prd_data(project_id, merged)
    except DatabaseError as e:
        raise HTTPException(status_code=500, detail=f"PRD 保存失败 ({e.error_code})")

    completion = evaluate_completion(merged)
    log("INFO", "prd edited", project_id=project_id, fields=",".join(sorted(incoming)),
        ready=completion.ready, percent=completion.percent)
    return PrdResponse(prdData=merged, completion=completion)


@router.post("/{project_id}/prd/regenerate", response_model=RegenerateSectionResponse)
@limiter.limit(ANALYSIS_RATE_LIMIT)
async def regenerate_prd_section(
    request: Request,
    project_id: str,
    body: RegenerateSectionRequest,
    db: Database = Depends(get_db),
) -> RegenerateSectionResponse:
    """
    Rewrite one PRD section with the LLM and store it.

    Body: {section}. The section's fields are replaced, not merged.
    """
    section = SECTIONS.get(body.section)
    if section is None:
        raise HTTPException(status_code=400, detail=f"未知的 PRD 章节：{body.section}")

    project = await _require_project(db, project_id)
    current = dict(project.get("prd_data") or {})
    competitors = await db.list_competitor_products(project_id, status="completed")

    try:
        raw = await llm.call_llm(
            prompts.build_section_regeneration_prompt(body.section, project, current, competitors),
            project_id=project_id,
            system_prompt=prompts.SECTION_REGENERATION_PROMPT,
            json_mode=section.kind is FieldKind.NESTED_OBJECT,
        )
    except LLMError as e:
        status, message = e.http_status("章节生成失败，请稍后重试")
        code = generate_error_code()
        log("ERROR", "section regeneration llm call failed", project_id=project_id,
            section=body.section, reason=e.reason, error=str(e)[:300], error_code=code)
        raise HTTPException(status_code=status, detail=f"{message} ({code})")

    content = parse_section_output(section, raw)
    updated, written = apply_section(current, section, content, project_id=project_id)
    if not written:
        code = generate_error_code()
        log("ERROR", "regenerated section unusable", project_id=project_id,
            section=body.section, raw_output=raw[:300], error_code=code)
        raise HTTPException(status_code=500, detail=f"章节生成结果解析失败，请重试 ({code})")

    try:
        await db.update_prd_data(project_id, updated)
    except DatabaseError as e:
        raise HTTPException(status_code=500, detail=f"PRD 保存失败 ({e.error_code})")

    completion = evaluate_completion(updated)
    log("INFO", "prd section regenerated", project_id=project_id, section=body.section,
        fields=",".join(written), ready=completion.ready, percent=completion.percent)
    return RegenerateSectionResponse(
        prdData=updated,
        completion=completion,
        section=body.section,
        regeneratedContent=content,
    )
