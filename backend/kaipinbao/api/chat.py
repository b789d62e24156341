"""
开品宝 Backend — Chat API (POST /api/chat)

One PRD chat turn end to end:
  1. persist the user's message
  2. build the system prompt from project context (PrdData, competitors, market analysis)
  3. open the Gemini stream (errors here become JSON 429 / 402 / 500)
  4. forward normalized chunks to the client while accumulating the text
  5. after the stream completes: persist the assistant message, extract + merge
     the prd-data block, evaluate completion, emit a prd_update event, then [DONE]

Step 5 only runs when the upstream stream finished. A transport failure mid-stream
emits an error event and discards the partial text; a client disconnect cancels
the generator before step 5, so nothing is written.
"""

import time

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import Request

from kaipinbao.config import generate_error_code, log
from kaipinbao.db import Database, DatabaseError, get_db
from kaipinbao.gemini import GeminiStream, GeminiStreamClient, GeminiStreamError, get_gemini
from kaipinbao.models import ChatRequest, ErrorEvent, PrdUpdateEvent
from kaipinbao.prd import evaluate_completion, extract_prd_data, merge_prd_data
from kaipinbao.prompts import build_chat_system_prompt, stage_label
from kaipinbao.ratelimit import CHAT_RATE_LIMIT, limiter
from kaipinbao.sse import DONE_CHUNK, format_sse_event, iter_normalized_chunks

router = APIRouter(prefix="/api", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

RATE_LIMITED_MESSAGE = "请求过于频繁，请稍后再试"
QUOTA_EXHAUSTED_MESSAGE = "AI 额度已用完，请充值后继续"
UNAVAILABLE_MESSAGE = "AI 服务暂时不可用"
STREAM_INTERRUPTED_MESSAGE = "AI 回复中断，请重新发送"


def upstream_error(status_code: int) -> tuple[int, str]:
    """Map an upstream status to the (status, message) shown to the user."""
    if status_code == 429:
        return 429, RATE_LIMITED_MESSAGE
    if status_code == 402:
        return 402, QUOTA_EXHAUSTED_MESSAGE
    return 500, UNAVAILABLE_MESSAGE


def _error_json(status_code: int, message: str, error_code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "error_code": error_code})


def _error_event(message: str, error_code: str) -> bytes:
    return format_sse_event(ErrorEvent(message=message, recoverable=True, error_code=error_code).model_dump())


async def build_turn_prompt(
    db: Database,
    project: dict,
    stage: int,
    prd_data: dict | None = None,
) -> str:
    """System prompt for this turn. `prd_data` skips the read when the client sent it."""
    project_id = project["id"]
    if prd_data is None:
        prd_data = dict(project.get("prd_data") or {})
    competitors = await db.list_competitor_products(project_id, status="completed")
    reviews = await db.list_reviews([c["id"] for c in competitors if c.get("id")])
    market = {k: prd_data[k] for k in ("initialMarketAnalysis", "marketAnalysis") if prd_data.get(k)}
    return build_chat_system_prompt(
        prd_data=prd_data,
        competitors=competitors,
        reviews=reviews,
        market_analysis=market or None,
        stage=stage,
        project=project,
    )


async def finalize_turn(db: Database, project_id: str, stage: int, assistant_text: str) -> PrdUpdateEvent:
    """
    Persist the finished assistant message and fold its prd-data block into the project.

    The document is re-read right before the merge so a manual edit made while
    the stream was running is not lost; the read-modify-write itself is not atomic.
    """
    await db.insert_message(project_id, "assistant", assistant_text, stage)

    incoming = extract_prd_data(assistant_text, project_id=project_id)
    current = await db.get_prd_data(project_id, strict=True)
    merged = current
    if incoming is not None:
        merged = merge_prd_data(current, incoming)
        await db.update_prd_data(project_id, merged)

    completion = evaluate_completion(merged, assistant_text)
    log("INFO", "chat turn finalized", project_id=project_id, extracted=incoming is not None,
        ready=completion.ready, reason=completion.reason, percent=completion.percent)
    return PrdUpdateEvent(prdData=merged, extracted=incoming is not None, completion=completion)


async def run_chat_turn(db: Database, upstream: GeminiStream, project_id: str, stage: int):
    """Async generator yielding SSE bytes for one turn."""
    start = time.perf_counter()
    parts: list[str] = []
    saw_done = False

    try:
        async for chunk in iter_normalized_chunks(upstream.aiter_bytes(), project_id=project_id):
            if chunk.done:
                saw_done = True
                continue
            parts.append(chunk.delta_text)
            yield chunk.encode()
    except (httpx.HTTPError, httpx.StreamError) as e:
        code = generate_error_code()
        log("ERROR", "gemini stream interrupted", project_id=project_id, error=str(e),
            error_code=code, partial_chars=sum(len(p) for p in parts))
        yield _error_event(STREAM_INTERRUPTED_MESSAGE, code)
        yield DONE_CHUNK.encode()
        return
    finally:
        await upstream.aclose()

    assistant_text = "".join(parts)
    if not saw_done and not assistant_text:
        code = generate_error_code()
        log("ERROR", "gemini stream ended without content", project_id=project_id, error_code=code)
        yield _error_event(UNAVAILABLE_MESSAGE, code)
        yield DONE_CHUNK.encode()
        return

    try:
        update = await finalize_turn(db, project_id, stage, assistant_text)
    except DatabaseError as e:
        yield _error_event("回复已生成，但保存失败，请刷新后重试", e.error_code)
        yield DONE_CHUNK.encode()
        return

    yield format_sse_event(update.model_dump())
    yield DONE_CHUNK.encode()
    log("INFO", "chat turn completed", project_id=project_id, stage=stage,
        chars=len(assistant_text), duration_ms=int((time.perf_counter() - start) * 1000))


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.post("/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat(
    request: Request,
    body: ChatRequest,
    db: Database = Depends(get_db),
    gemini: GeminiStreamClient = Depends(get_gemini),
):
    """
    POST /api/chat

    Body: {messages: [{role, content}], projectId, currentStage, prdData?}
    Returns a text/event-stream of normalized chunks ending in [DONE],
    or {error} JSON (400 / 404 / 429 / 402 / 500) before streaming starts.
    """
    project_id = body.project_id
    stage, _ = stage_label(body.current_stage)

    if body.messages[-1].role != "user":
        code = generate_error_code()
        log("WARN", "chat rejected, last message is not from user", project_id=project_id, error_code=code)
        return _error_json(400, "最后一条消息必须来自用户", code)

    project = await db.get_project(project_id)
    if not project:
        code = generate_error_code()
        log("WARN", "chat rejected, project not found", project_id=project_id, error_code=code)
        return _error_json(404, "项目不存在", code)

    log("INFO", "chat turn started", project_id=project_id, stage=stage, history=len(body.messages))

    try:
        await db.insert_message(project_id, "user", body.messages[-1].content, stage)
    except DatabaseError as e:
        return _error_json(500, "消息保存失败，请稍后重试", e.error_code)

    system_prompt = await build_turn_prompt(db, project, stage, prd_data=body.prd_data)

    try:
        upstream = await gemini.open_stream(
            system_prompt,
            [m.model_dump() for m in body.messages],
            project_id=project_id,
        )
    except GeminiStreamError as e:
        status, message = upstream_error(e.status_code)
        code = generate_error_code()
        log("ERROR", "gemini stream failed to open", project_id=project_id,
            upstream_status=e.status_code, error=e.message[:200], error_code=code)
        return _error_json(status, message, code)

    return StreamingResponse(
        run_chat_turn(db, upstream, project_id, stage),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
