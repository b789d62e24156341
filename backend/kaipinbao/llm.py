"""
开品宝 Backend — Single-shot LLM Calls

Market, competitor and review analysis, PRD section regeneration and
review-screenshot OCR go through litellm: provider fallback chain, rate-limit
cooldown, code-fence stripping, structured output validation with one repair
retry.

The streaming chat does not use this module (see gemini.py + sse.py).
"""

import json
import re
import time
import warnings

import litellm
from pydantic import BaseModel, ValidationError

from kaipinbao.config import LLM_CONFIG, OCR_MODEL, generate_error_code, log, settings

# ── Suppress noisy litellm warnings ──────────────────────────────────────────
# litellm internally creates VertexLLM coroutines that sometimes go un-awaited
# when the gemini/ prefix routes through a code path that raises before awaiting.
warnings.filterwarnings(
    "ignore",
    message="coroutine 'VertexLLM.async_completion' was never awaited",
)
litellm.suppress_debug_info = True
litellm.drop_params = True  # Prevent unsupported-param errors across providers

# ── Rate-limit cooldown cache ────────────────────────────────────────────────
# Maps provider name → time.monotonic() deadline. Providers in this dict are
# skipped until the deadline passes.
_rate_limited_until: dict[str, float] = {}
RATE_LIMIT_COOLDOWN_SECONDS = 600
LLM_CALL_TIMEOUT_SECONDS = 90

OCR_FALLBACK_CHAIN = [
    OCR_MODEL,
    "gemini/gemini-2.5-flash",
    "openai/gpt-4o",
]

_QUOTA_KEYWORDS = ("402", "payment required", "insufficient_quota", "credits", "billing")
_RATE_LIMIT_KEYWORDS = ("rate_limit", "ratelimit", "rate limit", "429", "quota", "resource_exhausted")


def _is_rate_limit_error(error: Exception) -> bool:
    """Transient errors that put a provider into cooldown."""
    error_str = str(error).lower()
    return any(kw in error_str for kw in (*_RATE_LIMIT_KEYWORDS, "timeout", "timed out"))


def classify_llm_error(error: Exception | None) -> str:
    """'quota' | 'rate_limit' | 'other', used to pick the HTTP status shown to the user."""
    if error is None:
        return "other"
    error_str = str(error).lower()
    if any(kw in error_str for kw in _QUOTA_KEYWORDS):
        return "quota"
    if any(kw in error_str for kw in _RATE_LIMIT_KEYWORDS):
        return "rate_limit"
    return "other"


def _mark_rate_limited(provider: str) -> None:
    _rate_limited_until[provider] = time.monotonic() + RATE_LIMIT_COOLDOWN_SECONDS
    log("WARN", "provider rate-limited, will skip for cooldown",
        provider=provider, cooldown_seconds=RATE_LIMIT_COOLDOWN_SECONDS)


def _is_in_cooldown(provider: str) -> bool:
    deadline = _rate_limited_until.get(provider)
    if deadline is None:
        return False
    if time.monotonic() >= deadline:
        del _rate_limited_until[provider]
        return False
    return True


def _api_key_for(provider: str) -> str:
    """Key from Settings for a litellm 'vendor/model' name ("" if not configured)."""
    vendor = provider.split("/", 1)[0]
    return {
        "gemini": settings.gemini_api_key,
        "openai": settings.openai_api_key,
        "anthropic": settings.anthropic_api_key,
    }.get(vendor, "")


# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """All providers in the fallback chain failed."""

    def __init__(self, message: str, reason: str = "other"):
        self.reason = reason  # 'rate_limit' | 'quota' | 'other'
        super().__init__(message)

    def http_status(self, failure_message: str) -> tuple[int, str]:
        """Status code and user-facing message; `failure_message` covers everything but rate limits and quota."""
        if self.reason == "rate_limit":
            return 429, "请求过于频繁，请稍后再试"
        if self.reason == "quota":
            return 402, "AI 额度已用完，请充值后继续"
        return 500, failure_message


class LLMValidationError(Exception):
    """LLM output failed Pydantic validation even after retry."""

    def __init__(self, raw_output: str, expected_schema: str, error: str):
        self.raw_output = raw_output
        self.expected_schema = expected_schema
        super().__init__(f"LLM validation failed: {error}")


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def _response_text(response) -> str:
    if not response.choices:
        return ""
    msg = response.choices[0].message
    if msg.content:
        return msg.content
    # Gemini 2.5 "thinking" output can land in reasoning_content only
    return getattr(msg, "reasoning_content", None) or ""


async def _walk_chain(
    chain: list[str],
    messages: list[dict],
    prompt_type: str,
    project_id: str | None,
    **completion_kwargs,
) -> str:
    last_error: Exception | None = None
    tried_any = False

    for idx, provider in enumerate(chain):
        if _is_in_cooldown(provider):
            log("INFO", "skipping rate-limited provider", project_id=project_id, provider=provider)
            continue
        api_key = _api_key_for(provider)
        if not api_key:
            log("INFO", "skipping unconfigured provider", project_id=project_id, provider=provider)
            continue

        tried_any = True
        log("INFO", "llm call started", project_id=project_id, provider=provider, prompt_type=prompt_type)
        start = time.perf_counter()

        try:
            kwargs = dict(completion_kwargs)
            if kwargs.pop("json_mode", False) and "gemini-2.5" in provider:
                kwargs["response_format"] = {"type": "json_object"}
            response = await litellm.acompletion(
                model=provider,
                messages=messages,
                api_key=api_key,
                timeout=LLM_CALL_TIMEOUT_SECONDS,
                **kwargs,
            )
            duration_ms = int((time.perf_counter() - start) * 1000)
            content = _response_text(response)

            tokens_used = None
            if getattr(response, "usage", None):
                tokens_used = getattr(response.usage, "total_tokens", None)

            if not content:
                log("WARN", "llm returned empty content, will try next provider",
                    project_id=project_id, provider=provider, duration_ms=duration_ms)
                raise ValueError(f"Provider {provider} returned empty content")

            log("INFO", "llm call succeeded", project_id=project_id, provider=provider,
                duration_ms=duration_ms, tokens_used=tokens_used)
            return content

        except Exception as e:
            code = generate_error_code()
            log("ERROR", "llm call failed", project_id=project_id, provider=provider,
                error=str(e), error_code=code)
            last_error = e

            if _is_rate_limit_error(e):
                _mark_rate_limited(provider)

            next_provider = next((p for p in chain[idx + 1:] if not _is_in_cooldown(p)), None)
            if next_provider:
                log("WARN", "llm provider fallback", project_id=project_id,
                    from_provider=provider, to_provider=next_provider, reason=str(e))

    if not tried_any and any(p in _rate_limited_until for p in chain):
        # Everything configured is cooling down: clear and try once more.
        log("WARN", "all providers in cooldown, clearing cooldowns for retry", project_id=project_id)
        for p in chain:
            _rate_limited_until.pop(p, None)
        return await _walk_chain(chain, messages, prompt_type, project_id, **completion_kwargs)

    if not tried_any:
        raise LLMError("No LLM provider is configured", reason="other")
    raise LLMError(f"All LLM providers failed. Last error: {last_error}",
                   reason=classify_llm_error(last_error)) from last_error


async def call_llm(
    messages: list[dict],
    project_id: str | None = None,
    system_prompt: str | None = None,
    json_mode: bool = True,
) -> str:
    """
    Call the LLM, walking the fallback chain from the top on every request.

    Args:
        messages: Chat messages without a system prompt (one is injected here).
        project_id: For log correlation.
        system_prompt: Overrides the default analyst persona.
        json_mode: Ask JSON-capable providers for a JSON object. Off for free-text output.

    Raises:
        LLMError: every provider failed; `reason` tells rate_limit / quota / other apart.
    """
    full_messages = _inject_system_prompt(messages, system_prompt)
    return await _walk_chain(
        LLM_CONFIG["fallback_chain"],
        full_messages,
        "completion",
        project_id,
        temperature=LLM_CONFIG["temperature"],
        max_tokens=LLM_CONFIG["max_tokens"],
        json_mode=json_mode,
    )


async def call_llm_structured(
    messages: list[dict],
    response_model: type[BaseModel],
    project_id: str | None = None,
    system_prompt: str | None = None,
) -> BaseModel:
    """
    Call the LLM and validate its JSON against `response_model`.

    On a JSON or validation error the broken output and the schema are sent
    back once with a request to fix it. A second failure raises
    LLMValidationError.
    """
    raw = await call_llm(messages, project_id=project_id, system_prompt=system_prompt)

    try:
        return response_model.model_validate(json.loads(extract_json_text(raw)))
    except (json.JSONDecodeError, ValidationError) as e:
        log(
            "ERROR",
            "llm output validation failed",
            project_id=project_id,
            raw_output=raw[:500],
            schema=response_model.__name__,
            validation_error=str(e)[:300],
            error_code=generate_error_code(),
        )
        schema = json.dumps(response_model.model_json_schema(), ensure_ascii=False, indent=2)
        fix_instruction = (
            "\n\n---\n\n"
            f"上一次的输出不是合法的 JSON：\n\n```\n{raw}\n```\n\n"
            f"错误：{e}\n\n"
            f"请只输出符合以下 schema 的 JSON（不要 markdown，不要解释）：\n{schema}"
        )
        retry_messages = [dict(m) for m in messages]
        if retry_messages and retry_messages[-1].get("role") == "user":
            retry_messages[-1]["content"] += fix_instruction
        else:
            retry_messages.append({"role": "user", "content": fix_instruction})

        retry_raw = await call_llm(retry_messages, project_id=project_id, system_prompt=system_prompt)
        try:
            return response_model.model_validate(json.loads(extract_json_text(retry_raw)))
        except (json.JSONDecodeError, ValidationError) as retry_e:
            raise LLMValidationError(
                raw_output=retry_raw,
                expected_schema=schema,
                error=str(retry_e),
            ) from retry_e


async def call_llm_vision(
    prompt: str,
    image_base64: str,
    project_id: str | None = None,
) -> str:
    """
    Send one image plus an instruction to a vision model (review-page OCR).

    No JSON mode: Gemini's JSON mode conflicts with image input.

    Raises:
        LLMError: every vision provider failed.
    """
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_base64}"}},
            ],
        }
    ]
    return await _walk_chain(
        OCR_FALLBACK_CHAIN,
        messages,
        "review_ocr",
        project_id,
        temperature=0.1,
        max_tokens=8000,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions
# ─────────────────────────────────────────────────────────────────────────────


def _inject_system_prompt(messages: list[dict], system_prompt: str | None = None) -> list[dict]:
    """Prepend a system prompt. Returns a new list."""
    system_msg = {
        "role": "system",
        "content": system_prompt or LLM_CONFIG["persona"]["system_prompt"],
    }
    return [system_msg] + list(messages)


def _strip_code_fences(text: str) -> str:
    """
    Remove markdown code fences from LLM output.
    Handles: ```json\\n...\\n```, ```\\n...\\n```, and plain text.
    """
    if not text or not isinstance(text, str):
        return text
    stripped = text.strip()
    match = re.match(r"^```(?:json)?\s*\n?(.*?)\n?```\s*$", stripped, re.DOTALL)
    if match:
        return match.group(1).strip()
    return stripped


def extract_json_text(text: str) -> str:
    """
    Best-effort JSON span from model output: a fenced block anywhere in the
    text, else the outermost {...} or [...] span, else the stripped text.
    """
    if not text:
        return ""
    stripped = _strip_code_fences(text)
    if stripped[:1] in ("{", "["):
        return stripped
    fenced = re.search(r"```(?:json)?\s*(.*?)```", stripped, re.DOTALL)
    if fenced:
        return fenced.group(1).strip()
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = stripped.find(opener), stripped.rfind(closer)
        if start != -1 and end > start:
            return stripped[start:end + 1]
    return stripped
