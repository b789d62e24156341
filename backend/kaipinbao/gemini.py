"""
开品宝 Backend — Gemini Streaming Client

Opens `models/{model}:streamGenerateContent?alt=sse` over httpx and hands back
the raw SSE byte stream for sse.py to transcode.

The HTTP status is checked before any byte is handed out: a missing key, a
transport failure or a non-2xx response raises GeminiStreamError so the caller
can answer with a JSON error instead of an event stream.
"""

from typing import AsyncIterator

import httpx

from kaipinbao.config import CHAT_CONFIG, log, settings


class GeminiStreamError(Exception):
    """Raised before streaming starts. status_code mirrors the upstream status (500 for local failures)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"gemini stream failed ({status_code}): {message}")


def to_gemini_contents(messages: list[dict]) -> list[dict]:
    """OpenAI-style [{role, content}] → Gemini contents. assistant → model."""
    contents = []
    for m in messages:
        role = "model" if m.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": m.get("content", "")}]})
    return contents


class GeminiStream:
    """An open upstream response. Iterate once with aiter_bytes(); always aclose()."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for data in self._response.aiter_bytes():
            yield data

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


class GeminiStreamClient:
    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = CHAT_CONFIG["temperature"],
        max_output_tokens: int = CHAT_CONFIG["max_output_tokens"],
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"

    def build_payload(self, system_prompt: str, messages: list[dict]) -> dict:
        return {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": to_gemini_contents(messages),
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    async def open_stream(self, system_prompt: str, messages: list[dict], project_id: str | None = None) -> GeminiStream:
        if not self.api_key:
            raise GeminiStreamError(500, "GEMINI_API_KEY is not configured")

        timeout = httpx.Timeout(
            CHAT_CONFIG["read_timeout_seconds"],
            connect=CHAT_CONFIG["connect_timeout_seconds"],
        )
        client = httpx.AsyncClient(timeout=timeout)
        request = client.build_request(
            "POST",
            self.stream_url,
            json=self.build_payload(system_prompt, messages),
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise GeminiStreamError(500, f"transport error: {e}") from e

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await client.aclose()
            log("ERROR", "gemini stream rejected", project_id=project_id,
                status=response.status_code, body=body[:300])
            raise GeminiStreamError(response.status_code, body[:500] or response.reason_phrase)

        log("INFO", "gemini stream opened", project_id=project_id, model=self.model)
        return GeminiStream(client, response)


def get_gemini() -> GeminiStreamClient:
    """FastAPI dependency. Override in tests via app.dependency_overrides[get_gemini]."""
    return GeminiStreamClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
    )
