"""
开品宝 Backend — SSE Transcoder

Turns Gemini's `streamGenerateContent?alt=sse` byte stream into the
OpenAI-compatible chunk shape the frontend decodes:

    data: {"choices":[{"index":0,"delta":{"content":"..."}}]}
    data: [DONE]

`GeminiSSETranscoder` is push-based (feed bytes, get chunks back) and has no I/O.
`iter_normalized_chunks()` / `transcode()` wrap it as pull-based async generators
over any async byte iterator (an httpx response body in production, a list in tests).
"""

import codecs
import json
from dataclasses import dataclass
from typing import AsyncIterator

from kaipinbao.config import log

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamChunk:
    """One normalized unit of the chat stream: a text delta or the done marker."""

    delta_text: str = ""
    done: bool = False

    def to_payload(self) -> dict:
        return {"choices": [{"index": 0, "delta": {"content": self.delta_text}}]}

    def encode(self) -> bytes:
        """Serialize as one SSE event."""
        if self.done:
            return f"{DATA_PREFIX}{DONE_SENTINEL}\n\n".encode("utf-8")
        body = json.dumps(self.to_payload(), ensure_ascii=False)
        return f"{DATA_PREFIX}{body}\n\n".encode("utf-8")


DONE_CHUNK = StreamChunk(done=True)


def format_sse_event(event_data: dict) -> bytes:
    """Format a dict as an SSE event. Format: 'data: {json}\\n\\n'"""
    return f"{DATA_PREFIX}{json.dumps(event_data, ensure_ascii=False)}\n\n".encode("utf-8")


def extract_delta_text(payload: dict) -> str:
    """Pull candidates[0].content.parts[*].text out of a Gemini payload ("" if absent)."""
    candidates = payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


def has_finish_reason(payload: dict) -> bool:
    candidates = payload.get("candidates") or []
    return bool(candidates) and isinstance(candidates[0], dict) and bool(candidates[0].get("finishReason"))


class GeminiSSETranscoder:
    """
    Incremental line splitter + payload converter.

    Bytes are decoded with an incremental UTF-8 decoder so multi-byte characters
    split across network reads survive. Only complete lines are interpreted; the
    trailing partial line stays buffered until the next feed() or close().
    Once a done marker has been produced the transcoder ignores further input.
    """

    def __init__(self, project_id: str | None = None):
        self._buffer = ""
        self._decoder = None
        self._finished = False
        self._project_id = project_id
        self.malformed_lines = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, data: bytes | str) -> list[StreamChunk]:
        """Consume one read from upstream; return the chunks it completes, in order."""
        if self._finished:
            return []
        if isinstance(data, bytes):
            if self._decoder is None:
                self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            data = self._decoder.decode(data)
        self._buffer += data

        chunks: list[StreamChunk] = []
        while not self._finished:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            chunks.extend(self._process_line(line))
        return chunks

    def close(self) -> list[StreamChunk]:
        """Flush whatever is left in the buffer as a final line."""
        if self._finished:
            return []
        if self._decoder is not None:
            self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if tail.strip():
            return self._process_line(tail)
        return []

    def _process_line(self, line: str) -> list[StreamChunk]:
        if line.endswith("\r"):
            line = line[:-1]
        if not line.startswith(DATA_PREFIX):
            # comments (":keep-alive"), blank separators, event:/id: fields
            return []

        raw = line[len(DATA_PREFIX):].strip()
        if raw == DONE_SENTINEL:
            self._finished = True
            return [DONE_CHUNK]

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            self.malformed_lines += 1
            log(
                "WARN",
                "sse line skipped, malformed json",
                project_id=self._project_id,
                error=str(e),
                line=raw[:120],
            )
            return []
        if not isinstance(payload, dict):
            self.malformed_lines += 1
            log("WARN", "sse line skipped, payload is not an object", project_id=self._project_id)
            return []

        chunks: list[StreamChunk] = []
        text = extract_delta_text(payload)
        if text:
            chunks.append(StreamChunk(delta_text=text))
        if has_finish_reason(payload):
            self._finished = True
            chunks.append(DONE_CHUNK)
        return chunks


async def iter_normalized_chunks(
    byte_stream: AsyncIterator[bytes],
    project_id: str | None = None,
) -> AsyncIterator[StreamChunk]:
    """
    Pull-based view of the transcoder.

    Yields StreamChunks in upstream order and stops after the first done marker.
    If upstream ends without any done marker, nothing extra is yielded; callers
    decide what an unterminated stream means.
    """
    transcoder = GeminiSSETranscoder(project_id=project_id)
    async for data in byte_stream:
        for chunk in transcoder.feed(data):
            yield chunk
        if transcoder.finished:
            return
    for chunk in transcoder.close():
        yield chunk


async def transcode(
    byte_stream: AsyncIterator[bytes],
    project_id: str | None = None,
) -> AsyncIterator[bytes]:
    """Byte-in, byte-out form: Gemini SSE → normalized SSE, always ending in [DONE]."""
    saw_done = False
    async for chunk in iter_normalized_chunks(byte_stream, project_id=project_id):
        saw_done = saw_done or chunk.done
        yield chunk.encode()
    if not saw_done:
        yield DONE_CHUNK.encode()
