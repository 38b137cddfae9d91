# /utils/sse.py
# Server-Sent-Event framing for the chat stream: the server encodes content deltas as
# `data: {"content": ...}` frames terminated by `data: [DONE]`, and SSEReader decodes them
# incrementally on the consuming side (CLI client, Django UI, tests).
from __future__ import annotations

import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
DONE_FRAME = f"data: {DONE_MARKER}\n\n"

_IGNORED_FIELDS = ("event:", "id:", "retry:")


def format_sse(content: str) -> str:
    return f"data: {json.dumps({'content': content}, ensure_ascii=False)}\n\n"


class SSEReader:
    """
    Incremental decoder for the chat stream.

    Network chunks do not line up with frames, so partial frames are buffered until the
    blank-line terminator arrives. feed() returns the content deltas completed by the chunk.
    Text that is not SSE at all is passed through as content.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.done = False

    def feed(self, chunk: str) -> List[str]:
        if not chunk:
            return []
        self._buffer += chunk.replace("\r\n", "\n")
        out: List[str] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            out.extend(self._decode_frame(frame))
        return out

    def flush(self) -> List[str]:
        """Decode whatever is left once the stream has closed."""
        frame, self._buffer = self._buffer, ""
        if not frame.strip():
            return []
        return self._decode_frame(frame)

    def _decode_frame(self, frame: str) -> List[str]:
        data_lines: List[str] = []
        saw_field = False
        for line in frame.split("\n"):
            if line.startswith("data:"):
                saw_field = True
                data_lines.append(line[5:].lstrip(" "))
            elif line.startswith(":") or line.startswith(_IGNORED_FIELDS):
                saw_field = True

        if not saw_field:
            # not an SSE frame; keep the raw text rather than dropping it
            return [frame] if frame.strip() else []
        if not data_lines:
            return []

        payload = "\n".join(data_lines).strip()
        if payload == DONE_MARKER:
            self.done = True
            return []
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE frame: %r", payload[:200])
            return []
        if isinstance(parsed, dict) and parsed.get("content"):
            return [str(parsed["content"])]
        return []


def iter_sse_content(chunks: Iterable[str]) -> Iterator[str]:
    reader = SSEReader()
    for chunk in chunks:
        yield from reader.feed(chunk)
        if reader.done:
            return
    yield from reader.flush()


async def aiter_sse_content(chunks: AsyncIterable[str]) -> AsyncIterator[str]:
    reader = SSEReader()
    async for chunk in chunks:
        for piece in reader.feed(chunk):
            yield piece
        if reader.done:
            return
    for piece in reader.flush():
        yield piece


async def collect_sse_text(chunks: AsyncIterable[str]) -> str:
    return "".join([piece async for piece in aiter_sse_content(chunks)])
