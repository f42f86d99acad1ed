"""Server-Sent Events framing for streamed roasts.

Every frame is ``data: <json>`` followed by a blank line; the stream ends
with ``data: [DONE]``.
"""

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from loguru import logger

from .exceptions import StreamError

MEDIA_TYPE = "text/event-stream"
DONE_MARKER = "[DONE]"
DONE_FRAME = f"data: {DONE_MARKER}\n\n"


def encode_event(payload: dict[str, Any]) -> str:
    """Encode one payload as an SSE frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class SSEParser:
    """Incremental parser tolerant of arbitrary chunk boundaries."""

    def __init__(self) -> None:
        self.buffer = ""
        self.done = False
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: str | bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return the payloads of every completed frame."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer += chunk.replace("\r\n", "\n")

        events: list[dict[str, Any]] = []
        while not self.done and "\n\n" in self.buffer:
            frame, self.buffer = self.buffer.split("\n\n", 1)
            data = self._frame_data(frame)
            if data is None:
                continue
            if data == DONE_MARKER:
                self.done = True
                break
            try:
                payload = json.loads(data)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping malformed SSE frame: {e}")
                continue
            if isinstance(payload, dict):
                events.append(payload)
        return events

    @staticmethod
    def _frame_data(frame: str) -> str | None:
        lines = [line[5:].removeprefix(" ") for line in frame.split("\n") if line.startswith("data:")]
        return "\n".join(lines) if lines else None


async def iter_events(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield payloads from a chunked SSE body until the done marker.

    Raises:
        StreamError: If the body ends without the done marker.
    """
    parser = SSEParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
        if parser.done:
            return
    raise StreamError("Stream ended before completion marker")
