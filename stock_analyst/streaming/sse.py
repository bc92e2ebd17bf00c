"""Server-Sent-Events framing for OpenAI-compatible chat streams.

SSEFrameDecoder turns raw upstream bytes, split at arbitrary boundaries, into
DeltaToken / Terminated events. The encoders at the bottom build the frames the
relay writes downstream.
"""
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Union

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"


@dataclass(frozen=True)
class DeltaToken:
    text: str
    payload: str  # the JSON text of the data line, forwarded verbatim


class Terminated:
    """Terminal signal; compare with `is TERMINATED`."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Terminated"


TERMINATED = Terminated()


@dataclass(frozen=True)
class ErrorEvent:
    """A relay error frame `{"error": ...}`; only produced for downstream consumers."""

    message: str


StreamEvent = Union[DeltaToken, Terminated, ErrorEvent]


def extract_delta_text(chunk) -> str | None:
    """Return choices[0].delta.content when it is a non-empty string."""
    if not isinstance(chunk, dict):
        return None
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class SSEFrameDecoder:
    """Incremental decoder; one instance per upstream response.

    `surface_errors` is for clients reading the relay's own output, where an
    `{"error": ...}` payload must be shown instead of dropped.
    """

    def __init__(self, surface_errors: bool = False):
        self._buffer = b""
        self.terminated = False
        self.surface_errors = surface_errors

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        if self.terminated:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._decode_lines(lines)

    def flush(self) -> List[StreamEvent]:
        """Decode whatever is left once the byte stream has ended."""
        if self.terminated or not self._buffer:
            self._buffer = b""
            return []
        rest, self._buffer = self._buffer, b""
        return self._decode_lines([rest])

    async def iter_events(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self.terminated:
                return
        for event in self.flush():
            yield event

    def _decode_lines(self, lines: List[bytes]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for raw in lines:
            try:
                line = raw.decode("utf-8").rstrip("\r")
            except UnicodeDecodeError:
                logger.debug("Dropping undecodable SSE line (%d bytes)", len(raw))
                continue
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):]
            if payload == DONE_SENTINEL:
                self.terminated = True
                events.append(TERMINATED)
                break
            try:
                chunk = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Dropping malformed SSE payload: %.80s", payload)
                continue
            if self.surface_errors and isinstance(chunk, dict) and "error" in chunk:
                events.append(ErrorEvent(message=str(chunk["error"])))
                continue
            text = extract_delta_text(chunk)
            if text is not None:
                events.append(DeltaToken(text=text, payload=payload))
        return events


def data_frame(payload: str) -> str:
    return f"{DATA_PREFIX}{payload}\n\n"


def error_frame(message: str) -> str:
    return data_frame(json.dumps({"error": message}, ensure_ascii=False))
