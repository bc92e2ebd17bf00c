"""Bridges one upstream chat stream to one downstream SSE response.

A producer task reads the upstream body, decodes it and pushes events into a
queue; `frames()` drains the queue and yields the downstream frames. Cancelling
the producer closes the upstream response, so aborting a relay never leaks an
upstream connection.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from stock_analyst.inference.upstream_client import ChatStreamRequest, UpstreamStreamClient
from stock_analyst.observability.metrics import RelayMetrics, log_relay
from stock_analyst.streaming.errors import RelayError
from stock_analyst.streaming.sse import (
    DONE_FRAME,
    TERMINATED,
    DeltaToken,
    SSEFrameDecoder,
    data_frame,
    error_frame,
)

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[str], Awaitable[None]]


@dataclass
class StreamState:
    accumulated_text: str = ""
    terminated: bool = False
    aborted: bool = False


@dataclass(frozen=True)
class _Failure:
    message: str


_CLOSED = object()


class StreamRelay:
    def __init__(
        self,
        client: UpstreamStreamClient,
        request: ChatStreamRequest,
        on_complete: Optional[CompletionCallback] = None,
        session_id: str = "default",
    ):
        self._client = client
        self._request = request
        self._on_complete = on_complete
        self.session_id = session_id
        self.state = StreamState()
        self.metrics = RelayMetrics(session_id=session_id)
        self._channel: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self._reported = False

    @property
    def live(self) -> bool:
        return self._task is not None and not (self.state.terminated or self.state.aborted)

    def start(self) -> "StreamRelay":
        if self._task is not None:
            raise RuntimeError("relay already started")
        self._started_at = time.monotonic()
        self._task = asyncio.create_task(self._pump(), name=f"relay-{self.session_id}")
        return self

    async def cancel(self) -> None:
        """Abort the upstream request and wait until its connection is released."""
        if self.state.terminated or self.state.aborted:
            return
        self.state.aborted = True
        self._abort_upstream()
        if self._task is not None:
            await asyncio.wait([self._task])
        self._report()

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                event = await self._channel.get()
                # an abort wins over anything still queued behind it
                if event is _CLOSED or self.state.aborted:
                    return
                if isinstance(event, DeltaToken):
                    self.state.accumulated_text += event.text
                    self.metrics.delta_count += 1
                    yield data_frame(event.payload)
                elif event is TERMINATED:
                    self.state.terminated = True
                    self.metrics.outcome = "done"
                    # runs before [DONE] is flushed so a follow-up turn sees the assistant message
                    await self._complete()
                    yield DONE_FRAME
                    return
                else:
                    self.state.terminated = True
                    yield error_frame(event.message)
                    yield DONE_FRAME
                    return
        finally:
            if not (self.state.terminated or self.state.aborted):
                logger.info("Downstream for session %s went away, aborting upstream", self.session_id)
                self.state.aborted = True
                self._abort_upstream()
            self._report()

    async def _pump(self) -> None:
        decoder = SSEFrameDecoder()
        try:
            async with self._client.open_stream(self._request) as chunks:
                async for event in decoder.iter_events(chunks):
                    self._channel.put_nowait(event)
            if not decoder.terminated:
                logger.warning("Upstream for session %s ended without [DONE]", self.session_id)
                self._channel.put_nowait(TERMINATED)
        except RelayError as exc:
            self.metrics.outcome = exc.code.lower()
            self._channel.put_nowait(_Failure(exc.message))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Relay pump failed for session %s", self.session_id)
            self.metrics.outcome = "relay_error"
            self._channel.put_nowait(_Failure(f"Relay error: {exc}"))

    def _abort_upstream(self) -> None:
        self.metrics.outcome = "cancelled"
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._channel.put_nowait(_CLOSED)

    async def _complete(self) -> None:
        if self._on_complete is None:
            return
        try:
            await self._on_complete(self.state.accumulated_text)
        except Exception:  # noqa: BLE001
            logger.exception("Completion callback failed for session %s", self.session_id)

    def _report(self) -> None:
        if self._reported:
            return
        self._reported = True
        self.metrics.char_count = len(self.state.accumulated_text)
        if self._started_at:
            self.metrics.latency_ms = int((time.monotonic() - self._started_at) * 1000)
        log_relay(self.metrics)
