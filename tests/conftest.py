import asyncio
import json
from contextlib import asynccontextmanager
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from stock_analyst.app.main import create_app
from stock_analyst.app.settings import Settings
from stock_analyst.inference.upstream_client import UpstreamStreamClient
from stock_analyst.storage.history import HistoryStore
from stock_analyst.tools.quote_client import QuoteClient

API_URL = "https://llm.test/v1/chat/completions"

QUOTE_DATA = {
    "f43": 170000,
    "f44": 171500,
    "f45": 168800,
    "f46": 169000,
    "f47": 25000,
    "f48": 4250000000,
    "f57": "600519",
    "f58": "Kweichow Moutai",
    "f60": 168000,
    "f116": 2135000000000,
    "f117": 2135000000000,
    "f168": 20,
    "f170": 119,
}


def delta_payload(text: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": text}}]})


def delta_line(text: str) -> bytes:
    return f"data: {delta_payload(text)}\n\n".encode()


DONE = b"data: [DONE]\n\n"


def sse_body(*texts: str, done: bool = True) -> List[bytes]:
    chunks = [delta_line(t) for t in texts]
    if done:
        chunks.append(DONE)
    return chunks


def streaming_response(chunks: List[bytes], status: int = 200) -> httpx.Response:
    async def body():
        for chunk in chunks:
            yield chunk

    return httpx.Response(status, content=body(), headers={"content-type": "text/event-stream"})


class RecordingUpstream:
    """MockTransport handler that records every upstream request body."""

    def __init__(self, chunks=None, status: int = 200, error_body: bytes = b""):
        self.chunks = chunks if chunks is not None else sse_body("Hello", " world")
        self.status = status
        self.error_body = error_body
        self.requests: List[httpx.Request] = []

    @property
    def bodies(self):
        return [json.loads(r.content) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status >= 400:
            return httpx.Response(self.status, content=self.error_body)
        return streaming_response(self.chunks)


class FakeUpstream:
    """Stands in for UpstreamStreamClient and logs when streams open and close.

    Each stream sends one delta and then hangs until cancelled, unless `finish` is set.
    """

    def __init__(self, finish: bool = False):
        self.log: List[str] = []
        self.finish = finish

    @asynccontextmanager
    async def open_stream(self, request):
        self.log.append(f"open:{request.model}")
        try:
            yield self._body(request.model)
        finally:
            self.log.append(f"close:{request.model}")

    async def _body(self, name):
        yield delta_line(f"from {name}")
        if self.finish:
            yield DONE
            return
        await asyncio.Event().wait()

    async def close(self):
        pass


async def wait_for(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def upstream():
    return RecordingUpstream()


@pytest.fixture
def quote_handler():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if handler.status != 200:
            return httpx.Response(handler.status, text="unavailable")
        return httpx.Response(200, json={"rc": 0, "data": QUOTE_DATA})

    handler.calls = calls
    handler.status = 200
    return handler


@pytest.fixture
def settings(tmp_path):
    return Settings(
        history_db_url=f"sqlite:///{tmp_path / 'history.db'}",
        static_dir=str(tmp_path / "static"),
        upstream_read_timeout=5.0,
    )


@pytest.fixture
def store(settings):
    return HistoryStore(settings.history_db_url)


@pytest.fixture
def client(settings, store, upstream, quote_handler):
    app = create_app(
        settings,
        upstream=UpstreamStreamClient(transport=httpx.MockTransport(upstream)),
        quotes=QuoteClient(transport=httpx.MockTransport(quote_handler)),
        store=store,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def relay_body():
    return {"apiKey": "sk-test", "apiUrl": API_URL, "model": "deepseek-chat"}
