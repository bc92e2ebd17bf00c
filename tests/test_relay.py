import asyncio

import httpx
import pytest

from stock_analyst.app.main import RelayResponse
from stock_analyst.inference.upstream_client import ChatStreamRequest, UpstreamStreamClient
from stock_analyst.orchestration.session import SessionContext
from stock_analyst.streaming.relay import StreamRelay
from stock_analyst.streaming.sse import DONE_FRAME, data_frame, error_frame

from conftest import API_URL, DONE, FakeUpstream, RecordingUpstream, delta_line, delta_payload, wait_for


def make_request(model="m1", messages=None):
    return ChatStreamRequest(
        api_url=API_URL,
        api_key="sk-test",
        model=model,
        messages=messages or [{"role": "user", "content": "hi"}],
    )


def mock_client(handler) -> UpstreamStreamClient:
    return UpstreamStreamClient(read_timeout=5.0, transport=httpx.MockTransport(handler))


async def collect(relay: StreamRelay):
    return [frame async for frame in relay.frames()]


def test_deltas_are_forwarded_in_order_then_one_done():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        upstream = RecordingUpstream(chunks=[delta_line("Hel"), delta_line("lo") + DONE])
        client = mock_client(upstream)
        relay = StreamRelay(client, make_request(), on_complete=on_complete).start()
        frames = await collect(relay)
        await client.close()
        return upstream, relay, frames

    upstream, relay, frames = asyncio.run(run())
    assert frames == [data_frame(delta_payload("Hel")), data_frame(delta_payload("lo")), DONE_FRAME]
    assert completed == ["Hello"]
    assert relay.state.terminated and not relay.state.aborted
    assert relay.metrics.outcome == "done"
    assert relay.metrics.delta_count == 2

    (request,) = upstream.requests
    assert request.headers["authorization"] == "Bearer sk-test"
    assert upstream.bodies[0]["stream"] is True
    assert upstream.bodies[0]["messages"] == [{"role": "user", "content": "hi"}]


def test_upstream_http_error_becomes_one_error_frame():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        client = mock_client(RecordingUpstream(status=401, error_body=b"invalid key"))
        relay = StreamRelay(client, make_request(), on_complete=on_complete).start()
        frames = await collect(relay)
        await client.close()
        return relay, frames

    relay, frames = asyncio.run(run())
    assert frames == [error_frame("API error: 401 - invalid key"), DONE_FRAME]
    assert completed == []
    assert relay.metrics.outcome == "upstream_http"


def test_transport_failure_becomes_network_error_frame():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        client = mock_client(refuse)
        frames = await collect(StreamRelay(client, make_request()).start())
        await client.close()
        return frames

    frames = asyncio.run(run())
    assert frames == [error_frame("Network error: connection refused"), DONE_FRAME]


def test_upstream_eof_without_done_still_terminates():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        client = mock_client(RecordingUpstream(chunks=[delta_line("partial")]))
        frames = await collect(StreamRelay(client, make_request(), on_complete=on_complete).start())
        await client.close()
        return frames

    frames = asyncio.run(run())
    assert frames == [data_frame(delta_payload("partial")), DONE_FRAME]
    assert completed == ["partial"]


def test_completion_callback_failure_does_not_break_the_stream():
    async def on_complete(text):
        raise RuntimeError("disk full")

    async def run():
        client = mock_client(RecordingUpstream())
        frames = await collect(StreamRelay(client, make_request(), on_complete=on_complete).start())
        await client.close()
        return frames

    frames = asyncio.run(run())
    assert frames[-1] == DONE_FRAME


def test_new_relay_supersedes_the_previous_one():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        upstream = FakeUpstream()
        context = SessionContext("s1")

        first = StreamRelay(upstream, make_request("r1"), on_complete=on_complete)
        await context.start_relay(first)
        first_consumer = asyncio.create_task(collect(first))
        await wait_for(lambda: first.state.accumulated_text)

        second = StreamRelay(upstream, make_request("r2"), on_complete=on_complete)
        await context.start_relay(second)
        first_frames = await asyncio.wait_for(first_consumer, 2.0)
        await wait_for(lambda: "open:r2" in upstream.log)

        assert context.active_relay is second
        await context.cancel_active()
        return upstream.log, first, first_frames

    log, first, first_frames = asyncio.run(run())
    assert log == ["open:r1", "close:r1", "open:r2", "close:r2"]
    # the superseded stream stops without a terminal frame or completion
    assert first_frames == [data_frame(delta_payload("from r1"))]
    assert first.state.aborted
    assert completed == []


def test_downstream_disconnect_aborts_upstream():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        upstream = FakeUpstream()
        relay = StreamRelay(upstream, make_request("r1"), on_complete=on_complete).start()
        frames = relay.frames()
        first = await frames.__anext__()
        await frames.aclose()
        await wait_for(lambda: "close:r1" in upstream.log)
        return relay, first

    relay, first = asyncio.run(run())
    assert first == data_frame(delta_payload("from r1"))
    assert relay.state.aborted
    assert relay.metrics.outcome == "cancelled"
    assert completed == []


def test_abort_wins_over_queued_termination():
    completed = []

    async def on_complete(text):
        completed.append(text)

    async def run():
        upstream = FakeUpstream(finish=True)
        relay = StreamRelay(upstream, make_request("r1"), on_complete=on_complete).start()
        await wait_for(lambda: "close:r1" in upstream.log)
        assert relay.live
        await relay.cancel()
        return await collect(relay)

    assert asyncio.run(run()) == []
    assert completed == []


def test_relay_cannot_start_twice():
    async def run():
        relay = StreamRelay(FakeUpstream(finish=True), make_request()).start()
        try:
            relay.start()
        except RuntimeError:
            return True
        finally:
            await collect(relay)
        return False

    assert asyncio.run(run())


def test_response_releases_relay_when_client_leaves_before_first_frame():
    async def run():
        upstream = FakeUpstream()
        relay = StreamRelay(upstream, make_request("r1")).start()
        await wait_for(lambda: "open:r1" in upstream.log)
        response = RelayResponse(relay)

        async def receive():
            await asyncio.Event().wait()

        async def send(message):
            raise OSError("connection reset by peer")

        scope = {"type": "http", "asgi": {"version": "3.0", "spec_version": "2.4"}}
        with pytest.raises(Exception):
            await response(scope, receive, send)
        return upstream.log, relay

    log, relay = asyncio.run(run())
    assert log == ["open:r1", "close:r1"]
    assert relay.state.aborted
