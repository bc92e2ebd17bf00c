import asyncio

import pytest

from stock_analyst.streaming.sse import (
    DONE_FRAME,
    TERMINATED,
    DeltaToken,
    ErrorEvent,
    SSEFrameDecoder,
    data_frame,
    error_frame,
)

from conftest import DONE, delta_line


def decode_all(chunks):
    decoder = SSEFrameDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    return events


def texts(events):
    return [e.text if isinstance(e, DeltaToken) else e for e in events]


def test_split_line_without_prefix_is_dropped():
    chunks = [
        b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n',
        b'lo\ndata: {"choices":[{"delta":{"content":"!"}}]}\n\ndata: [DONE]\n\n',
    ]
    assert texts(decode_all(chunks)) == ["Hel", "!", TERMINATED]


@pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 64])
def test_chunk_boundaries_do_not_change_the_events(size):
    stream = delta_line("涨停") + b": keep-alive comment\n" + delta_line("**bold**") + b"\n" + delta_line(" end") + DONE
    whole = decode_all([stream])
    pieces = [stream[i:i + size] for i in range(0, len(stream), size)]
    assert decode_all(pieces) == whole
    assert texts(whole) == ["涨停", "**bold**", " end", TERMINATED]


def test_nothing_after_done_is_decoded():
    decoder = SSEFrameDecoder()
    events = decoder.feed(delta_line("a") + DONE + delta_line("late"))
    assert texts(events) == ["a", TERMINATED]
    assert decoder.feed(delta_line("later")) == []
    assert decoder.terminated


def test_malformed_and_contentless_lines_emit_nothing():
    events = decode_all([
        b"data: {not json\n",
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n',
        b'data: {"choices":[]}\n',
        b'data: {"choices":[{"delta":{"content":""}}]}\n',
        b"data: 42\n",
        b"event: ping\n",
        delta_line("ok"),
    ])
    assert texts(events) == ["ok"]


def test_payload_is_kept_verbatim():
    raw = '{"id":"x","choices":[{"index":0,"delta":{"content":"hi"}}]}'
    (event,) = decode_all([f"data: {raw}\r\n".encode()])
    assert event == DeltaToken(text="hi", payload=raw)


def test_trailing_fragment_is_flushed_at_end_of_stream():
    assert texts(decode_all([delta_line("a"), b"data: [DONE]"])) == ["a", TERMINATED]


def test_error_payloads_only_surface_when_asked():
    line = error_frame("API error: 401 - invalid key").encode()
    assert SSEFrameDecoder().feed(line) == []
    assert SSEFrameDecoder(surface_errors=True).feed(line) == [ErrorEvent("API error: 401 - invalid key")]


def test_iter_events_stops_at_done_without_waiting_for_more():
    async def chunks():
        yield delta_line("a")
        yield DONE
        await asyncio.Event().wait()

    async def run():
        return [e async for e in SSEFrameDecoder().iter_events(chunks())]

    assert texts(asyncio.run(run())) == ["a", TERMINATED]


def test_frame_encoders():
    assert data_frame('{"a":1}') == 'data: {"a":1}\n\n'
    assert DONE_FRAME == "data: [DONE]\n\n"
    assert error_frame("网络错误") == 'data: {"error": "网络错误"}\n\n'
