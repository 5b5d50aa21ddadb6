#!/usr/bin/env python3
"""
Tests for the server-side stream relay
"""

import asyncio

import pytest

from chat.cancellation import CancellationToken
from chat.errors import TurnValidationError
from chat.events import EventType, StreamEvent, iter_frame_events
from chat.models import TurnRequest
from chat.relay import StreamRelay
from conftest import ScriptedSource, frame


async def collect(stream):
    return [item async for item in stream]


@pytest.mark.asyncio
async def test_frames_are_forwarded_unchanged(session_store, hello_script):
    source = ScriptedSource(hello_script)
    relay = StreamRelay(source, session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    items = await collect(stream)

    assert items == hello_script
    assert source.closed


@pytest.mark.asyncio
async def test_user_message_stored_before_streaming(session_store, hello_script):
    source = ScriptedSource(hello_script)
    relay = StreamRelay(source, session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    await collect(stream)

    call = source.calls[0]
    assert call["prompt"] == "Hi"
    assert [m.content for m in call["history"]] == ["Hi"]
    assert call["permission_mode"] == "acceptEdits"


@pytest.mark.asyncio
async def test_correlation_id_captured_from_status(session_store, hello_script):
    relay = StreamRelay(ScriptedSource(hello_script), session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    await collect(stream)

    session = await session_store.get_session("s1")
    assert session.sdk_session_id == "agent-1"


@pytest.mark.asyncio
async def test_correlation_id_passed_as_resume_on_next_turn(session_store, hello_script):
    source = ScriptedSource(hello_script)
    relay = StreamRelay(source, session_store)

    for content in ("first", "second"):
        stream = await relay.handle(
            TurnRequest(session_id="s1", content=content), CancellationToken()
        )
        await collect(stream)

    assert source.calls[0]["options"].resume_session_id is None
    assert source.calls[1]["options"].resume_session_id == "agent-1"


@pytest.mark.asyncio
async def test_only_first_status_sets_correlation_id(session_store):
    script = [
        frame(EventType.STATUS, {"session_id": "first"}),
        frame(EventType.STATUS, {"session_id": "second"}),
        StreamEvent.done().encode(),
    ]
    relay = StreamRelay(ScriptedSource(script), session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    await collect(stream)

    assert (await session_store.get_session("s1")).sdk_session_id == "first"


@pytest.mark.asyncio
async def test_string_frames_are_encoded(session_store):
    text = StreamEvent.text("ok").encode().decode()
    relay = StreamRelay(ScriptedSource([text]), session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )

    assert await collect(stream) == [text.encode()]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_body",
    [
        {"content": "Hi"},
        {"session_id": "s1"},
        {"session_id": "", "content": "Hi"},
        {"session_id": "s1", "content": ""},
    ],
)
async def test_missing_fields_rejected_without_side_effects(session_store, request_body):
    source = ScriptedSource([StreamEvent.done().encode()])
    relay = StreamRelay(source, session_store)

    with pytest.raises(TurnValidationError) as excinfo:
        await relay.handle(TurnRequest(**request_body), CancellationToken())

    assert excinfo.value.to_response() == {"error": "Missing session_id or content"}
    assert source.calls == []
    assert await session_store.list_sessions() == []


@pytest.mark.asyncio
async def test_upstream_failure_becomes_error_frame(session_store):
    script = [StreamEvent.text("partial").encode(), RuntimeError("agent crashed")]
    relay = StreamRelay(ScriptedSource(script), session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    items = await collect(stream)

    assert items[0] == StreamEvent.text("partial").encode()
    events = list(iter_frame_events(items[-1]))
    assert events[0].type == EventType.ERROR
    assert events[0].data == "agent crashed"


@pytest.mark.asyncio
async def test_extra_fields_reach_the_source(session_store):
    source = ScriptedSource([StreamEvent.done().encode()])
    relay = StreamRelay(source, session_store, default_model="claude-default")

    request = TurnRequest.model_validate(
        {"session_id": "s1", "content": "Hi", "temperature": 0.2}
    )
    await collect(await relay.handle(request, CancellationToken()))

    options = source.calls[0]["options"]
    assert options.model == "claude-default"
    assert options.extra == {"temperature": 0.2}


class HangingSource(ScriptedSource):
    """Yields one frame and then blocks until cancelled."""

    async def _replay(self):
        try:
            yield StreamEvent.text("first").encode()
            await asyncio.sleep(10)
            yield StreamEvent.text("never").encode()
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_cancellation_stops_forwarding(session_store):
    source = HangingSource()
    relay = StreamRelay(source, session_store)
    token = CancellationToken()

    stream = await relay.handle(TurnRequest(session_id="s1", content="Hi"), token)
    first = await stream.__anext__()
    asyncio.get_running_loop().call_later(0.01, token.cancel)
    rest = await collect(stream)

    assert first == StreamEvent.text("first").encode()
    assert rest == []
    assert source.closed


@pytest.mark.asyncio
async def test_closing_outbound_stream_cancels_token(session_store):
    """Client going away fires the turn's cancellation signal"""
    source = HangingSource()
    relay = StreamRelay(source, session_store)
    token = CancellationToken()

    stream = await relay.handle(TurnRequest(session_id="s1", content="Hi"), token)
    await stream.__anext__()
    await stream.aclose()

    assert token.cancelled
    assert source.closed


class CountingSource(ScriptedSource):
    """Counts how many frames the relay has pulled from upstream."""

    def __init__(self, script):
        super().__init__(script)
        self.pulls = 0

    async def _replay(self):
        try:
            for item in self.script:
                self.pulls += 1
                yield item
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_upstream_advances_only_when_pulled(session_store, hello_script):
    source = CountingSource(hello_script)
    relay = StreamRelay(source, session_store)

    stream = await relay.handle(
        TurnRequest(session_id="s1", content="Hi"), CancellationToken()
    )
    assert source.pulls == 0

    await stream.__anext__()
    assert source.pulls == 1

    await stream.__anext__()
    assert source.pulls == 2

    rest = await collect(stream)
    assert len(rest) == len(hello_script) - 2
    assert source.pulls == len(hello_script)


class FailsOnCloseSource(ScriptedSource):
    """Yields one frame, then raises while being closed."""

    async def _replay(self):
        try:
            yield StreamEvent.text("first").encode()
            await asyncio.sleep(10)
        finally:
            self.closed = True
            raise RuntimeError("upstream broke while closing")


@pytest.mark.asyncio
async def test_upstream_failure_after_close_is_discarded(session_store):
    source = FailsOnCloseSource()
    relay = StreamRelay(source, session_store)
    token = CancellationToken()

    stream = await relay.handle(TurnRequest(session_id="s1", content="Hi"), token)
    first = await stream.__anext__()
    await stream.aclose()

    assert first == StreamEvent.text("first").encode()
    assert source.closed
    assert token.cancelled
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
