"""Tests for the SSE streaming bridge: deadline, disconnect and terminal chunks."""
import asyncio
import json
import logging
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.llm.timeouts import estimate_request_timeout_ms
from backend.models.schemas import ChunkMetadata, StreamChunk
from backend.streaming import bridge as bridge_mod
from backend.streaming.bridge import SSE_DONE, StreamingBridge, StreamState, format_sse


def _chunk(index, full_content, content="", is_complete=False, error=None):
    return StreamChunk(
        content=content,
        full_content=full_content,
        chunk_index=index,
        is_complete=is_complete,
        error=error,
        metadata=ChunkMetadata(error_category="NETWORK_ERROR" if error else None),
    )


class FakeClient:
    """Yields prepared chunks, optionally sleeping before some of them."""

    def __init__(self, items, delays=None):
        self.items = items
        self.delays = delays or {}
        self.closed = False

    async def stream_complete(self, request):
        try:
            for position, item in enumerate(self.items):
                await asyncio.sleep(self.delays.get(position, 0))
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed = True


@pytest.fixture
def recorder():
    recorder = MagicMock()
    recorder.record_error = AsyncMock()
    recorder.record_stream = AsyncMock()
    return recorder


def _collect(bridge):
    async def run():
        return [chunk async for chunk in bridge.stream()]
    return asyncio.run(run())


def _assert_well_formed(chunks):
    indices = [c.chunk_index for c in chunks]
    assert indices == sorted(set(indices))
    assert [c.is_complete for c in chunks].count(True) == 1
    assert chunks[-1].is_complete is True


class TestStreamingBridge:
    def test_forwards_chunks_until_complete(self, question, recorder):
        client = FakeClient([
            _chunk(0, "林黛玉", "林黛玉"),
            _chunk(1, "林黛玉聰慧", "聰慧"),
            _chunk(2, "林黛玉聰慧", is_complete=True),
        ])
        bridge = StreamingBridge(client, question, recorder=recorder)
        chunks = _collect(bridge)

        _assert_well_formed(chunks)
        assert len(chunks) == 3
        assert bridge.state == StreamState.COMPLETE
        assert client.closed is True
        recorder.record_error.assert_not_awaited()
        recorded = recorder.record_stream.await_args.kwargs
        assert recorded["state"] == "complete"
        assert recorded["chunk_count"] == 3
        assert recorded["error_category"] is None

    def test_deadline_emits_error_chunk_with_partial(self, question, recorder):
        client = FakeClient(
            [_chunk(0, "林黛玉", "林黛玉"), _chunk(1, "林黛玉聰慧", "聰慧")],
            delays={1: 1.0},
        )
        bridge = StreamingBridge(client, question, timeout_ms=100, recorder=recorder)
        chunks = _collect(bridge)

        _assert_well_formed(chunks)
        assert len(chunks) == 2
        terminal = chunks[-1]
        assert terminal.chunk_index == 1
        assert terminal.error.startswith("Request timeout after")
        assert terminal.metadata.error_category == "TIMEOUT"
        assert terminal.metadata.fallback_model == "instant"
        assert "已接收到部分回應" in terminal.full_content
        assert "林黛玉" in terminal.full_content
        assert bridge.state == StreamState.FAILED
        assert client.closed is True
        recorder.record_error.assert_awaited_once()
        assert recorder.record_stream.await_args.kwargs["error_category"] == "TIMEOUT"

    def test_client_disconnect_stops_upstream(self, question):
        client = FakeClient([_chunk(0, "林黛玉", "林黛玉"), _chunk(1, "林黛玉聰慧", "聰慧")])
        is_disconnected = AsyncMock(side_effect=[False, True])
        bridge = StreamingBridge(client, question, is_disconnected=is_disconnected)
        chunks = _collect(bridge)

        _assert_well_formed(chunks)
        assert chunks[-1].chunk_index == 1
        assert chunks[-1].metadata.error_category == "STREAMING_ERROR"
        assert chunks[-1].error == "Client disconnected from stream"
        assert client.closed is True

    def test_disconnect_noticed_while_waiting_on_slow_chunk(self, question, monkeypatch):
        monkeypatch.setattr(bridge_mod, "DISCONNECT_POLL_SECONDS", 0.05)
        client = FakeClient([_chunk(0, "林黛玉", "林黛玉"), _chunk(1, "林黛玉聰慧", "聰慧")], delays={1: 5.0})
        checks = []

        async def is_disconnected():
            checks.append(True)
            return len(checks) >= 3

        bridge = StreamingBridge(client, question, timeout_ms=60000, is_disconnected=is_disconnected)
        started = time.monotonic()
        chunks = _collect(bridge)

        assert time.monotonic() - started < 2.0
        assert len(chunks) == 2
        assert chunks[-1].metadata.error_category == "STREAMING_ERROR"
        assert "林黛玉" in chunks[-1].full_content
        assert client.closed is True

    def test_upstream_exception_before_first_chunk(self, question):
        client = FakeClient([Exception("Connection error.")])
        bridge = StreamingBridge(client, question)
        chunks = _collect(bridge)

        assert len(chunks) == 1
        assert chunks[0].chunk_index == 0
        assert chunks[0].metadata.error_category == "NETWORK_ERROR"
        assert "已接收到部分回應" not in chunks[0].full_content
        assert bridge.state == StreamState.FAILED

    def test_upstream_error_chunk_is_forwarded_as_is(self, question, recorder):
        client = FakeClient([
            _chunk(0, "林黛玉", "林黛玉"),
            _chunk(1, "網絡連接失敗", is_complete=True, error="Connection reset by peer"),
        ])
        bridge = StreamingBridge(client, question, recorder=recorder)
        chunks = _collect(bridge)

        assert len(chunks) == 2
        assert chunks[-1].error == "Connection reset by peer"
        assert bridge.state == StreamState.FAILED
        assert recorder.record_stream.await_args.kwargs["state"] == "failed"

    def test_upstream_eof_gets_terminal_chunk(self, question):
        client = FakeClient([_chunk(0, "林黛玉", "林黛玉")])
        bridge = StreamingBridge(client, question)
        chunks = _collect(bridge)

        _assert_well_formed(chunks)
        assert chunks[-1].chunk_index == 1
        assert chunks[-1].full_content == "林黛玉"
        assert chunks[-1].error is None
        assert bridge.state == StreamState.COMPLETE

    def test_failing_recorder_does_not_break_stream(self, question, recorder, caplog):
        recorder.record_stream = AsyncMock(side_effect=RuntimeError("pool closed"))
        bridge = StreamingBridge(FakeClient([_chunk(0, "答", "答"), _chunk(1, "答", is_complete=True)]), question,
                                 recorder=recorder)

        async def run():
            return [frame async for frame in bridge.sse_events()]

        with caplog.at_level(logging.WARNING):
            frames = asyncio.run(run())

        assert len(frames) == 3
        assert frames[-1] == SSE_DONE
        assert bridge.state == StreamState.COMPLETE
        assert "pool closed" in caplog.text

    def test_failing_recorder_after_error_chunk(self, question, recorder):
        recorder.record_error = AsyncMock(side_effect=RuntimeError("pool closed"))
        bridge = StreamingBridge(FakeClient([Exception("Connection error.")]), question, recorder=recorder)

        async def run():
            return [frame async for frame in bridge.sse_events()]

        frames = asyncio.run(run())
        assert frames[-1] == SSE_DONE
        assert '"error":"Connection error."' in frames[0]
        assert bridge.state == StreamState.FAILED

    def test_default_timeout_is_estimated(self, question):
        bridge = StreamingBridge(FakeClient([]), question)
        assert bridge.timeout_ms == estimate_request_timeout_ms(question)

    def test_bridge_is_single_use(self, question):
        bridge = StreamingBridge(FakeClient([_chunk(0, "答", is_complete=True)]), question)
        _collect(bridge)
        with pytest.raises(RuntimeError):
            _collect(bridge)

    def test_illegal_transition(self, question):
        bridge = StreamingBridge(FakeClient([]), question)
        with pytest.raises(RuntimeError):
            bridge._transition(StreamState.COMPLETE)


class TestSseFormatting:
    def test_frame_uses_camel_case(self):
        frame = format_sse(_chunk(3, "林黛玉", is_complete=True))
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["chunkIndex"] == 3
        assert payload["isComplete"] is True
        assert payload["fullContent"] == "林黛玉"

    def test_events_end_with_done_marker(self, question):
        bridge = StreamingBridge(FakeClient([_chunk(0, "答", "答"), _chunk(1, "答", is_complete=True)]), question)

        async def run():
            return [frame async for frame in bridge.sse_events()]

        frames = asyncio.run(run())
        assert len(frames) == 3
        assert frames[-1] == SSE_DONE
        assert json.loads(frames[1][len("data: "):])["isComplete"] is True
