"""
Streaming Bridge — Drives a pull-based chunk generator onto Server-Sent Events.

One bridge per request:

  OPEN → STREAMING → COMPLETE | FAILED

Every chunk from GroqClient.stream_complete is awaited against a single
deadline computed up front and forwarded as-is (one chunk in flight). While
a chunk is pending the client connection is polled, so a closed tab stops
the upstream without waiting for the next chunk.

On deadline expiry, client disconnect or any upstream exception the
generator is closed and exactly one synthesized error chunk is emitted,
carrying the partial answer received so far. Trace recording happens after
the terminal chunk and cannot change what the client receives.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from backend.errors.classifier import classify_error, format_partial_error, log_error
from backend.errors.exceptions import ClientDisconnectedError, StreamTimeoutError
from backend.llm.timeouts import estimate_request_timeout_ms, format_timeout
from backend.models.schemas import ChunkMetadata, Citation, QuestionRequest, StreamChunk

logger = logging.getLogger(__name__)


SSE_DONE = "data: [DONE]\n\n"

# How often a client disconnect is checked while waiting on a slow chunk
DISCONNECT_POLL_SECONDS = 0.5


class StreamState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


TRANSITIONS = {
    StreamState.OPEN: {StreamState.STREAMING, StreamState.FAILED},
    StreamState.STREAMING: {StreamState.COMPLETE, StreamState.FAILED},
    StreamState.COMPLETE: set(),
    StreamState.FAILED: set(),
}


def format_sse(chunk: StreamChunk) -> str:
    return f"data: {chunk.model_dump_json(by_alias=True)}\n\n"


async def _anext(upstream: AsyncIterator[StreamChunk]) -> StreamChunk:
    return await upstream.__anext__()


class StreamingBridge:
    """Single-use bridge between a QA client stream and the SSE wire format."""

    def __init__(
        self,
        client,
        request: QuestionRequest,
        timeout_ms: Optional[int] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        recorder=None,
    ):
        self.client = client
        self.request = request
        self.timeout_ms = timeout_ms or estimate_request_timeout_ms(request)
        self.is_disconnected = is_disconnected
        self.recorder = recorder

        self.state = StreamState.OPEN
        self.chunks_sent = 0
        self.partial_content = ""
        self._last_index = -1
        self._last_citations: List[Citation] = []
        self._last_queries: List[str] = []
        self._started_at: Optional[float] = None
        self._classified = None

    def _transition(self, new_state: StreamState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal stream transition {self.state.value} → {new_state.value}")
        logger.debug(f"Stream {self.state.value} → {new_state.value}")
        self.state = new_state

    def _elapsed(self) -> float:
        return round(time.monotonic() - self._started_at, 3) if self._started_at else 0.0

    def _remember(self, chunk: StreamChunk):
        self.chunks_sent += 1
        self._last_index = chunk.chunk_index
        if not chunk.error:
            self.partial_content = chunk.full_content
            self._last_citations = chunk.citations
            self._last_queries = chunk.search_queries

    async def _disconnected(self) -> bool:
        return self.is_disconnected is not None and await self.is_disconnected()

    async def _next_chunk(self, upstream: AsyncIterator[StreamChunk], deadline: float) -> StreamChunk:
        """
        Await the next upstream chunk, racing it against the deadline and
        (every DISCONNECT_POLL_SECONDS) the client connection.
        """
        if await self._disconnected():
            raise ClientDisconnectedError()

        pending = asyncio.ensure_future(_anext(upstream))
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise StreamTimeoutError(self.timeout_ms, format_timeout(self.timeout_ms))
                timeout = remaining if self.is_disconnected is None else min(remaining, DISCONNECT_POLL_SECONDS)
                done, _ = await asyncio.wait({pending}, timeout=timeout)
                if done:
                    return pending.result()
                if await self._disconnected():
                    raise ClientDisconnectedError()
        finally:
            if not pending.done():
                pending.cancel()
                await asyncio.wait({pending})

    def _eof_chunk(self) -> StreamChunk:
        return StreamChunk(
            full_content=self.partial_content,
            citations=self._last_citations,
            search_queries=self._last_queries,
            metadata=ChunkMetadata(timeout_ms=self.timeout_ms, search_queries=self._last_queries),
            response_time=self._elapsed(),
            is_complete=True,
            chunk_index=self._last_index + 1,
        )

    def _error_chunk(self, error: Exception) -> StreamChunk:
        classified = classify_error(error, {
            "model_key": self.request.model_key,
            "reasoning_effort": self.request.reasoning_effort,
            "question_length": len(self.request.user_question),
            "timeout_ms": self.timeout_ms,
        })
        log_error(classified, {"chunks_sent": self.chunks_sent, "partial_length": len(self.partial_content)})
        self._classified = classified

        return StreamChunk(
            full_content=format_partial_error(classified, self.partial_content),
            citations=self._last_citations,
            search_queries=self._last_queries,
            metadata=ChunkMetadata(
                model_key=self.request.model_key,
                reasoning_effort=self.request.reasoning_effort,
                search_queries=self._last_queries,
                timeout_ms=self.timeout_ms,
                error_category=classified.category.value,
                should_retry=classified.should_retry,
                retry_delay=classified.retry_delay,
                fallback_model=classified.fallback_model,
                recovery_actions=[a.value for a in classified.recovery_actions],
            ),
            response_time=self._elapsed(),
            is_complete=True,
            chunk_index=self._last_index + 1,
            error=str(error) or type(error).__name__,
        )

    async def _record(self, error_category: Optional[str] = None):
        if self.recorder is None:
            return
        # Traces are best-effort; a failing store never changes the stream
        try:
            if self._classified is not None:
                await self.recorder.record_error(self._classified, question=self.request.user_question)
            await self.recorder.record_stream(
                question=self.request.user_question,
                model_key=self.request.model_key,
                state=self.state.value,
                chunk_count=self.chunks_sent,
                response_time=self._elapsed(),
                timeout_ms=self.timeout_ms,
                error_category=error_category,
            )
        except Exception as e:
            logger.warning(f"Could not record stream outcome: {e}")

    async def stream(self) -> AsyncIterator[StreamChunk]:
        """
        Yield chunks in strictly increasing chunk_index order, ending with
        exactly one is_complete chunk.
        """
        if self.state != StreamState.OPEN:
            raise RuntimeError("StreamingBridge instances are single-use")

        self._started_at = time.monotonic()
        deadline = self._started_at + self.timeout_ms / 1000
        logger.info(
            f"Streaming question ({len(self.request.user_question)} chars) with {self.request.model_key}, "
            f"timeout {format_timeout(self.timeout_ms)}"
        )

        upstream = self.client.stream_complete(self.request)
        error_category = None
        try:
            while True:
                try:
                    chunk = await self._next_chunk(upstream, deadline)
                except StopAsyncIteration:
                    # Upstream ran dry without a terminal chunk
                    chunk = self._eof_chunk()

                if self.state == StreamState.OPEN:
                    self._transition(StreamState.STREAMING)
                self._remember(chunk)

                if chunk.is_complete:
                    self._transition(StreamState.FAILED if chunk.error else StreamState.COMPLETE)
                    error_category = chunk.metadata.error_category
                    yield chunk
                    break
                yield chunk

        except Exception as e:
            if self.state in (StreamState.COMPLETE, StreamState.FAILED):
                # The terminal chunk is already out
                logger.error(f"Stream error after terminal chunk: {e}")
            else:
                await upstream.aclose()
                chunk = self._error_chunk(e)
                self._remember(chunk)
                self._transition(StreamState.FAILED)
                error_category = chunk.metadata.error_category
                yield chunk

        finally:
            await upstream.aclose()

        await self._record(error_category)

    async def sse_events(self) -> AsyncIterator[str]:
        """SSE frames for every chunk, then the [DONE] marker."""
        async for chunk in self.stream():
            yield format_sse(chunk)
        yield SSE_DONE
