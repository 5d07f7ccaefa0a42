"""
Trace Recorder — Persists classified errors and stream outcomes.

Recording is best-effort: database failures are logged and swallowed so
that answering a question never depends on the trace store.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.db import crud, database

logger = logging.getLogger(__name__)


class TraceRecorder:
    """Writes trace rows through an async session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record_error(self, classified, question: Optional[str] = None):
        context: Dict[str, Any] = {k: v for k, v in classified.context.items() if isinstance(v, (str, int, float, bool))}
        try:
            async with self.session_factory() as db:
                await crud.add_error_log(
                    db,
                    category=classified.category.value,
                    technical_message=classified.technical_message,
                    user_message=classified.user_message,
                    should_retry=classified.should_retry,
                    retry_delay=classified.retry_delay,
                    fallback_model=classified.fallback_model,
                    question=question,
                    context=context,
                )
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not record error log: {e}")

    async def record_stream(
        self,
        question: str,
        model_key: str,
        state: str,
        chunk_count: int,
        response_time: float,
        timeout_ms: Optional[int] = None,
        error_category: Optional[str] = None,
    ):
        try:
            async with self.session_factory() as db:
                await crud.add_stream_trace(
                    db,
                    question=question,
                    model_key=model_key,
                    state=state,
                    chunk_count=chunk_count,
                    response_time=response_time,
                    timeout_ms=timeout_ms,
                    error_category=error_category,
                )
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Could not record stream trace: {e}")


def build_recorder() -> Optional[TraceRecorder]:
    """Recorder bound to the configured database, or None when the store is disabled."""
    if database.AsyncSessionLocal is None:
        return None
    return TraceRecorder(database.AsyncSessionLocal)
