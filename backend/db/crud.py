from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import desc
from backend.db.models import ErrorLog, StreamTrace
from typing import List, Optional

# --- Error logs ---

async def add_error_log(
    db: AsyncSession,
    category: str,
    technical_message: str,
    user_message: str,
    should_retry: bool,
    retry_delay: Optional[int] = None,
    fallback_model: Optional[str] = None,
    question: Optional[str] = None,
    context: dict = None,
) -> ErrorLog:
    db_log = ErrorLog(
        category=category,
        technical_message=technical_message,
        user_message=user_message,
        should_retry=should_retry,
        retry_delay=retry_delay,
        fallback_model=fallback_model,
        question=question,
        context_json=context,
    )
    db.add(db_log)
    await db.commit()
    return db_log

async def get_recent_error_logs(db: AsyncSession, limit: int = 50) -> List[ErrorLog]:
    result = await db.execute(select(ErrorLog).order_by(desc(ErrorLog.created_at)).limit(limit))
    return list(result.scalars().all())

# --- Stream traces ---

async def add_stream_trace(
    db: AsyncSession,
    question: str,
    model_key: str,
    state: str,
    chunk_count: int,
    response_time: float,
    timeout_ms: Optional[int] = None,
    error_category: Optional[str] = None,
) -> StreamTrace:
    db_trace = StreamTrace(
        question=question,
        model_key=model_key,
        state=state,
        chunk_count=chunk_count,
        response_time=response_time,
        timeout_ms=timeout_ms,
        error_category=error_category,
    )
    db.add(db_trace)
    await db.commit()
    return db_trace

async def get_recent_stream_traces(db: AsyncSession, limit: int = 50) -> List[StreamTrace]:
    result = await db.execute(select(StreamTrace).order_by(desc(StreamTrace.created_at)).limit(limit))
    return list(result.scalars().all())
