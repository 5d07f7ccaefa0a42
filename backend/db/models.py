from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text, func
import uuid
from backend.db.database import Base


class ErrorLog(Base):
    __tablename__ = "qa_error_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    category = Column(String, nullable=False, index=True)
    technical_message = Column(Text, nullable=False)
    user_message = Column(Text, nullable=False)
    should_retry = Column(Boolean, nullable=False)
    retry_delay = Column(Integer, nullable=True)
    fallback_model = Column(String, nullable=True)
    question = Column(Text, nullable=True)
    context_json = Column(JSON, nullable=True) # model key, attempt, chunk counts
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StreamTrace(Base):
    __tablename__ = "qa_stream_traces"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    question = Column(Text, nullable=False)
    model_key = Column(String, nullable=False)
    state = Column(String, nullable=False) # 'complete' or 'failed'
    chunk_count = Column(Integer, nullable=False, default=0)
    response_time = Column(Float, nullable=False, default=0.0)
    timeout_ms = Column(Integer, nullable=True)
    error_category = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
