"""
Pydantic schemas — Request, response and stream models matching the API contract.

Python code uses snake_case; JSON on the wire is camelCase.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import pytz
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from backend.config import (
    DEFAULT_MODEL_KEY,
    DEFAULT_QUESTION_CONTEXT,
    DEFAULT_REASONING_EFFORT,
    DEFAULT_BATCH_CONCURRENCY,
    MAX_BATCH_CONCURRENCY,
    MAX_QUESTION_LENGTH,
    MAX_TOKENS_LIMIT,
)


ModelKey = Literal["instant", "compound", "reasoning", "reasoning-pro"]
ReasoningEffort = Literal["low", "medium", "high"]
QuestionContext = Literal["character", "plot", "theme", "general"]
CitationType = Literal["web_citation", "default", "academic", "news"]


def utc_timestamp() -> str:
    return datetime.now(pytz.utc).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# --- Requests ---

class QuestionRequest(CamelModel):
    """A single question about the novel plus generation options."""
    user_question: str
    selected_text: Optional[str] = None
    chapter_context: Optional[str] = None
    current_chapter: Optional[str] = None
    model_key: ModelKey = DEFAULT_MODEL_KEY
    reasoning_effort: ReasoningEffort = DEFAULT_REASONING_EFFORT
    question_context: QuestionContext = DEFAULT_QUESTION_CONTEXT
    enable_streaming: bool = True
    include_detailed_citations: bool = True
    show_thinking_process: bool = True
    temperature: Optional[float] = Field(default=None, ge=0, le=1)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=MAX_TOKENS_LIMIT)


class SelectedTextInfo(CamelModel):
    text: str
    position: Optional[int] = None
    range: Optional[Dict[str, int]] = None


class StreamQARequest(QuestionRequest):
    """Request body for POST /api/qa/stream and POST /api/qa."""
    selected_text_info: Optional[SelectedTextInfo] = None

    def to_question_request(self) -> QuestionRequest:
        data = self.model_dump(exclude={"selected_text_info"})
        if self.selected_text_info and not self.selected_text:
            data["selected_text"] = self.selected_text_info.text
        return QuestionRequest(**data)


def validate_question_request(request: QuestionRequest) -> List[str]:
    """
    Check the constraints that pydantic field types cannot express.

    Returns:
        List of error strings (empty if the request is valid)
    """
    errors = []
    question = (request.user_question or "").strip()
    if not question:
        errors.append("userQuestion cannot be empty")
    elif len(question) > MAX_QUESTION_LENGTH:
        errors.append(f"userQuestion must be at most {MAX_QUESTION_LENGTH} characters")
    return errors


# --- Grounding ---

class GroundingChunk(CamelModel):
    uri: str
    title: str = ""
    snippet: Optional[str] = None


class GroundingSegment(CamelModel):
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    text: str = ""


class GroundingSupport(CamelModel):
    segment: GroundingSegment = Field(default_factory=GroundingSegment)
    grounding_chunk_indices: List[int] = Field(default_factory=list)


class GroundingMetadata(CamelModel):
    """Normalized grounding payload from the upstream service."""
    search_queries: List[str] = Field(default_factory=list)
    chunks: List[GroundingChunk] = Field(default_factory=list)
    supports: List[GroundingSupport] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.search_queries or self.chunks or self.supports)


class Citation(CamelModel):
    """A numbered source shown to the user."""
    number: int
    title: str
    url: str
    type: CitationType = "web_citation"
    snippet: Optional[str] = None
    domain: Optional[str] = None
    publish_date: Optional[str] = None


class SegmentCitation(CamelModel):
    """A span of the answer backed by one or more sources."""
    text_segment: str
    start_index: int
    end_index: int
    source_urls: List[str] = Field(default_factory=list)
    source_titles: List[str] = Field(default_factory=list)
    citation_numbers: List[int] = Field(default_factory=list)


class GroundingSummary(CamelModel):
    search_queries: List[str] = Field(default_factory=list)
    total_search_results: int = 0
    citation_count: int = 0
    grounding_success: bool = False
    warnings: List[str] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    web_sources: List[str] = Field(default_factory=list)


# --- Responses ---

class QAResponse(CamelModel):
    """Response body for POST /api/qa."""
    question: str
    answer: str
    raw_answer: str = ""
    citations: List[Citation] = Field(default_factory=list)
    segment_citations: List[SegmentCitation] = Field(default_factory=list)
    grounding_metadata: GroundingSummary = Field(default_factory=GroundingSummary)
    model_used: str = ""
    model_key: Optional[str] = None
    reasoning_effort: Optional[str] = None
    question_context: Optional[str] = None
    processing_time: float = 0.0
    success: bool = True
    streaming: bool = False
    attempts: int = 1
    timestamp: str = Field(default_factory=utc_timestamp)
    answer_length: int = 0
    question_length: int = 0
    citation_count: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunkMetadata(CamelModel):
    """Grounding and error snapshot carried by every stream chunk."""
    model_used: Optional[str] = None
    model_key: Optional[str] = None
    reasoning_effort: Optional[str] = None
    search_queries: List[str] = Field(default_factory=list)
    total_search_results: int = 0
    citation_count: int = 0
    grounding_success: bool = False
    warnings: List[str] = Field(default_factory=list)
    finish_reason: Optional[str] = None
    timeout_ms: Optional[int] = None
    error_category: Optional[str] = None
    should_retry: Optional[bool] = None
    retry_delay: Optional[int] = None
    fallback_model: Optional[str] = None
    recovery_actions: List[str] = Field(default_factory=list)


class StreamChunk(CamelModel):
    """One SSE frame. Frozen once built."""
    model_config = ConfigDict(frozen=True)

    content: str = ""
    full_content: str = ""
    thinking_content: Optional[str] = None
    timestamp: str = Field(default_factory=utc_timestamp)
    citations: List[Citation] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    response_time: float = 0.0
    is_complete: bool = False
    chunk_index: int = 0
    error: Optional[str] = None
    has_thinking_process: bool = False


# --- Batch ---

class BatchRequest(CamelModel):
    """Request body for POST /api/qa/batch."""
    questions: List[QuestionRequest] = Field(min_length=1)
    shared_config: Dict[str, Any] = Field(default_factory=dict)
    max_concurrency: int = Field(default=DEFAULT_BATCH_CONCURRENCY, ge=1, le=MAX_BATCH_CONCURRENCY)
    parallel: bool = True


class BatchError(CamelModel):
    question_index: int
    error: str
    question: str


class BatchStats(CamelModel):
    total_questions: int
    successful_responses: int
    failed_responses: int
    total_processing_time: float
    average_response_time: float


class BatchResult(CamelModel):
    responses: List[QAResponse]
    errors: List[BatchError] = Field(default_factory=list)
    processing_stats: BatchStats
    success: bool
