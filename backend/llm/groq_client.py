"""
Groq LLM Client — Wrapper for Groq API chat completions.

Sends the Red Chamber prompt to the selected model tier and shapes the
output: thinking markup, inline citations, fallback sources. Upstream
failures are classified and returned as failure results (complete) or a
single terminal error chunk (stream_complete); only caller-side input
problems raise.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from groq import AsyncGroq

from backend.citations.engine import (
    CitationResult,
    ensure_citations,
    extract_and_format_citations,
    merge_grounding,
    parse_grounding_metadata,
)
from backend.config import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ENABLE_FALLBACK,
    FALLBACK_MODEL_KEY,
    GROQ_API_KEY,
    GROQ_BASE_URL,
    MAX_RETRIES,
    MODEL_TIERS,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_DELAY_MS,
)
from backend.errors.classifier import (
    ClassifiedError,
    calculate_backoff_delay,
    classify_error,
    format_partial_error,
    log_error,
    should_attempt_retry,
)
from backend.errors.exceptions import CompletionResponseError, QAValidationError
from backend.evaluator.evaluator import evaluate_citations, get_warning_message
from backend.llm.prompts import SYSTEM_PROMPT, build_prompt, clean_response, extract_thinking
from backend.llm.timeouts import estimate_request_timeout_ms
from backend.models.schemas import (
    ChunkMetadata,
    GroundingMetadata,
    GroundingSummary,
    QAResponse,
    QuestionRequest,
    StreamChunk,
    validate_question_request,
)

logger = logging.getLogger(__name__)


FAILURE_ANSWER = "抱歉，處理問題時發生錯誤。{message}"


def _to_dict(obj: Any) -> Dict[str, Any]:
    """SDK responses are pydantic models; tests and proxies may hand back dicts."""
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return {}


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _with_thinking(content: str, reasoning: str) -> str:
    # Reasoning tiers return their thinking separately from the answer
    if reasoning:
        return f"<think>{reasoning}</think>{content}"
    return content


class GroqClient:
    """Async wrapper for Groq API interactions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        max_attempts: int = MAX_RETRIES,
        enable_fallback: bool = ENABLE_FALLBACK,
        sleep=asyncio.sleep,
        recorder=None,
    ):
        """
        Args:
            api_key: Groq key; defaults to GROQ_API_KEY from the environment
            client: Pre-built AsyncGroq-compatible client (skips key checks)
            max_attempts: Upper bound on attempts for complete()
            enable_fallback: Switch to the classifier's fallback tier on retry
            sleep: Coroutine used for backoff waits
            recorder: Optional TraceRecorder for classified errors
        """
        if client is None:
            api_key = api_key or GROQ_API_KEY
            if not api_key or api_key == "your_groq_api_key_here":
                raise ValueError(
                    "GROQ_API_KEY not set. Please add your key to the .env file.\n"
                    "Sign up at https://console.groq.com (free, no credit card)."
                )
            # Retries are driven by the error classifier, not the SDK
            client = AsyncGroq(api_key=api_key, base_url=GROQ_BASE_URL, max_retries=0)

        self.client = client
        self.max_attempts = max_attempts
        self.enable_fallback = enable_fallback
        self._sleep = sleep
        self.recorder = recorder

    # --- Request building ---

    def _validate(self, request: QuestionRequest):
        errors = validate_question_request(request)
        if errors:
            raise QAValidationError(errors)

    def _build_params(self, request: QuestionRequest, model_key: str, stream: bool = False) -> Dict[str, Any]:
        tier = MODEL_TIERS[model_key]
        temperature = request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE

        params = {
            "model": tier["model"],
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(request)},
            ],
            "temperature": temperature,
            "max_tokens": min(request.max_tokens or DEFAULT_MAX_TOKENS, tier["max_tokens"]),
            "timeout": estimate_request_timeout_ms(request) / 1000,
        }
        if tier["supports_reasoning"]:
            params["reasoning_effort"] = request.reasoning_effort
        if stream:
            params["stream"] = True
        return params

    def _error_context(self, request: QuestionRequest, model_key: str, attempt: int) -> Dict[str, Any]:
        return {
            "model_key": model_key,
            "reasoning_effort": request.reasoning_effort,
            "question_length": len(request.user_question),
            "attempt": attempt,
        }

    async def _record(self, classified: ClassifiedError, request: QuestionRequest):
        if self.recorder is not None:
            await self.recorder.record_error(classified, question=request.user_question)

    # --- Output shaping ---

    def _shape_answer(
        self,
        request: QuestionRequest,
        content: str,
        reasoning: str,
        grounding: GroundingMetadata,
    ) -> Tuple[str, str, CitationResult, Optional[str], bool]:
        """Returns (answer, raw_answer, citation result, thinking, has_thinking)."""
        result = extract_and_format_citations(content, grounding, inline=request.include_detailed_citations)
        raw_answer = _with_thinking(content, reasoning)
        thinking, has_thinking = extract_thinking(raw_answer)
        answer = clean_response(_with_thinking(result.processed_text, reasoning), request.show_thinking_process)
        return answer, raw_answer, result, thinking, has_thinking

    # --- Non-streaming ---

    async def complete(self, request: QuestionRequest) -> QAResponse:
        """
        Answer a question in one round trip.

        Retries retryable failures with exponential backoff, switching to the
        fallback tier when the classifier suggests one.

        Raises:
            QAValidationError: empty or oversized question (before any network call)
        """
        self._validate(request)

        start_time = time.time()
        model_key = request.model_key
        attempt = 0

        while True:
            attempt += 1
            try:
                completion = await self.client.chat.completions.create(**self._build_params(request, model_key))
                payload = _to_dict(completion)
                choices = payload.get("choices") or []
                if not choices:
                    raise CompletionResponseError("Completion response had no choices")
                break
            except Exception as e:
                classified = classify_error(e, self._error_context(request, model_key, attempt))
                log_error(classified)
                await self._record(classified, request)

                if not should_attempt_retry(classified, attempt, self.max_attempts):
                    return self._failure_response(request, classified, model_key, start_time, attempt)

                base_ms = classified.retry_delay or RETRY_BASE_DELAY_MS
                # The category delay is a floor; the backoff cap never shortens it
                delay_ms = calculate_backoff_delay(attempt - 1, base=base_ms, cap=max(RETRY_MAX_DELAY_MS, base_ms))
                if self.enable_fallback and classified.fallback_model:
                    model_key = classified.fallback_model
                logger.warning(f"Retrying question in {delay_ms}ms (attempt {attempt + 1}, model {model_key})")
                await self._sleep(delay_ms / 1000)

        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""
        reasoning = message.get("reasoning") or ""
        grounding = parse_grounding_metadata(payload)

        answer, raw_answer, result, thinking, _ = self._shape_answer(request, content, reasoning, grounding)
        citations = ensure_citations(result.citations)
        flags = evaluate_citations(answer, citations)
        summary = result.summary
        warning = get_warning_message(flags)
        if warning:
            summary = summary.model_copy(update={"warnings": summary.warnings + [warning]})

        logger.info(
            f"Answered with {model_key} in {attempt} attempt(s): "
            f"{len(answer)} chars, {len(citations)} citations, grounding={result.summary.grounding_success}"
        )

        return QAResponse(
            question=request.user_question,
            answer=answer,
            raw_answer=raw_answer,
            citations=citations,
            segment_citations=result.segment_citations,
            grounding_metadata=summary,
            model_used=payload.get("model") or MODEL_TIERS[model_key]["model"],
            model_key=model_key,
            reasoning_effort=request.reasoning_effort,
            question_context=request.question_context,
            processing_time=round(time.time() - start_time, 3),
            success=True,
            streaming=False,
            attempts=attempt,
            answer_length=len(answer),
            question_length=len(request.user_question),
            citation_count=len(citations),
            metadata={
                "usage": payload.get("usage"),
                "finish_reason": choice.get("finish_reason"),
                "thinking_content": thinking if request.show_thinking_process else None,
                "evaluator_flags": flags,
            },
        )

    def _failure_response(
        self,
        request: QuestionRequest,
        classified: ClassifiedError,
        model_key: str,
        start_time: float,
        attempts: int,
    ) -> QAResponse:
        answer = FAILURE_ANSWER.format(message=classified.user_message)
        return QAResponse(
            question=request.user_question,
            answer=answer,
            grounding_metadata=GroundingSummary(),
            model_used=MODEL_TIERS[model_key]["model"],
            model_key=model_key,
            reasoning_effort=request.reasoning_effort,
            question_context=request.question_context,
            processing_time=round(time.time() - start_time, 3),
            success=False,
            streaming=False,
            attempts=attempts,
            answer_length=len(answer),
            question_length=len(request.user_question),
            citation_count=0,
            error=_error_message(classified.original_error),
            metadata={
                "error_category": classified.category.value,
                "recovery_actions": [a.value for a in classified.recovery_actions],
                "should_retry": classified.should_retry,
                "retry_delay": classified.retry_delay,
                "fallback_model": classified.fallback_model,
            },
        )

    # --- Streaming ---

    async def stream_complete(self, request: QuestionRequest) -> AsyncIterator[StreamChunk]:
        """
        Stream an answer chunk by chunk.

        Yields one chunk per non-empty delta (chunk_index from 0) and ends
        with exactly one chunk where is_complete=True. If the upstream fails
        mid-stream, that terminal chunk carries `error` and the partial
        content. The upstream stream is closed however iteration ends.

        Raises:
            QAValidationError: on the first iteration, before any network call
        """
        self._validate(request)

        start_time = time.time()
        model_key = request.model_key
        timeout_ms = estimate_request_timeout_ms(request)
        state = {
            "content": "",
            "reasoning": "",
            "grounding": GroundingMetadata(),
            "index": 0,
            "model_used": MODEL_TIERS[model_key]["model"],
        }
        stream = None

        try:
            stream = await self.client.chat.completions.create(**self._build_params(request, model_key, stream=True))

            async for event in stream:
                payload = _to_dict(event)
                state["grounding"] = merge_grounding(state["grounding"], parse_grounding_metadata(payload))
                if payload.get("model"):
                    state["model_used"] = payload["model"]

                choices = payload.get("choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}
                content = delta.get("content") or ""
                reasoning = delta.get("reasoning") or ""
                state["content"] += content
                state["reasoning"] += reasoning

                finish_reason = choice.get("finish_reason")
                if finish_reason:
                    yield self._final_chunk(request, state, content, start_time, timeout_ms, finish_reason)
                    return

                if content or (reasoning and request.show_thinking_process):
                    yield self._progress_chunk(request, state, content, start_time, timeout_ms)
                    state["index"] += 1

            # Upstream ended without a finish reason
            yield self._final_chunk(request, state, "", start_time, timeout_ms, None)

        except Exception as e:
            classified = classify_error(e, self._error_context(request, model_key, 1))
            log_error(classified, {"chunk_index": state["index"], "partial_length": len(state["content"])})
            await self._record(classified, request)
            yield self._error_chunk(request, state, classified, start_time, timeout_ms)

        finally:
            if stream is not None:
                await stream.close()

    def _chunk_metadata(self, request: QuestionRequest, state: Dict, summary: GroundingSummary,
                        timeout_ms: int, finish_reason: Optional[str] = None) -> ChunkMetadata:
        return ChunkMetadata(
            model_used=state["model_used"],
            model_key=request.model_key,
            reasoning_effort=request.reasoning_effort,
            search_queries=summary.search_queries,
            total_search_results=summary.total_search_results,
            citation_count=summary.citation_count,
            grounding_success=summary.grounding_success,
            warnings=summary.warnings,
            finish_reason=finish_reason,
            timeout_ms=timeout_ms,
        )

    def _progress_chunk(self, request: QuestionRequest, state: Dict, delta: str,
                        start_time: float, timeout_ms: int) -> StreamChunk:
        raw = _with_thinking(state["content"], state["reasoning"])
        thinking, has_thinking = extract_thinking(raw)
        result = extract_and_format_citations(state["content"], state["grounding"], inline=False)

        return StreamChunk(
            content=delta,
            full_content=clean_response(raw, request.show_thinking_process),
            thinking_content=thinking if request.show_thinking_process else None,
            citations=result.citations,
            search_queries=state["grounding"].search_queries,
            metadata=self._chunk_metadata(request, state, result.summary, timeout_ms),
            response_time=round(time.time() - start_time, 3),
            is_complete=False,
            chunk_index=state["index"],
            has_thinking_process=has_thinking,
        )

    def _final_chunk(self, request: QuestionRequest, state: Dict, delta: str, start_time: float,
                     timeout_ms: int, finish_reason: Optional[str]) -> StreamChunk:
        answer, _, result, thinking, has_thinking = self._shape_answer(
            request, state["content"], state["reasoning"], state["grounding"]
        )
        citations = ensure_citations(result.citations)

        logger.info(
            f"Stream finished ({finish_reason or 'eof'}) after {state['index'] + 1} chunks: "
            f"{len(answer)} chars, {len(citations)} citations"
        )

        return StreamChunk(
            content=delta,
            full_content=answer,
            thinking_content=thinking if request.show_thinking_process else None,
            citations=citations,
            search_queries=state["grounding"].search_queries,
            metadata=self._chunk_metadata(request, state, result.summary, timeout_ms, finish_reason),
            response_time=round(time.time() - start_time, 3),
            is_complete=True,
            chunk_index=state["index"],
            has_thinking_process=has_thinking,
        )

    def _error_chunk(self, request: QuestionRequest, state: Dict, classified: ClassifiedError,
                     start_time: float, timeout_ms: int) -> StreamChunk:
        partial = clean_response(_with_thinking(state["content"], state["reasoning"]), request.show_thinking_process)
        metadata = self._chunk_metadata(request, state, GroundingSummary(), timeout_ms).model_copy(update={
            "error_category": classified.category.value,
            "should_retry": classified.should_retry,
            "retry_delay": classified.retry_delay,
            "fallback_model": classified.fallback_model,
            "recovery_actions": [a.value for a in classified.recovery_actions],
        })

        return StreamChunk(
            content="",
            full_content=format_partial_error(classified, partial),
            search_queries=state["grounding"].search_queries,
            metadata=metadata,
            response_time=round(time.time() - start_time, 3),
            is_complete=True,
            chunk_index=state["index"],
            error=_error_message(classified.original_error),
        )

    # --- Health ---

    async def check_connection(self) -> Dict[str, Any]:
        """Send a one-token request to verify credentials and reachability."""
        try:
            await self.client.chat.completions.create(
                model=MODEL_TIERS[FALLBACK_MODEL_KEY]["model"],
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
            )
            return {"success": True}
        except Exception as e:
            classified = classify_error(e, {"model_key": FALLBACK_MODEL_KEY})
            log_error(classified)
            return {"success": False, "error": _error_message(e), "category": classified.category.value}


def build_qa_client(recorder=None) -> GroqClient:
    """Create a client from environment configuration."""
    return GroqClient(recorder=recorder)
