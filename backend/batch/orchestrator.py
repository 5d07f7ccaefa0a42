"""
Batch Orchestrator — Answers many questions with bounded concurrency.

Parallel mode slices the questions into consecutive chunks of
`max_concurrency` and gathers each chunk completely before starting the
next. Sequential mode answers one question at a time. Neither mode aborts
on a failed question: every input index gets exactly one response.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic.alias_generators import to_snake

from backend.config import DEFAULT_BATCH_CONCURRENCY
from backend.models.schemas import (
    BatchError,
    BatchResult,
    BatchStats,
    QAResponse,
    QuestionRequest,
)

logger = logging.getLogger(__name__)


PLACEHOLDER_ANSWER = "處理問題時發生錯誤: {error}"


def apply_shared_config(question: QuestionRequest, shared_config: Optional[Dict[str, Any]]) -> QuestionRequest:
    """Fill unset question fields from the shared config; explicit question fields win."""
    if not shared_config:
        return question
    shared = {to_snake(key): value for key, value in shared_config.items()}
    merged = {**shared, **question.model_dump(exclude_unset=True)}
    return QuestionRequest(**merged)


def _placeholder(question: QuestionRequest, error: BaseException) -> QAResponse:
    message = str(error) or type(error).__name__
    answer = PLACEHOLDER_ANSWER.format(error=message)
    return QAResponse(
        question=question.user_question,
        answer=answer,
        model_key=question.model_key,
        reasoning_effort=question.reasoning_effort,
        question_context=question.question_context,
        success=False,
        answer_length=len(answer),
        question_length=len(question.user_question),
        error=message,
    )


async def run_batch(
    client,
    questions: List[QuestionRequest],
    max_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    parallel: bool = True,
    shared_config: Optional[Dict[str, Any]] = None,
) -> BatchResult:
    """
    Answer every question and report per-question failures.

    Args:
        client: Anything with `async complete(QuestionRequest) -> QAResponse`
        questions: Questions in output order
        max_concurrency: Chunk size in parallel mode (>= 1)
        parallel: Chunked gather when True, one at a time when False
        shared_config: Defaults merged under each question

    Returns:
        BatchResult with len(responses) == len(questions)
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    start_time = time.time()
    prepared = [apply_shared_config(q, shared_config) for q in questions]
    outcomes: List[Any] = [None] * len(prepared)

    if parallel:
        for offset in range(0, len(prepared), max_concurrency):
            chunk = prepared[offset:offset + max_concurrency]
            results = await asyncio.gather(
                *(client.complete(q) for q in chunk),
                return_exceptions=True,
            )
            outcomes[offset:offset + len(chunk)] = results
            logger.info(f"Batch chunk {offset // max_concurrency + 1} done ({offset + len(chunk)}/{len(prepared)})")
    else:
        for index, question in enumerate(prepared):
            try:
                outcomes[index] = await client.complete(question)
            except Exception as e:
                outcomes[index] = e

    responses: List[QAResponse] = []
    errors: List[BatchError] = []
    for index, (question, outcome) in enumerate(zip(prepared, outcomes)):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(f"Batch question {index} failed: {outcome}")
            response = _placeholder(question, outcome)
            errors.append(BatchError(question_index=index, error=response.error, question=question.user_question))
        else:
            response = outcome
            if not response.success:
                errors.append(BatchError(
                    question_index=index,
                    error=response.error or "unknown error",
                    question=question.user_question,
                ))
        responses.append(response)

    total_time = round(time.time() - start_time, 3)
    successful = len(responses) - len(errors)
    stats = BatchStats(
        total_questions=len(prepared),
        successful_responses=successful,
        failed_responses=len(errors),
        total_processing_time=total_time,
        average_response_time=round(total_time / len(prepared), 3) if prepared else 0.0,
    )

    logger.info(f"Batch finished: {successful}/{len(prepared)} succeeded in {total_time}s")

    return BatchResult(
        responses=responses,
        errors=errors,
        processing_stats=stats,
        success=successful > 0,
    )
