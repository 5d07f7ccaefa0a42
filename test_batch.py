"""Tests for batch question answering with bounded concurrency."""
import asyncio

import pytest

from backend.batch.orchestrator import apply_shared_config, run_batch
from backend.models.schemas import QAResponse, QuestionRequest


QUESTIONS = [
    "林黛玉的性格特點？",
    "薛寶釵為何被稱為冷美人？",
    "賈寶玉為何摔玉？",
    "王熙鳳如何協理寧國府？",
    "大觀園的象徵意義是什麼？",
]


class RecordingClient:
    """Tracks how many complete() calls overlap."""

    def __init__(self, raising=(), unsuccessful=()):
        self.raising = set(raising)
        self.unsuccessful = set(unsuccessful)
        self.active = 0
        self.peak = 0
        self.seen = []

    async def complete(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.seen.append(request)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1

        if request.user_question in self.raising:
            raise Exception("Connection error.")
        if request.user_question in self.unsuccessful:
            return QAResponse(question=request.user_question, answer="抱歉", success=False, error="Request timed out.")
        return QAResponse(question=request.user_question, answer=f"答：{request.user_question}", model_key=request.model_key)


def _questions():
    return [QuestionRequest(user_question=q) for q in QUESTIONS]


class TestRunBatch:
    def test_partial_failures_keep_every_slot(self):
        client = RecordingClient(raising=[QUESTIONS[1], QUESTIONS[3]])
        result = asyncio.run(run_batch(client, _questions(), max_concurrency=2))

        assert len(result.responses) == 5
        assert result.processing_stats.total_questions == 5
        assert result.processing_stats.successful_responses == 3
        assert result.processing_stats.failed_responses == 2
        assert len(result.errors) == 2
        assert [e.question_index for e in result.errors] == [1, 3]
        assert result.success is True

    def test_placeholder_for_failed_question(self):
        client = RecordingClient(raising=[QUESTIONS[1]])
        result = asyncio.run(run_batch(client, _questions(), max_concurrency=2))

        placeholder = result.responses[1]
        assert placeholder.success is False
        assert placeholder.question == QUESTIONS[1]
        assert placeholder.answer == "處理問題時發生錯誤: Connection error."
        assert result.errors[0].error == "Connection error."

    def test_responses_keep_input_order(self):
        result = asyncio.run(run_batch(RecordingClient(), _questions(), max_concurrency=3))
        assert [r.question for r in result.responses] == QUESTIONS

    def test_concurrency_is_bounded(self):
        client = RecordingClient()
        asyncio.run(run_batch(client, _questions(), max_concurrency=2))
        assert client.peak == 2
        assert [q.user_question for q in client.seen] == QUESTIONS

    def test_sequential_mode(self):
        client = RecordingClient(raising=[QUESTIONS[0]])
        result = asyncio.run(run_batch(client, _questions(), parallel=False))

        assert client.peak == 1
        assert len(result.responses) == 5
        assert result.processing_stats.failed_responses == 1

    def test_unsuccessful_response_counts_as_failure(self):
        client = RecordingClient(unsuccessful=[QUESTIONS[2]])
        result = asyncio.run(run_batch(client, _questions()))

        assert result.processing_stats.failed_responses == 1
        assert result.errors[0].question_index == 2
        assert result.errors[0].error == "Request timed out."
        assert result.responses[2].answer == "抱歉"

    def test_all_failed(self):
        client = RecordingClient(raising=QUESTIONS)
        result = asyncio.run(run_batch(client, _questions(), max_concurrency=5))
        assert result.success is False
        assert result.processing_stats.successful_responses == 0

    def test_stats_timing(self):
        result = asyncio.run(run_batch(RecordingClient(), _questions()))
        stats = result.processing_stats
        assert stats.total_processing_time > 0
        assert stats.average_response_time == round(stats.total_processing_time / 5, 3)

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            asyncio.run(run_batch(RecordingClient(), _questions(), max_concurrency=0))


class TestSharedConfig:
    def test_fills_unset_fields(self):
        merged = apply_shared_config(QuestionRequest(user_question="問"), {"modelKey": "instant", "temperature": 0.5})
        assert merged.model_key == "instant"
        assert merged.temperature == 0.5

    def test_question_fields_win(self):
        question = QuestionRequest(user_question="問", model_key="compound")
        merged = apply_shared_config(question, {"model_key": "instant"})
        assert merged.model_key == "compound"

    def test_no_shared_config(self):
        question = QuestionRequest(user_question="問")
        assert apply_shared_config(question, {}) is question

    def test_applied_to_every_question(self):
        client = RecordingClient()
        asyncio.run(run_batch(client, _questions(), shared_config={"modelKey": "instant"}))
        assert {q.model_key for q in client.seen} == {"instant"}
