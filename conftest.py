"""Shared fixtures for the QA pipeline tests."""
import pytest

from backend.models.schemas import QuestionRequest


@pytest.fixture
def question():
    """The canonical character question used across the suites."""
    return QuestionRequest(user_question="林黛玉的性格特點？")


@pytest.fixture
def make_question():
    def _make(text="林黛玉的性格特點？", **overrides):
        return QuestionRequest(user_question=text, **overrides)
    return _make
