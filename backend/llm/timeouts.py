"""
Adaptive timeout estimation for upstream completions.

Deadline = tier base * reasoning-effort multiplier
           + question-length bonus + chapter-context bonus,
clamped to [MIN_TIMEOUT_MS, MAX_TIMEOUT_MS].
"""

from backend.config import (
    MODEL_TIERS,
    DEFAULT_MODEL_KEY,
    EFFORT_TIMEOUT_MULTIPLIERS,
    QUESTION_LENGTH_BONUS_MS,
    LONG_QUESTION_BONUS_MS,
    SHORT_CONTEXT_LIMIT,
    SHORT_CONTEXT_BONUS_MS,
    LONG_CONTEXT_BONUS_MS,
    MIN_TIMEOUT_MS,
    MAX_TIMEOUT_MS,
)


def _question_bonus(question_length: int) -> int:
    for max_length, bonus in QUESTION_LENGTH_BONUS_MS:
        if question_length <= max_length:
            return bonus
    return LONG_QUESTION_BONUS_MS


def _context_bonus(context_length: int) -> int:
    if context_length <= 0:
        return 0
    if context_length < SHORT_CONTEXT_LIMIT:
        return SHORT_CONTEXT_BONUS_MS
    return LONG_CONTEXT_BONUS_MS


def estimate_timeout_ms(
    model_key: str = DEFAULT_MODEL_KEY,
    reasoning_effort: str = "medium",
    question_length: int = 0,
    context_length: int = 0,
) -> int:
    """
    Estimate how long to wait for a completion before giving up.

    Unknown model keys fall back to the default tier and unknown efforts
    to a multiplier of 1.0. Monotone non-decreasing in every argument.

    Returns:
        Timeout in milliseconds
    """
    tier = MODEL_TIERS.get(model_key) or MODEL_TIERS[DEFAULT_MODEL_KEY]
    multiplier = EFFORT_TIMEOUT_MULTIPLIERS.get(reasoning_effort, 1.0)

    timeout = int(tier["base_timeout_ms"] * multiplier)
    timeout += _question_bonus(max(question_length, 0))
    timeout += _context_bonus(context_length)

    return max(MIN_TIMEOUT_MS, min(timeout, MAX_TIMEOUT_MS))


def format_timeout(timeout_ms: int) -> str:
    """Human readable duration, e.g. '1m 30s'."""
    total_seconds = max(int(timeout_ms), 0) // 1000
    minutes, seconds = divmod(total_seconds, 60)
    if minutes and seconds:
        return f"{minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m"
    return f"{seconds}s"


def estimate_request_timeout_ms(request) -> int:
    """estimate_timeout_ms for a QuestionRequest; context covers chapter text and selection."""
    context_length = len(request.chapter_context or "") + len(request.selected_text or "")
    return estimate_timeout_ms(
        model_key=request.model_key,
        reasoning_effort=request.reasoning_effort,
        question_length=len((request.user_question or "").strip()),
        context_length=context_length,
    )
