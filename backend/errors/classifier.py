"""
Error Classifier — Deterministic, rule-based failure classification.

Maps any exception raised while talking to the upstream model into a
ClassifiedError using explicit pattern lists, checked in a fixed order
(first match wins):

  TIMEOUT → RATE_LIMIT → AUTHENTICATION_ERROR → NETWORK_ERROR
  → VALIDATION_ERROR → STREAMING_ERROR → API_ERROR → UNKNOWN_ERROR

Matching runs over the lower-cased message, the exception class name and
the HTTP status code (if the exception carries one). Never inspects the
traceback.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.config import (
    FALLBACK_MODEL_KEY,
    MAX_RETRIES,
    MODEL_TIERS,
    RETRY_BASE_DELAY_MS,
    RETRY_MAX_DELAY_MS,
)

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STREAMING_ERROR = "STREAMING_ERROR"
    API_ERROR = "API_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RecoveryAction(str, Enum):
    RETRY_SAME_MODEL = "RETRY_SAME_MODEL"
    RETRY_FALLBACK_MODEL = "RETRY_FALLBACK_MODEL"
    RETRY_WITH_REDUCED_TIMEOUT = "RETRY_WITH_REDUCED_TIMEOUT"
    SIMPLIFY_QUESTION = "SIMPLIFY_QUESTION"
    WAIT_AND_RETRY = "WAIT_AND_RETRY"
    CHECK_NETWORK = "CHECK_NETWORK"
    CHECK_API_KEY = "CHECK_API_KEY"
    CONTACT_SUPPORT = "CONTACT_SUPPORT"
    NO_RETRY = "NO_RETRY"


class ClassifiedError(BaseModel):
    """Immutable classification of one failure."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    category: ErrorCategory
    original_error: Any = None
    user_message: str
    technical_message: str
    recovery_actions: List[RecoveryAction] = Field(default_factory=list)
    should_retry: bool
    retry_delay: Optional[int] = None
    fallback_model: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


# Patterns per category, in match order
CATEGORY_PATTERNS = [
    (ErrorCategory.TIMEOUT, [
        r'time[d]?\s?out',
        r'deadline exceeded',
        r'etimedout',
    ]),
    (ErrorCategory.RATE_LIMIT, [
        r'rate\s?limit',
        r'\b429\b',
        r'too many requests',
    ]),
    (ErrorCategory.AUTHENTICATION_ERROR, [
        r'\b401\b',
        r'unauthori[sz]ed',
        r'authentication',
        r'api[\s_-]?key',
    ]),
    (ErrorCategory.NETWORK_ERROR, [
        r'econnrefused',
        r'enotfound',
        r'connection\s?(error|refused|reset|aborted)',
        r'network',
        r'name or service not known',
        r'fetch failed',
    ]),
    (ErrorCategory.VALIDATION_ERROR, [
        r'validation',
        r'invalid',
        r'malformed',
    ]),
    (ErrorCategory.STREAMING_ERROR, [
        r'stream',
        r'async iterable',
        r'\bsse\b',
        r'iterator',
    ]),
    (ErrorCategory.API_ERROR, [
        r'\b[45]\d{2}\b',
    ]),
]

# category → (user message, recovery actions, retry?, delay ms, uses fallback tier)
CATEGORY_POLICY = {
    ErrorCategory.TIMEOUT: (
        "處理您的問題時發生超時。問題可能較為複雜，需要更多時間分析。",
        [RecoveryAction.RETRY_WITH_REDUCED_TIMEOUT, RecoveryAction.RETRY_FALLBACK_MODEL,
         RecoveryAction.SIMPLIFY_QUESTION],
        True, 2000, True,
    ),
    ErrorCategory.RATE_LIMIT: (
        "請求次數已達上限，請稍候再試，通常需要等待 1-2 分鐘。",
        [RecoveryAction.WAIT_AND_RETRY],
        True, 60000, False,
    ),
    ErrorCategory.AUTHENTICATION_ERROR: (
        "模型服務認證失敗，請聯繫管理員檢查系統配置。",
        [RecoveryAction.CHECK_API_KEY, RecoveryAction.CONTACT_SUPPORT],
        False, None, False,
    ),
    ErrorCategory.NETWORK_ERROR: (
        "網絡連接失敗，請檢查網絡連接後重試。",
        [RecoveryAction.CHECK_NETWORK, RecoveryAction.RETRY_SAME_MODEL],
        True, 3000, False,
    ),
    ErrorCategory.VALIDATION_ERROR: (
        "輸入驗證失敗，請檢查問題格式後重試。",
        [RecoveryAction.SIMPLIFY_QUESTION, RecoveryAction.NO_RETRY],
        False, None, False,
    ),
    ErrorCategory.STREAMING_ERROR: (
        "串流傳輸中斷，系統將嘗試重新連線。",
        [RecoveryAction.RETRY_SAME_MODEL],
        True, 1000, False,
    ),
    ErrorCategory.API_ERROR: (
        "模型服務暫時無法使用，請稍後重試。",
        [RecoveryAction.RETRY_FALLBACK_MODEL, RecoveryAction.WAIT_AND_RETRY],
        True, 5000, True,
    ),
    ErrorCategory.UNKNOWN_ERROR: (
        "發生未知錯誤，請稍後重試。如果問題持續，請聯繫技術支持。",
        [RecoveryAction.RETRY_SAME_MODEL, RecoveryAction.CONTACT_SUPPORT],
        True, 3000, False,
    ),
}

SUGGESTIONS = {
    RecoveryAction.RETRY_SAME_MODEL: "• 點擊重試按鈕再次嘗試",
    RecoveryAction.RETRY_FALLBACK_MODEL: f"• 改用較快的模型（{MODEL_TIERS[FALLBACK_MODEL_KEY]['name']}）",
    RecoveryAction.RETRY_WITH_REDUCED_TIMEOUT: "• 縮短問題長度後重試",
    RecoveryAction.SIMPLIFY_QUESTION: "• 簡化問題，一次只問一個重點",
    RecoveryAction.WAIT_AND_RETRY: "• 稍等片刻再試（建議等待 1-2 分鐘）",
    RecoveryAction.CHECK_NETWORK: "• 檢查網絡連接是否正常",
    RecoveryAction.CHECK_API_KEY: "• 聯繫管理員檢查 API 配置",
    RecoveryAction.CONTACT_SUPPORT: "• 如問題持續，請聯繫技術支持",
}

TITLES = {
    ErrorCategory.TIMEOUT: "處理超時",
    ErrorCategory.RATE_LIMIT: "請求限制",
    ErrorCategory.AUTHENTICATION_ERROR: "認證失敗",
    ErrorCategory.NETWORK_ERROR: "網絡錯誤",
    ErrorCategory.STREAMING_ERROR: "串流錯誤",
    ErrorCategory.API_ERROR: "API 錯誤",
}


def _haystack(error: Any) -> str:
    if isinstance(error, BaseException):
        parts = [str(error), type(error).__name__]
        status_code = getattr(error, "status_code", None)
        if status_code is not None:
            parts.append(str(status_code))
    else:
        parts = [str(error)]
    return " ".join(parts).lower()


def _match_category(haystack: str) -> ErrorCategory:
    for category, patterns in CATEGORY_PATTERNS:
        for pattern in patterns:
            if re.search(pattern, haystack):
                return category
    return ErrorCategory.UNKNOWN_ERROR


def _fallback_for(model_key: Optional[str]) -> Optional[str]:
    if model_key == FALLBACK_MODEL_KEY:
        return None
    return FALLBACK_MODEL_KEY


def classify_error(error: Any, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
    """
    Classify a failure into exactly one ErrorCategory.

    Args:
        error: The exception (or any object) describing the failure
        context: Optional debugging context, e.g. {"model_key": ..., "attempt": ...}

    Returns:
        ClassifiedError carrying the category policy
    """
    context = dict(context or {})
    category = _match_category(_haystack(error))
    user_message, actions, should_retry, delay, uses_fallback = CATEGORY_POLICY[category]

    if isinstance(error, BaseException):
        detail = f"{type(error).__name__} - {error}"
    else:
        detail = str(error)

    return ClassifiedError(
        category=category,
        original_error=error,
        user_message=user_message,
        technical_message=f"{category.value}: {detail}",
        recovery_actions=list(actions),
        should_retry=should_retry,
        retry_delay=delay,
        fallback_model=_fallback_for(context.get("model_key")) if uses_fallback else None,
        context=context,
    )


def format_error_for_user(classified: ClassifiedError) -> Dict[str, Any]:
    """
    Render a classified error for display.

    Returns:
        {"title": str, "message": str, "suggestions": ["• ...", ...]}
    """
    suggestions = [SUGGESTIONS[a] for a in classified.recovery_actions if a in SUGGESTIONS]
    return {
        "title": TITLES.get(classified.category, "處理錯誤"),
        "message": classified.user_message,
        "suggestions": suggestions or ["• 請稍後重試"],
    }


def log_error(classified: ClassifiedError, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Log a classified error and return the structured log entry."""
    entry = {
        "category": classified.category.value,
        "technical_message": classified.technical_message,
        "should_retry": classified.should_retry,
        "retry_delay": classified.retry_delay,
        "fallback_model": classified.fallback_model,
        "recovery_actions": [a.value for a in classified.recovery_actions],
        "context": {**classified.context, **(extra or {})},
    }
    logger.error(
        f"QA error [{entry['category']}] {entry['technical_message']} | "
        f"retry={entry['should_retry']} delay={entry['retry_delay']} "
        f"fallback={entry['fallback_model']} context={entry['context']}"
    )
    return entry


def should_attempt_retry(classified: ClassifiedError, attempt: int, max_attempts: int = MAX_RETRIES) -> bool:
    """Retry only for retryable categories and while attempts remain."""
    if attempt >= max_attempts:
        return False
    return classified.should_retry


def calculate_backoff_delay(
    attempt: int,
    base: int = RETRY_BASE_DELAY_MS,
    cap: int = RETRY_MAX_DELAY_MS,
) -> int:
    """Exponential backoff: min(base * 2^attempt, cap), in milliseconds."""
    return min(base * (2 ** max(attempt, 0)), cap)


def format_partial_error(classified: ClassifiedError, partial_content: str = "") -> str:
    """
    User-facing text for a failed stream: message, any partial answer
    already received, then the suggestions.
    """
    formatted = format_error_for_user(classified)
    suggestions = "\n".join(formatted["suggestions"])
    if partial_content:
        return (
            f"{formatted['message']}\n\n已接收到部分回應：\n\n{partial_content}"
            f"\n\n---\n\n建議：\n{suggestions}"
        )
    return f"{formatted['message']}\n\n建議：\n{suggestions}"
