import os
from dotenv import load_dotenv

load_dotenv()

# Groq API
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL") or None

# Server
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

APP_NAME = "Red Chamber Grounded QA"
APP_VERSION = "1.0.0"

# Trace store (disabled when unset)
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Model tiers, fastest first
MODEL_TIERS = {
    "instant": {
        "model": "llama-3.1-8b-instant",
        "name": "Llama 3.1 8B Instant",
        "max_tokens": 4000,
        "supports_reasoning": False,
        "base_timeout_ms": 30000,
    },
    "compound": {
        "model": "groq/compound",
        "name": "Groq Compound (web search)",
        "max_tokens": 8000,
        "supports_reasoning": False,
        "base_timeout_ms": 60000,
    },
    "reasoning": {
        "model": "openai/gpt-oss-20b",
        "name": "GPT-OSS 20B",
        "max_tokens": 8000,
        "supports_reasoning": True,
        "base_timeout_ms": 60000,
    },
    "reasoning-pro": {
        "model": "openai/gpt-oss-120b",
        "name": "GPT-OSS 120B",
        "max_tokens": 8000,
        "supports_reasoning": True,
        "base_timeout_ms": 90000,
    },
}
MODEL_KEYS = list(MODEL_TIERS.keys())
DEFAULT_MODEL_KEY = "reasoning-pro"
FALLBACK_MODEL_KEY = "instant"

REASONING_EFFORTS = ["low", "medium", "high"]
DEFAULT_REASONING_EFFORT = "medium"

QUESTION_CONTEXTS = ["character", "plot", "theme", "general"]
DEFAULT_QUESTION_CONTEXT = "general"

# Generation defaults
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 2000
MAX_TOKENS_LIMIT = 8000
MAX_QUESTION_LENGTH = 1000

# Retry policy
MAX_RETRIES = int(os.getenv("QA_MAX_RETRIES", 3))
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 30000
ENABLE_FALLBACK = os.getenv("QA_ENABLE_FALLBACK", "true").lower() in ("1", "true", "yes")

# Adaptive timeout
EFFORT_TIMEOUT_MULTIPLIERS = {"low": 1.0, "medium": 1.5, "high": 2.0}
QUESTION_LENGTH_BONUS_MS = [  # (max length, bonus)
    (50, 0),
    (200, 15000),
]
LONG_QUESTION_BONUS_MS = 30000
SHORT_CONTEXT_LIMIT = 1000
SHORT_CONTEXT_BONUS_MS = 10000
LONG_CONTEXT_BONUS_MS = 20000
MIN_TIMEOUT_MS = 10000
MAX_TIMEOUT_MS = 300000

# Citations
MAX_CITATIONS = 10
MAX_UNREFERENCED_SOURCES = 5

# Batch
DEFAULT_BATCH_CONCURRENCY = 3
MAX_BATCH_CONCURRENCY = 10
