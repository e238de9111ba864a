import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from the project root .env
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+asyncpg://{user}:{password}@{host}/{name}".format(
        user=os.getenv("DB_USER", "postgres"),
        password=os.getenv("DB_PASS", ""),
        host=os.getenv("PG_HOST", "localhost"),
        name=os.getenv("DB_NAME", "assistant"),
    ),
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Generation service (Gemini over HTTP)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_PER_MINUTE_LIMIT = int(os.getenv("LLM_PER_MINUTE_LIMIT", "15"))
LLM_DAILY_LIMIT = int(os.getenv("LLM_DAILY_LIMIT", "1500"))

CHANNELS = ("telegram", "web", "mobile")

MESSAGE_PROCESSING_CONFIG = {
    # Conversation context
    "CONTEXT": {
        "MAX_MESSAGES": 20,
        "INCLUDE_SYSTEM_MESSAGES": False,
        "MAX_AGE_HOURS": 48,
    },
    # Token budgets per message kind
    "TOKENS": {
        "QUESTION_OR_CHAT": 2000,  # questions and chat get more history
        "EVENT": 1000,
        "SHORT_MESSAGE_THRESHOLD": 50,
    },
    "LOGGING": {
        "MAX_TEXT_LENGTH": 100,
    },
    "QUALITY": {
        "ENABLED": False,
        "MAX_ITERATIONS": 2,
        "TARGET_QUALITY": 0.8,
    },
    "RATE_LIMIT": {
        "WINDOW_MS": 60_000,
        "LIMIT": 20,
    },
    "FAST_PATH": {
        "ENABLED": True,
        "MIN_CONFIDENCE": 0.7,
        "CACHE_TTL_SECONDS": 5 * 60,
    },
    # Below this the classification only informs, it does not drive routing
    "CLASSIFICATION": {
        "MIN_CONFIDENCE": 0.5,
    },
    "EXTRACTION": {
        "MIN_CONFIDENCE": 0.5,
        "DEFAULT_TIMEZONE": "Europe/Moscow",
        "DEFAULT_CURRENCY": "RUB",
    },
}

GENERIC_ERROR_RESPONSE = (
    "Извините, произошла ошибка при обработке вашего запроса. "
    "Попробуйте переформулировать вопрос."
)
