"""Small helpers shared across the pipeline.

None of these raise: on bad input they log a warning and return a
documented fallback value.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import MESSAGE_PROCESSING_CONFIG

logger = logging.getLogger(__name__)

CANONICAL_PRIORITIES = ("low", "medium", "high", "urgent")

# Free-text priority words (Russian and English) -> canonical value.
# Order matters for substring matching: stronger priorities are checked first.
PRIORITY_MAPPING: Dict[str, str] = {
    # urgent
    "срочно": "urgent",
    "немедленно": "urgent",
    "критично": "urgent",
    "urgent": "urgent",
    "immediately": "urgent",
    "critical": "urgent",
    "asap": "urgent",
    # high
    "важно": "high",
    "приоритетно": "high",
    "нужно сделать": "high",
    "high": "high",
    "important": "high",
    # medium
    "обычно": "medium",
    "стандартно": "medium",
    "medium": "medium",
    "normal": "medium",
    "standard": "medium",
    # low
    "неспешно": "low",
    "когда будет время": "low",
    "low": "low",
    "whenever": "low",
    "no rush": "low",
}


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def map_priority(value: Optional[str]) -> str:
    """Map a free-text priority to one of low/medium/high/urgent.

    Exact lookup first (case-insensitive, trimmed), then substring matching.
    Unknown values default to "medium".
    """
    normalized = (value or "").strip().lower()

    if normalized in PRIORITY_MAPPING:
        return PRIORITY_MAPPING[normalized]

    if normalized:
        for key, canonical in PRIORITY_MAPPING.items():
            if key in normalized:
                return canonical
        # Truncated words like "срочн" still resolve
        if len(normalized) >= 3:
            for key, canonical in PRIORITY_MAPPING.items():
                if normalized in key:
                    return canonical

    logger.warning(f"[Priority] Unknown priority '{value}', defaulting to 'medium'")
    return "medium"


def parse_iso_datetime(value: Any, fallback: datetime) -> datetime:
    """Parse an ISO-8601 timestamp, returning `fallback` when it is not one."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    logger.warning(f"[Dates] Could not parse datetime {value!r}, using fallback {fallback.isoformat()}")
    return fallback


def truncate_for_logging(text: str, max_length: Optional[int] = None) -> str:
    limit = max_length or MESSAGE_PROCESSING_CONFIG["LOGGING"]["MAX_TEXT_LENGTH"]
    return text[:limit] + "..." if len(text) > limit else text


def normalize_message(text: str) -> str:
    """Lowercase and collapse whitespace so trivially different inputs share a key."""
    return re.sub(r"\s+", " ", text.strip().lower())


def input_hash(text: str) -> str:
    return hashlib.sha256(normalize_message(text).encode("utf-8")).hexdigest()[:16]
