"""Prompt fragments shared by the extraction agents."""

from datetime import datetime
from typing import Optional

from ...config import MESSAGE_PROCESSING_CONFIG

# Embedded verbatim in every extraction prompt
TEMPORAL_RULES = """ПРАВИЛА ОБРАБОТКИ ВРЕМЕНИ:
- Текущее время: {current_time}
- Часовой пояс: {timezone}
- "завтра" = следующий день в 09:00
- "сегодня" = сегодня в 18:00 (если время не указано)
- "через час" = текущее время + 1 час
- "в понедельник" = ближайший понедельник в 09:00
- Всегда возвращай время в ISO формате с часовым поясом"""


def temporal_rules(timezone: Optional[str] = None, now: Optional[datetime] = None) -> str:
    return TEMPORAL_RULES.format(
        current_time=(now or datetime.now()).isoformat(timespec="seconds"),
        timezone=timezone or MESSAGE_PROCESSING_CONFIG["EXTRACTION"]["DEFAULT_TIMEZONE"],
    )


PRIORITY_RULES = """ПРИОРИТЕТЫ:
- urgent: срочно, немедленно, критично
- high: важно, приоритетно, нужно сделать
- medium: обычная важность, стандартно
- low: не спешит, когда будет время"""
