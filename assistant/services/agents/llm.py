"""Generation service used by the classifier, the fast path and the agents.

`GenerationService` is the vendor-neutral interface; `GeminiClient` talks to
the Gemini REST API over httpx. Structured calls run in JSON mode and the
first JSON object in the reply is validated against a pydantic model.
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ...config import (
    GEMINI_API_KEY,
    GEMINI_BASE_URL,
    GEMINI_MODEL,
    LLM_DAILY_LIMIT,
    LLM_PER_MINUTE_LIMIT,
    LLM_TIMEOUT_SECONDS,
)
from ...exceptions import GenerationError, GenerationTimeout, GenerationValidationError
from ..rate_limit import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS
_MINUTE_KEY = "llm:minute"
_DAY_KEY = "llm:day"


class GenerationService(Protocol):
    """Anything that can complete text and produce schema-conformant objects."""

    model_name: str

    async def generate_text(
        self,
        system: str,
        prompt: str,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    async def generate_object(
        self,
        system: str,
        prompt: str,
        schema: Type[T],
        temperature: float = 0,
        timeout: Optional[float] = None,
    ) -> T:
        """Return an instance of `schema` or raise GenerationValidationError."""
        ...


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the first balanced top-level `{...}` span in `text`.

    Braces inside single- or double-quoted strings are ignored and a
    backslash escapes the next character inside a string. Surrounding
    prose and later objects are discarded.
    """
    depth = 0
    start = -1
    quote = ""
    escape_next = False

    for i, ch in enumerate(text):
        if quote:
            if escape_next:
                escape_next = False
            elif ch == "\\":
                escape_next = True
            elif ch == quote:
                quote = ""
            continue

        if ch in ('"', "'"):
            quote = ch
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return text[start:i + 1]

    return None


def parse_structured(raw: str, schema: Type[T]) -> T:
    """Extract, decode and validate a JSON object from model output."""
    candidate = extract_first_json_object(raw.strip())
    if candidate is None:
        raise GenerationValidationError("No JSON object found in model output", raw=raw)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise GenerationValidationError(f"Malformed JSON in model output: {e}", raw=raw) from e
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise GenerationValidationError(
            f"Model output does not match {schema.__name__}: {e.error_count()} errors", raw=raw
        ) from e


def schema_instructions(schema: Type[BaseModel]) -> str:
    return (
        "Respond with ONLY a JSON object (no markdown, no other text) "
        f"matching this JSON schema:\n{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
    )


class GeminiClient:
    """GenerationService over the Gemini `generateContent` endpoint.

    Upstream quota (per minute and per day) is tracked with the shared
    RateLimiter so that a burst of requests fails fast instead of being
    rejected by the provider.
    """

    def __init__(
        self,
        api_key: Optional[str] = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = LLM_TIMEOUT_SECONDS,
        rate_limiter: Optional[RateLimiter] = None,
        per_minute_limit: int = LLM_PER_MINUTE_LIMIT,
        daily_limit: int = LLM_DAILY_LIMIT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model_name = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = rate_limiter if rate_limiter is not None else get_rate_limiter()
        self.per_minute_limit = per_minute_limit
        self.daily_limit = daily_limit
        self._transport = transport

    def get_rate_limit_status(self) -> Dict[str, Any]:
        minute = self.rate_limiter.status(_MINUTE_KEY, MINUTE_MS, self.per_minute_limit)
        day = self.rate_limiter.status(_DAY_KEY, DAY_MS, self.daily_limit)
        return {
            "daily_remaining": day.remaining,
            "minute_remaining": minute.remaining,
            "daily_limit": self.daily_limit,
            "minute_limit": self.per_minute_limit,
        }

    def _check_quota(self) -> None:
        if not self.rate_limiter.status(_DAY_KEY, DAY_MS, self.daily_limit).allowed:
            raise GenerationError("Daily generation limit reached")
        minute = self.rate_limiter.status(_MINUTE_KEY, MINUTE_MS, self.per_minute_limit)
        if not minute.allowed:
            raise GenerationError(f"Generation rate limit reached, retry in {minute.reset_ms}ms")

    def _record_request(self) -> None:
        self.rate_limiter.check(_MINUTE_KEY, MINUTE_MS, self.per_minute_limit)
        self.rate_limiter.check(_DAY_KEY, DAY_MS, self.daily_limit)

    async def _generate(
        self,
        system: str,
        prompt: str,
        temperature: float,
        timeout: Optional[float],
        json_mode: bool = False,
    ) -> str:
        if not self.api_key:
            raise GenerationError("GEMINI_API_KEY is not configured")
        self._check_quota()

        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": 2048,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        url = f"{self.base_url}/models/{self.model_name}:generateContent"

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.api_key}, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"[LLM] Request timed out after {timeout or self.timeout}s")
            raise GenerationTimeout(f"Generation timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json().get("error", {}).get("message", "")
            except ValueError:
                detail = e.response.text[:200] if e.response.text else ""
            logger.error(f"[LLM] HTTP error: {e.response.status_code} - {detail}")
            raise GenerationError(f"API error: {e.response.status_code} - {detail}") from e
        except httpx.HTTPError as e:
            logger.error(f"[LLM] Transport error: {e}")
            raise GenerationError(f"Error calling generation service: {e}") from e

        self._record_request()

        candidates = data.get("candidates") or []
        parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            raise GenerationError("Empty response from generation service")
        return text

    async def generate_text(
        self,
        system: str,
        prompt: str,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> str:
        return await self._generate(system, prompt, temperature, timeout)

    async def generate_object(
        self,
        system: str,
        prompt: str,
        schema: Type[T],
        temperature: float = 0,
        timeout: Optional[float] = None,
    ) -> T:
        full_prompt = f"{prompt}\n\n{schema_instructions(schema)}"
        raw = await self._generate(system, full_prompt, temperature, timeout, json_mode=True)
        logger.debug(f"[LLM] Structured response for {schema.__name__}: {raw[:300]}")
        return parse_structured(raw, schema)


# Global client instance
_client: Optional[GeminiClient] = None


def get_generation_service() -> GeminiClient:
    """Get or create the process-wide Gemini client."""
    global _client
    if _client is None:
        _client = GeminiClient()
    return _client


def get_rate_limit_status() -> Dict[str, Any]:
    """Upstream generation quota of the process-wide client."""
    return get_generation_service().get_rate_limit_status()
