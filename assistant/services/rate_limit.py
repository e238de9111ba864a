"""In-memory sliding-window rate limiter.

State lives in the process and resets on restart. All mutation happens on
the event loop thread, so no locking is needed; a multi-threaded or
multi-process deployment needs a shared store instead.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..config import MESSAGE_PROCESSING_CONFIG
from ..exceptions import RateLimitExceeded
from ..schemas.rate_limit import RateLimitResult

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = MESSAGE_PROCESSING_CONFIG["RATE_LIMIT"]["WINDOW_MS"]
DEFAULT_LIMIT = MESSAGE_PROCESSING_CONFIG["RATE_LIMIT"]["LIMIT"]


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_rate_limit_key(parts: Iterable[Union[str, int, None]]) -> str:
    """Join the non-empty parts with ':' (e.g. "process:user-1")."""
    return ":".join(str(p) for p in parts if p is not None and str(p) != "")


class RateLimiter:
    """Per-key list of request timestamps inside a trailing window.

    Invariant: after every `check`, every stored key holds at least one
    timestamp and only timestamps newer than `now - window_ms` for the window
    it was last checked with. Keys whose window has fully expired are
    dropped.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _now_ms
        self._store: Dict[str, List[int]] = {}
        self._windows: Dict[str, int] = {}

    def _recent(self, key: str, now: int, window_ms: int) -> List[int]:
        window_start = now - window_ms
        return [ts for ts in self._store.get(key, []) if ts > window_start]

    def _forget(self, key: str) -> None:
        self._store.pop(key, None)
        self._windows.pop(key, None)

    def _sweep(self, now: int) -> None:
        """Drop keys whose newest timestamp has left their window."""
        expired = [
            key for key, timestamps in self._store.items()
            if not timestamps or timestamps[-1] <= now - self._windows.get(key, DEFAULT_WINDOW_MS)
        ]
        for key in expired:
            self._forget(key)
        if expired:
            logger.debug(f"[RateLimit] Swept {len(expired)} expired keys")

    def check(
        self,
        key: str,
        window_ms: int = DEFAULT_WINDOW_MS,
        limit: int = DEFAULT_LIMIT,
    ) -> RateLimitResult:
        """Record a request under `key` if the window has room for it."""
        now = self._clock()
        self._sweep(now)
        recent = self._recent(key, now, window_ms)
        self._windows[key] = window_ms

        if len(recent) >= limit:
            reset_ms = max(0, window_ms - (now - recent[0]))
            self._store[key] = recent
            return RateLimitResult(allowed=False, remaining=0, reset_ms=reset_ms)

        recent.append(now)
        self._store[key] = recent
        return RateLimitResult(
            allowed=True,
            remaining=max(0, limit - len(recent)),
            reset_ms=window_ms,
        )

    def enforce(
        self,
        key: str,
        window_ms: int = DEFAULT_WINDOW_MS,
        limit: int = DEFAULT_LIMIT,
    ) -> RateLimitResult:
        """Like `check`, but raise RateLimitExceeded when the request is denied."""
        result = self.check(key, window_ms, limit)
        if not result.allowed:
            logger.warning(f"[RateLimit] Denied {key}: retry in {result.reset_ms}ms")
            raise RateLimitExceeded(key, result.reset_ms, limit)
        return result

    def status(
        self,
        key: str,
        window_ms: int = DEFAULT_WINDOW_MS,
        limit: int = DEFAULT_LIMIT,
    ) -> RateLimitResult:
        """Current state of `key` without recording a request."""
        now = self._clock()
        recent = self._recent(key, now, window_ms)
        if not recent:
            self._forget(key)
        if len(recent) >= limit:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_ms=max(0, window_ms - (now - recent[0])),
            )
        return RateLimitResult(allowed=True, remaining=limit - len(recent), reset_ms=window_ms)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._store.clear()
            self._windows.clear()
        else:
            self._forget(key)

    def __len__(self) -> int:
        return len(self._store)


# Global limiter instance
_rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter."""
    return _rate_limiter
