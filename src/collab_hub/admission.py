from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock


WINDOW_SECONDS = 60.0
SESSION_CREATE_LIMIT = 5
CHAT_MESSAGE_LIMIT = 30
CONNECTION_ATTEMPT_LIMIT = 20


class RollingWindowLimiter:
    """Fixed-size rolling window counter; attempts over the limit are rejected."""

    def __init__(
        self,
        limit: int,
        *,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: deque[float] = deque()
        self._lock = Lock()

    def allow(self) -> bool:
        now = self._clock()
        with self._lock:
            self._expire_locked(now)
            if len(self._attempts) >= self.limit:
                return False
            self._attempts.append(now)
            return True

    def is_idle(self) -> bool:
        with self._lock:
            self._expire_locked(self._clock())
            return not self._attempts

    def _expire_locked(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._attempts and self._attempts[0] <= cutoff:
            self._attempts.popleft()


class KeyedRollingWindowLimiter:
    """One rolling window per key; idle keys are forgotten."""

    def __init__(
        self,
        limit: int,
        *,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._limiters: dict[str, RollingWindowLimiter] = {}
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        with self._lock:
            for stale_key in [k for k, limiter in self._limiters.items() if limiter.is_idle()]:
                del self._limiters[stale_key]
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RollingWindowLimiter(self.limit, window_seconds=self.window_seconds, clock=self._clock)
                self._limiters[key] = limiter
            return limiter.allow()

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._limiters)


def chat_limiter(clock: Callable[[], float] = time.monotonic) -> RollingWindowLimiter:
    return RollingWindowLimiter(CHAT_MESSAGE_LIMIT, clock=clock)


@dataclass
class AdmissionControl:
    """Process-wide admission counters, owned by the hub state."""

    session_creates: RollingWindowLimiter = field(
        default_factory=lambda: RollingWindowLimiter(SESSION_CREATE_LIMIT)
    )
    connection_attempts: KeyedRollingWindowLimiter = field(
        default_factory=lambda: KeyedRollingWindowLimiter(CONNECTION_ATTEMPT_LIMIT)
    )

    def allow_session_create(self) -> bool:
        return self.session_creates.allow()

    def allow_connection(self, source: str) -> bool:
        return self.connection_attempts.allow(source or "unknown")
