"""
Sensitive-Operation Rate Limiter.

Fixed window per key: the first attempt opens a window of `window_seconds`
with count=1; attempts inside the window increment the count until it
reaches max_attempts, after which attempts are denied (count unchanged)
until the window ends. The first attempt at or after reset_at opens a new
window.

Keys are (subject, operation) so the same user is throttled separately
for login and password reset. Subjects are user ids, or client addresses
for anonymous callers.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Hashable, Mapping, Optional, Tuple

from crowdtest.domain.errors import RateLimitedError

logger = logging.getLogger(__name__)


class SensitiveOperation(Enum):
    """Operations throttled by default."""
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    SESSION_START = "session_start"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: float

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


DEFAULT_POLICIES: Dict[SensitiveOperation, RateLimitPolicy] = {
    SensitiveOperation.LOGIN: RateLimitPolicy(5, 15 * 60),
    SensitiveOperation.PASSWORD_RESET: RateLimitPolicy(3, 60 * 60),
    SensitiveOperation.PASSWORD_CHANGE: RateLimitPolicy(5, 60 * 60),
    SensitiveOperation.SESSION_START: RateLimitPolicy(10, 60 * 60),
}


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one attempt.

    Attributes:
        allowed: Whether the attempt may proceed
        remaining: Attempts left in the current window
        retry_after: Seconds until a new window opens (0 when allowed)
        reset_at: Clock reading at which the current window ends
    """

    allowed: bool
    remaining: int
    retry_after: float
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    Thread-safe fixed-window attempt counter.

    Usage:
        limiter = FixedWindowRateLimiter()

        # Raw key and budget
        decision = limiter.allow(("user-1", "login"), max_attempts=3, window_seconds=60)

        # Configured policy, raising RateLimitedError when denied
        limiter.check("user-1", SensitiveOperation.LOGIN)
    """

    def __init__(
        self,
        policies: Optional[Mapping[SensitiveOperation, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ):
        """
        Args:
            policies: Per-operation budgets, merged over DEFAULT_POLICIES
            clock: Monotonic seconds source, injectable for tests
            prune_every: Drop ended windows after this many allow() calls
        """
        self._policies: Dict[SensitiveOperation, RateLimitPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock
        self._windows: Dict[Hashable, _Window] = {}
        self._lock = threading.Lock()
        self._prune_every = max(prune_every, 1)
        self._calls_since_prune = 0

    @classmethod
    def from_config(
        cls,
        rate_limits: Mapping[str, Tuple[int, float]],
        clock: Callable[[], float] = time.monotonic,
    ) -> "FixedWindowRateLimiter":
        """Build from the config's operation -> (max_attempts, window_seconds) map."""
        policies = {
            SensitiveOperation(name): RateLimitPolicy(int(attempts), float(window))
            for name, (attempts, window) in rate_limits.items()
        }
        return cls(policies=policies, clock=clock)

    def policy_for(self, operation: SensitiveOperation) -> RateLimitPolicy:
        return self._policies[operation]

    def allow(self, key: Hashable, max_attempts: int, window_seconds: float) -> RateLimitDecision:
        """
        Record one attempt for `key` and decide whether it may proceed.

        Args:
            key: Throttling key, normally (subject, operation)
            max_attempts: Attempts allowed per window
            window_seconds: Window length

        Returns:
            RateLimitDecision
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        with self._lock:
            now = self._clock()
            self._calls_since_prune += 1
            if self._calls_since_prune >= self._prune_every:
                self._prune_locked(now)
            window = self._windows.get(key)

            if window is None or now >= window.reset_at:
                window = _Window(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
                return RateLimitDecision(True, max_attempts - 1, 0.0, window.reset_at)

            if window.count >= max_attempts:
                return RateLimitDecision(False, 0, window.reset_at - now, window.reset_at)

            window.count += 1
            return RateLimitDecision(True, max_attempts - window.count, 0.0, window.reset_at)

    def check(self, subject: str, operation: SensitiveOperation) -> RateLimitDecision:
        """
        Record an attempt against the operation's configured policy.

        Raises:
            RateLimitedError: If the attempt is denied
        """
        policy = self._policies[operation]
        decision = self.allow((subject, operation.value), policy.max_attempts, policy.window_seconds)
        if not decision.allowed:
            logger.warning(
                f"Rate limit hit for {operation.value} by {subject}; "
                f"retry in {decision.retry_after:.0f}s"
            )
            raise RateLimitedError(retry_after=decision.retry_after)
        return decision

    def reset(self, key: Hashable) -> None:
        """Forget one key (e.g. after a successful login)."""
        with self._lock:
            self._windows.pop(key, None)

    def prune(self) -> int:
        """
        Drop windows that have ended.

        Returns:
            Number of windows removed
        """
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        self._calls_since_prune = 0
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate limit windows")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
