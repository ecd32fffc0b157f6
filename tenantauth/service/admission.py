from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Protocol, Tuple, Union

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.errors import RateLimitedError

logger = get_logger(__name__)

AUTH_POLICY = "auth"
STRICT_POLICY = "strict"
DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class CounterStore(Protocol):
    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, float]: ...


class MemoryCounterStore:
    """Per-process sliding-window log; also the fallback when Redis is down."""

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    async def hit(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, float]:
        with self._lock:
            log = self._hits.setdefault(key, deque())
            cutoff = now - window_seconds
            while log and log[0] <= cutoff:
                log.popleft()
            if len(log) >= limit:
                return False, len(log), log[0] + window_seconds - now
            log.append(now)
            return True, len(log), 0.0

    async def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)


class AdmissionController:
    """Sliding-window rate limiting in front of the authentication flows.

    Counters live in ``store`` (Redis in production). If the store raises,
    the failure is logged and the decision is taken by the in-process
    fallback so an unavailable Redis never blocks logins.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[CounterStore] = None,
        *,
        fallback: Optional[MemoryCounterStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.fallback = fallback or MemoryCounterStore()
        self.store: CounterStore = store or self.fallback
        self.clock = clock or SystemClock()
        self.policies: Dict[str, RatePolicy] = {
            AUTH_POLICY: RatePolicy(
                AUTH_POLICY,
                settings.rate_limit_max_requests,
                settings.rate_limit_window_seconds,
            ),
            STRICT_POLICY: RatePolicy(
                STRICT_POLICY,
                settings.strict_rate_limit_max_requests,
                settings.strict_rate_limit_window_seconds,
            ),
        }

    def policy(self, name: str) -> RatePolicy:
        try:
            return self.policies[name]
        except KeyError as exc:
            raise ValueError(f"unknown rate limit policy: {name}") from exc

    async def check(
        self, policy: Union[str, RatePolicy], caller_key: str
    ) -> AdmissionDecision:
        if isinstance(policy, str):
            policy = self.policy(policy)
        if policy.limit <= 0:
            return AdmissionDecision(allowed=True, limit=policy.limit, remaining=policy.limit)
        window_seconds = policy.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=policy.name,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        key = f"{policy.name}:{caller_key}"
        now = self.clock.now().timestamp()
        try:
            allowed, count, retry = await self.store.hit(
                key, policy.limit, window_seconds, now
            )
        except Exception as exc:
            logger.warning(
                "admission_store_unavailable",
                policy=policy.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            allowed, count, retry = await self.fallback.hit(
                key, policy.limit, window_seconds, now
            )
        return AdmissionDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            retry_after=0 if allowed else max(1, math.ceil(retry)),
        )

    async def admit(
        self, policy: Union[str, RatePolicy], caller_key: str
    ) -> AdmissionDecision:
        """Count the request and raise RateLimitedError once the window is full."""
        decision = await self.check(policy, caller_key)
        if not decision.allowed:
            name = policy if isinstance(policy, str) else policy.name
            logger.info(
                "rate_limited",
                policy=name,
                caller_key=caller_key,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                "Too many requests, please try again later",
                retry_after=decision.retry_after,
            )
        return decision
