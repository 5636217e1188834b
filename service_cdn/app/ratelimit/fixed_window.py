"""
Fixed-window rate limiter for the CDN gateway.

Counters live in process memory and reset on wall-clock window boundaries.
Nothing is shared across processes.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from fastapi import Request

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_LIMITS: Dict[str, Tuple[float, int]] = {
    "upload": (15 * 60, 20),
    "download": (60, 200),
    "api": (15 * 60, 100),
}

MAX_TRACKED_WINDOWS = 10000


@dataclass(frozen=True)
class RateLimitRule:
    window_seconds: float
    max_requests: int


class FixedWindowRateLimiter:
    """Per-client request counters, one independent window per limit type."""

    def __init__(
        self,
        limits: Optional[Dict[str, Tuple[float, int]]] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.logger = get_logger("cdn.rate_limiter")
        self.metrics = metrics
        self._clock = clock
        self.rules: Dict[str, RateLimitRule] = {
            name: RateLimitRule(float(window), int(max_requests))
            for name, (window, max_requests) in (limits or DEFAULT_LIMITS).items()
        }
        # (client_id, limit_type) -> (window_start, count)
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}

    def _rule(self, limit_type: str) -> RateLimitRule:
        try:
            return self.rules[limit_type]
        except KeyError:
            raise ValueError(f"Unknown rate limit type: {limit_type}") from None

    def _window_start(self, rule: RateLimitRule, now: float) -> float:
        return math.floor(now / rule.window_seconds) * rule.window_seconds

    def check_rate_limit(self, client_id: str, limit_type: str) -> Dict[str, Any]:
        """Count one request and report whether it is within the window budget."""
        rule = self._rule(limit_type)
        now = self._clock()
        window_start = self._window_start(rule, now)
        reset_in = max(1, int(math.ceil(window_start + rule.window_seconds - now)))

        key = (client_id, limit_type)
        stored_start, count = self._windows.get(key, (window_start, 0))
        if stored_start != window_start:
            count = 0

        if count >= rule.max_requests:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                limit_type=limit_type,
                current_count=count,
                limit=rule.max_requests
            )
            if self.metrics:
                self.metrics.increment_counter("rate_limit_hits_total", limit_type=limit_type)
            return {
                "allowed": False,
                "current_count": count,
                "limit": rule.max_requests,
                "remaining": 0,
                "reset_in_seconds": reset_in,
                "retry_after": reset_in
            }

        if len(self._windows) >= MAX_TRACKED_WINDOWS and key not in self._windows:
            self.prune()

        count += 1
        self._windows[key] = (window_start, count)
        return {
            "allowed": True,
            "current_count": count,
            "limit": rule.max_requests,
            "remaining": max(0, rule.max_requests - count),
            "reset_in_seconds": reset_in
        }

    def prune(self) -> int:
        """Forget counters whose window has already closed."""
        now = self._clock()
        stale = [
            key for key, (window_start, _) in self._windows.items()
            if window_start != self._window_start(self._rule(key[1]), now)
        ]
        for key in stale:
            del self._windows[key]
        return len(stale)


class RateLimitMiddleware:
    """Maps requests to client identities and checks them against the limiter."""

    def __init__(self, rate_limiter: FixedWindowRateLimiter, trust_forwarded_headers: bool = False):
        self.rate_limiter = rate_limiter
        self.trust_forwarded_headers = trust_forwarded_headers
        self.logger = get_logger("cdn.rate_limit_middleware")

    def check_request(self, request: Request, limit_type: str) -> Dict[str, Any]:
        """Check rate limit for request."""
        client_id = self.get_client_id(request)
        result = self.rate_limiter.check_rate_limit(client_id, limit_type)
        result["limit_type"] = limit_type
        return result

    def get_client_id(self, request: Request) -> str:
        """Extract client ID from request."""
        if self.trust_forwarded_headers:
            forwarded_for = request.headers.get('X-Forwarded-For')
            if isinstance(forwarded_for, str) and forwarded_for:
                return forwarded_for.split(',')[0].strip()

            real_ip = request.headers.get('X-Real-IP')
            if isinstance(real_ip, str) and real_ip:
                return real_ip

        return request.client.host if request.client else 'unknown'
