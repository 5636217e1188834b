"""
Unit tests for the fixed-window rate limiter.
"""

import pytest
from unittest.mock import MagicMock

from service_cdn.app.ratelimit.fixed_window import (
    DEFAULT_LIMITS,
    FixedWindowRateLimiter,
    RateLimitMiddleware,
)


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFixedWindowRateLimiter:
    """Test cases for FixedWindowRateLimiter."""

    @pytest.fixture
    def clock(self):
        # 10 seconds into a minute-aligned window
        return FakeClock(6000.0 + 10)

    @pytest.fixture
    def rate_limiter(self, clock):
        """Create a limiter with small budgets."""
        return FixedWindowRateLimiter(
            {"upload": (60, 3), "download": (60, 5), "api": (300, 2)},
            clock=clock,
        )

    def test_default_limits(self):
        """Test the default budgets per route class."""
        limiter = FixedWindowRateLimiter()
        assert limiter.rules["upload"].window_seconds == 900
        assert limiter.rules["upload"].max_requests == 20
        assert limiter.rules["download"].window_seconds == 60
        assert limiter.rules["download"].max_requests == 200
        assert limiter.rules["api"].max_requests == 100
        assert set(DEFAULT_LIMITS) == {"upload", "download", "api"}

    def test_check_rate_limit_allowed(self, rate_limiter):
        """Test requests within the budget are allowed."""
        result = rate_limiter.check_rate_limit("10.0.0.1", "upload")

        assert result["allowed"] is True
        assert result["current_count"] == 1
        assert result["limit"] == 3
        assert result["remaining"] == 2
        assert result["reset_in_seconds"] == 50

    def test_check_rate_limit_exceeded(self, rate_limiter):
        """Test the request after the budget is rejected."""
        for _ in range(3):
            assert rate_limiter.check_rate_limit("10.0.0.1", "upload")["allowed"] is True

        result = rate_limiter.check_rate_limit("10.0.0.1", "upload")

        assert result["allowed"] is False
        assert result["remaining"] == 0
        assert result["retry_after"] == 50
        assert result["current_count"] == 3

    def test_rejected_requests_are_not_counted(self, rate_limiter):
        """Test rejections do not push the counter further."""
        results = [rate_limiter.check_rate_limit("10.0.0.1", "upload") for _ in range(5)]

        assert [result["current_count"] for result in results] == [1, 2, 3, 3, 3]

    def test_window_resets_on_boundary(self, rate_limiter, clock):
        """Test counters reset when the next window opens."""
        for _ in range(3):
            rate_limiter.check_rate_limit("10.0.0.1", "upload")
        assert rate_limiter.check_rate_limit("10.0.0.1", "upload")["allowed"] is False

        clock.now = 6060.0

        result = rate_limiter.check_rate_limit("10.0.0.1", "upload")
        assert result["allowed"] is True
        assert result["current_count"] == 1
        assert result["reset_in_seconds"] == 60

    def test_limit_types_are_independent(self, rate_limiter):
        """Test each route class has its own counter."""
        for _ in range(3):
            rate_limiter.check_rate_limit("10.0.0.1", "upload")

        assert rate_limiter.check_rate_limit("10.0.0.1", "download")["allowed"] is True
        assert rate_limiter.check_rate_limit("10.0.0.1", "api")["allowed"] is True

    def test_clients_are_independent(self, rate_limiter):
        """Test one client's usage does not affect another."""
        for _ in range(3):
            rate_limiter.check_rate_limit("10.0.0.1", "upload")

        assert rate_limiter.check_rate_limit("10.0.0.2", "upload")["allowed"] is True

    def test_unknown_limit_type(self, rate_limiter):
        """Test an unknown route class is a programming error."""
        with pytest.raises(ValueError):
            rate_limiter.check_rate_limit("10.0.0.1", "bulk")

    def test_prune_drops_closed_windows(self, rate_limiter, clock):
        """Test pruning forgets counters from past windows."""
        rate_limiter.check_rate_limit("10.0.0.1", "upload")
        rate_limiter.check_rate_limit("10.0.0.1", "api")

        clock.now = 6070.0

        assert rate_limiter.prune() == 1
        assert rate_limiter.check_rate_limit("10.0.0.1", "api")["current_count"] == 2

    def test_rejection_metric(self, clock):
        """Test rejections are counted per route class."""
        metrics = MagicMock()
        limiter = FixedWindowRateLimiter({"upload": (60, 1)}, clock=clock, metrics=metrics)

        limiter.check_rate_limit("10.0.0.1", "upload")
        limiter.check_rate_limit("10.0.0.1", "upload")

        metrics.increment_counter.assert_called_once_with("rate_limit_hits_total", limit_type="upload")


class TestRateLimitMiddleware:
    """Test cases for RateLimitMiddleware."""

    @pytest.fixture
    def rate_limiter(self):
        return FixedWindowRateLimiter({"api": (60, 2)}, clock=FakeClock(0.0))

    @pytest.fixture
    def mock_request(self):
        """Mock FastAPI Request object."""
        request = MagicMock()
        request.client.host = "127.0.0.1"
        request.headers = {}
        return request

    def test_client_id_from_socket(self, rate_limiter, mock_request):
        """Test the peer address is used by default."""
        middleware = RateLimitMiddleware(rate_limiter)
        assert middleware.get_client_id(mock_request) == "127.0.0.1"

    def test_forwarded_headers_ignored_by_default(self, rate_limiter, mock_request):
        """Test forwarded headers cannot spoof identity unless trusted."""
        mock_request.headers = {"X-Forwarded-For": "203.0.113.9"}
        middleware = RateLimitMiddleware(rate_limiter)

        assert middleware.get_client_id(mock_request) == "127.0.0.1"

    def test_forwarded_for_when_trusted(self, rate_limiter, mock_request):
        """Test the first X-Forwarded-For hop is used when trusted."""
        mock_request.headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
        middleware = RateLimitMiddleware(rate_limiter, trust_forwarded_headers=True)

        assert middleware.get_client_id(mock_request) == "203.0.113.9"

    def test_real_ip_when_trusted(self, rate_limiter, mock_request):
        """Test X-Real-IP is used when no X-Forwarded-For is present."""
        mock_request.headers = {"X-Real-IP": "198.51.100.7"}
        middleware = RateLimitMiddleware(rate_limiter, trust_forwarded_headers=True)

        assert middleware.get_client_id(mock_request) == "198.51.100.7"

    def test_unknown_client(self, rate_limiter, mock_request):
        """Test requests without a peer share the unknown bucket."""
        mock_request.client = None
        middleware = RateLimitMiddleware(rate_limiter)

        assert middleware.get_client_id(mock_request) == "unknown"

    def test_check_request(self, rate_limiter, mock_request):
        """Test request checks are tagged with their route class."""
        middleware = RateLimitMiddleware(rate_limiter)

        first = middleware.check_request(mock_request, "api")
        middleware.check_request(mock_request, "api")
        third = middleware.check_request(mock_request, "api")

        assert first["allowed"] is True
        assert first["limit_type"] == "api"
        assert third["allowed"] is False
