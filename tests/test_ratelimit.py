# tests/test_ratelimit.py
"""
Unit tests for v402 intent rate limiting.
"""
import threading
import time
from unittest.mock import patch

from v402.gateway.ratelimit import RateLimiter, get_rate_limit_headers


class TestRateLimiter:
    """Test the RateLimiter class."""

    def test_init_with_custom_limit(self):
        """Initialize with custom rate limit."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)
        assert limiter.max_requests == 5
        assert limiter.window_seconds == 60

    @patch("v402.gateway.ratelimit.settings")
    def test_init_from_config(self, mock_settings):
        """Initialize from config when no limit specified."""
        mock_settings.V402_INTENT_RATE_LIMIT = 15
        mock_settings.V402_INTENT_RATE_WINDOW_SECONDS = 30
        limiter = RateLimiter()
        assert limiter.max_requests == 15
        assert limiter.window_seconds == 30

    def test_requests_under_limit_allowed(self):
        """Requests under the limit are allowed."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        for i in range(5):
            is_limited, count, limit = limiter.is_rate_limited("192.168.1.1")
            assert is_limited is False
            assert count == i + 1
            assert limit == 5

    def test_requests_over_limit_blocked(self):
        """Requests over the limit are blocked."""
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        for _ in range(3):
            limiter.is_rate_limited("192.168.1.1")

        is_limited, count, limit = limiter.is_rate_limited("192.168.1.1")
        assert is_limited is True
        assert count == 3
        assert limit == 3

    def test_different_keys_tracked_separately(self):
        """Different callers have separate windows."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        limiter.is_rate_limited("192.168.1.1")
        assert limiter.is_rate_limited("192.168.1.1")[0] is True
        assert limiter.is_rate_limited("192.168.1.2")[0] is False

    def test_window_expiry(self):
        """Requests expire after the window passes."""
        limiter = RateLimiter(max_requests=1, window_seconds=1)

        limiter.is_rate_limited("192.168.1.1")
        assert limiter.is_rate_limited("192.168.1.1")[0] is True

        time.sleep(1.1)

        is_limited, count, _ = limiter.is_rate_limited("192.168.1.1")
        assert is_limited is False
        assert count == 1

    def test_unknown_key_not_limited(self):
        """Unknown callers are not tracked."""
        limiter = RateLimiter(max_requests=0, window_seconds=60)

        assert limiter.is_rate_limited("unknown") == (False, 0, 0)
        assert limiter.is_rate_limited("")[0] is False

    def test_zero_limit(self):
        """Zero limit blocks all intents."""
        limiter = RateLimiter(max_requests=0, window_seconds=60)
        assert limiter.is_rate_limited("192.168.1.1")[0] is True

    def test_retry_after(self):
        """retry_after covers the remaining window."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        assert limiter.retry_after("192.168.1.1") == 0

        limiter.is_rate_limited("192.168.1.1")
        assert 1 <= limiter.retry_after("192.168.1.1") <= 61

    def test_get_client_stats(self):
        """Stats report usage and remaining allowance."""
        limiter = RateLimiter(max_requests=10, window_seconds=60)
        for _ in range(3):
            limiter.is_rate_limited("192.168.1.1")

        stats = limiter.get_client_stats("192.168.1.1")
        assert stats["client_key"] == "192.168.1.1"
        assert stats["requests_in_window"] == 3
        assert stats["remaining"] == 7

    def test_reset_client(self):
        """Reset tracking for a specific client."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_rate_limited("192.168.1.1")

        limiter.reset_client("192.168.1.1")
        limiter.reset_client("10.0.0.1")

        assert limiter.is_rate_limited("192.168.1.1") == (False, 1, 1)

    def test_reset_all(self):
        """Reset all tracking."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_rate_limited("192.168.1.1")
        limiter.is_rate_limited("192.168.1.2")

        limiter.reset_all()

        assert limiter.is_rate_limited("192.168.1.1")[0] is False
        assert limiter.is_rate_limited("192.168.1.2")[0] is False


class TestCleanup:
    """Test eviction of idle callers."""

    def test_cleanup_evicts_expired(self):
        """Callers with no live requests are dropped."""
        limiter = RateLimiter(max_requests=5, window_seconds=1)
        limiter.is_rate_limited("192.168.1.1")
        time.sleep(1.1)
        limiter.is_rate_limited("192.168.1.2")

        assert limiter.cleanup() == 1
        assert limiter.get_client_stats("192.168.1.2")["requests_in_window"] == 1

    def test_start_stop(self):
        """The cleanup thread can be started and stopped."""
        limiter = RateLimiter(max_requests=5, window_seconds=60, cleanup_interval=0.05)
        limiter.start()
        limiter.start()
        assert limiter.running is True

        limiter.stop()
        assert limiter.running is False

    def test_background_cleanup(self):
        """The background thread evicts idle callers."""
        limiter = RateLimiter(max_requests=5, window_seconds=1, cleanup_interval=0.1)
        limiter.is_rate_limited("192.168.1.1")
        limiter.start()
        try:
            time.sleep(1.5)
            assert "192.168.1.1" not in limiter._windows
        finally:
            limiter.stop()


class TestGetRateLimitHeaders:
    """Test rate limit header generation."""

    def test_generate_headers(self):
        """Generate rate limit headers from stats."""
        headers = get_rate_limit_headers({"limit": 10, "remaining": 7, "window_seconds": 60})

        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "7"
        assert headers["X-RateLimit-Reset"] == "60"

    def test_generate_headers_empty_stats(self):
        """Generate headers from empty stats."""
        headers = get_rate_limit_headers({})

        assert headers["X-RateLimit-Limit"] == "0"
        assert headers["X-RateLimit-Reset"] == "60"


class TestConcurrency:
    """Test thread safety."""

    def test_concurrent_requests(self):
        """Exactly the limit is admitted under concurrent load."""
        limiter = RateLimiter(max_requests=50, window_seconds=60)
        results = []
        lock = threading.Lock()

        def make_request():
            for _ in range(10):
                is_limited, _, _ = limiter.is_rate_limited("192.168.1.1")
                with lock:
                    results.append(is_limited)

        threads = [threading.Thread(target=make_request) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 100
        assert results.count(False) == 50
