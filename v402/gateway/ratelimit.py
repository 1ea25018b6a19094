# v402/gateway/ratelimit.py
"""
Rate limiting for v402 intent creation.

Uses a sliding window per caller key (client IP by default) with in-memory
storage. Only the creation of new payment intents is limited; paid retries
and replays are not.

Configuration:
- V402_INTENT_RATE_LIMIT: Maximum intents per window per caller (default: 60)
- V402_INTENT_RATE_WINDOW_SECONDS: Window size in seconds (default: 60)

The limiter is an injected object. start() launches a daemon thread that
evicts idle callers; stop() ends it.
"""
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from v402.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    """Stores request timestamps for a single caller within the sliding window."""
    requests: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)


class RateLimiter:
    """
    In-memory sliding window rate limiter.

    Thread-safe for concurrent access.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        cleanup_interval: float = 300.0,
    ):
        """
        Initialize the rate limiter.

        Args:
            max_requests: Max requests allowed per window. If None, uses config.
            window_seconds: Size of the sliding window in seconds. If None, uses config.
            cleanup_interval: Seconds between background evictions of idle callers.
        """
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._cleanup_interval = cleanup_interval
        self._windows: Dict[str, RateLimitWindow] = defaultdict(RateLimitWindow)
        self._windows_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def max_requests(self) -> int:
        """Get the rate limit (lazy load from settings if not set)."""
        if self._max_requests is not None:
            return self._max_requests
        return settings.V402_INTENT_RATE_LIMIT

    @property
    def window_seconds(self) -> int:
        if self._window_seconds is not None:
            return self._window_seconds
        return settings.V402_INTENT_RATE_WINDOW_SECONDS

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background cleanup thread. Calling start twice is a no-op."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop,
            name="v402-ratelimit-cleanup",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Rate limiter cleanup thread started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the cleanup thread and wait for it to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("Rate limiter cleanup thread stopped")

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self._cleanup_interval):
            self.cleanup()

    def is_rate_limited(self, client_key: str) -> Tuple[bool, int, int]:
        """
        Check whether a caller is rate limited, recording the request if not.

        Args:
            client_key: Caller key, usually the client IP

        Returns:
            Tuple of (is_limited, requests_made, limit)
        """
        limit = self.max_requests
        if not client_key or client_key == "unknown":
            # Unknown callers are not tracked
            return (False, 0, limit)

        now = time.time()
        window_start = now - self.window_seconds

        with self._windows_lock:
            window = self._windows[client_key]

        with window.lock:
            window.requests = [ts for ts in window.requests if ts > window_start]
            requests_in_window = len(window.requests)

            if requests_in_window >= limit:
                logger.warning(
                    f"Rate limit exceeded for {client_key}: "
                    f"{requests_in_window}/{limit} intents in {self.window_seconds}s"
                )
                return (True, requests_in_window, limit)

            window.requests.append(now)
            return (False, requests_in_window + 1, limit)

    def retry_after(self, client_key: str) -> int:
        """Seconds until the oldest request in the caller's window expires."""
        with self._windows_lock:
            window = self._windows.get(client_key)
        if window is None:
            return 0
        with window.lock:
            if not window.requests:
                return 0
            oldest = min(window.requests)
        return max(1, int(oldest + self.window_seconds - time.time()) + 1)

    def get_client_stats(self, client_key: str) -> Dict[str, Any]:
        """Current request count, limit and window for a caller."""
        window_start = time.time() - self.window_seconds
        with self._windows_lock:
            window = self._windows.get(client_key)

        requests_in_window = 0
        if window is not None:
            with window.lock:
                requests_in_window = len([ts for ts in window.requests if ts > window_start])

        return {
            "client_key": client_key,
            "requests_in_window": requests_in_window,
            "limit": self.max_requests,
            "window_seconds": self.window_seconds,
            "remaining": max(0, self.max_requests - requests_in_window),
        }

    def reset_client(self, client_key: str) -> None:
        with self._windows_lock:
            window = self._windows.get(client_key)
        if window is not None:
            with window.lock:
                window.requests.clear()
            logger.debug(f"Reset rate limit for {client_key}")

    def reset_all(self) -> None:
        """Reset all rate limit tracking."""
        with self._windows_lock:
            self._windows.clear()
        logger.info("Reset all rate limits")

    def cleanup(self) -> int:
        """
        Drop callers with no requests left in the window.

        Returns:
            Number of evicted callers
        """
        window_start = time.time() - self.window_seconds
        stale = []
        with self._windows_lock:
            for key, window in self._windows.items():
                with window.lock:
                    window.requests = [ts for ts in window.requests if ts > window_start]
                    if not window.requests:
                        stale.append(key)
            for key in stale:
                del self._windows[key]

        if stale:
            logger.debug(f"Cleaned up {len(stale)} stale rate limit entries")
        return len(stale)


def get_rate_limit_headers(stats: Dict[str, Any]) -> Dict[str, str]:
    """
    Generate rate limit headers for HTTP responses.

    Args:
        stats: Statistics from RateLimiter.get_client_stats

    Returns:
        Dict of HTTP headers to add to the response
    """
    return {
        "X-RateLimit-Limit": str(stats.get("limit", 0)),
        "X-RateLimit-Remaining": str(stats.get("remaining", 0)),
        "X-RateLimit-Reset": str(stats.get("window_seconds", 60)),
    }
