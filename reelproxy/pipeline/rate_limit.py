"""
ReelProxy — Per-IP Sliding Window Rate Limiter
===============================================

What:  Caps how many requests one client IP may send per window.
How:   Tracks request timestamps per IP in memory.

Algorithm: Sliding Window Log
    1. Each IP gets a list of request timestamps
    2. On each request, remove timestamps older than the window
    3. If remaining count >= limit, reject with 429
    4. Otherwise, add current timestamp and allow through

    Space complexity: O(n × k) where n = unique IPs, k = requests per IP

Scope:
    Single process. With several workers each one enforces the limit
    independently.
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List

from reelproxy.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    In-memory sliding window rate limiter.

    Args:
        max_requests: Requests allowed per window
        window:       Window length in seconds
        clock:        Time source (injectable for tests)
    """

    # Inactive IPs are purged every this many recorded requests
    CLEANUP_EVERY = 1000

    def __init__(
        self,
        max_requests: int = 100,
        window: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: Dict[str, List[float]] = defaultdict(list)
        self._recorded = 0

    def check(self, client_ip: str) -> None:
        """
        Record one request for client_ip.

        Raises:
            RateLimitExceededError: The IP already used its quota for the window.
        """
        now = self._clock()
        window_start = now - self.window

        # ── Sliding Window: Clean old entries ─────────────────────────────
        recent = [ts for ts in self._requests[client_ip] if ts > window_start]
        self._requests[client_ip] = recent

        # ── Check rate limit ──────────────────────────────────────────────
        if len(recent) >= self.max_requests:
            retry_after = int(recent[0] + self.window - now) + 1
            logger.warning(
                "Rate limit exceeded for IP %s: %d requests in %ss window",
                client_ip,
                len(recent),
                self.window,
            )
            raise RateLimitExceededError(retry_after=retry_after)

        # ── Record this request ───────────────────────────────────────────
        recent.append(now)
        self._recorded += 1

        if self._recorded % self.CLEANUP_EVERY == 0:
            self._cleanup_inactive_ips(window_start)

    def _cleanup_inactive_ips(self, window_start: float) -> None:
        """Remove IPs that have no requests within the current window."""
        inactive_ips = [
            ip for ip, timestamps in self._requests.items()
            if not timestamps or timestamps[-1] <= window_start
        ]
        for ip in inactive_ips:
            del self._requests[ip]

        if inactive_ips:
            logger.debug("Cleaned up %d inactive IP entries", len(inactive_ips))

    def tracked_ips(self) -> int:
        return len(self._requests)
