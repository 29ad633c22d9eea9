# core/rate_limiter.py

import time
from collections import deque
from typing import Callable, Deque

from cachetools import TTLCache


class RateLimiter:
    """
    Sliding-window limiter: at most `max_requests` per `window` seconds
    per client id. `max_requests <= 0` disables limiting.

    Per-client timestamps live in a TTLCache whose ttl equals the window,
    so a client idle for a full window is dropped on the next write and
    at most `max_clients` clients are tracked at once.
    """

    def __init__(self, max_requests: int = 60, window: float = 60.0,
                 max_clients: int = 10000,
                 timer: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._timer = timer
        self._requests: TTLCache = TTLCache(maxsize=max_clients, ttl=window, timer=timer)

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    @property
    def tracked_clients(self) -> int:
        self._requests.expire()
        return len(self._requests)

    def is_allowed(self, client_id: str) -> bool:
        if not self.enabled:
            return True
        now = self._timer()
        client_reqs: Deque[float] = self._requests.get(client_id) or deque()
        while client_reqs and now - client_reqs[0] >= self.window:
            client_reqs.popleft()

        if len(client_reqs) >= self.max_requests:
            return False

        client_reqs.append(now)
        # Re-inserting restarts the entry's ttl from this request
        self._requests[client_id] = client_reqs
        return True

    def retry_after(self, client_id: str) -> int:
        """Whole seconds until the oldest request in the window expires."""
        client_reqs = self._requests.get(client_id)
        if not client_reqs:
            return 0
        remaining = self.window - (self._timer() - client_reqs[0])
        return max(1, int(remaining + 0.999))
