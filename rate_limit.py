import threading
import time
from collections import namedtuple
from functools import wraps

from flask import current_app, jsonify, request

from audit import log_event

RateLimitResult = namedtuple("RateLimitResult", ["allowed", "limit", "remaining", "reset"])

DEFAULT_MAX_ENTRIES = 10000


class RateLimiter:
    """
    Fixed-window request counter keyed by (client, route).

    Owned by the Flask app (app.extensions["rate_limiter"]) rather than a module
    global. Expired windows are purged and the store never grows past
    max_entries; when full, the entry whose window resets first is evicted.
    """

    def __init__(self, max_entries=DEFAULT_MAX_ENTRIES, clock=time.time):
        self.max_entries = max_entries
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def _purge_expired(self, now):
        expired = [key for key, (_, reset) in self._entries.items() if now > reset]
        for key in expired:
            del self._entries[key]

    def hit(self, key, limit, window):
        """Counts one request for key and reports whether it is within limit."""
        with self._lock:
            now = self.clock()
            count, reset = self._entries.get(key, (0, now + window))
            if now > reset:
                count, reset = 0, now + window

            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._purge_expired(now)
                if len(self._entries) >= self.max_entries:
                    oldest = min(self._entries, key=lambda k: self._entries[k][1])
                    del self._entries[oldest]

            count += 1
            self._entries[key] = (count, reset)

        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset=int(reset * 1000),
        )

    def reset(self):
        with self._lock:
            self._entries.clear()


def init_rate_limiter(app, limiter=None):
    app.extensions["rate_limiter"] = limiter or RateLimiter()
    return app.extensions["rate_limiter"]


def rate_limited(limit, window=60):
    """View decorator: at most `limit` requests per client per route per `window` seconds."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            limiter = current_app.extensions["rate_limiter"]
            result = limiter.hit((request.remote_addr, request.path), limit, window)
            headers = {
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": str(result.remaining),
                "X-RateLimit-Reset": str(result.reset),
            }
            if not result.allowed:
                log_event("rate_limit_block", {"path": request.path})
                response = jsonify({"error": "Too many requests"})
                response.status_code = 429
            else:
                response = current_app.make_response(view(*args, **kwargs))
            response.headers.extend(headers)
            return response
        return wrapped
    return decorator
