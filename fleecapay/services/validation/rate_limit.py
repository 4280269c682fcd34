"""Fixed-window rate limiter for payment callbacks."""

import hashlib

import redis

from fleecapay.common.config import settings
from fleecapay.common.logging import logger
from fleecapay.common.metrics import rate_limit_rejections_total, rate_limit_storage_errors_total


def actor_identity(user_id: str | None, remote_addr: str | None) -> str:
    """Authenticated user id when present, else a hash of the network address."""

    if user_id:
        return f"user_{user_id}"
    digest = hashlib.sha256((remote_addr or "unknown").encode("utf-8")).hexdigest()[:32]
    return f"ip_{digest}"


class RateLimiter:
    """Per actor+action counter in Redis with a fixed window.

    The window starts at the first attempt and is not extended by later ones.
    """

    def __init__(
        self,
        client: redis.Redis,
        limit: int | None = None,
        window_seconds: int | None = None,
        overrides: dict[str, int] | None = None,
        service_name: str | None = None,
    ) -> None:
        self.client = client
        self.limit = limit if limit is not None else settings.callback_rate_limit
        self.window_seconds = window_seconds if window_seconds is not None else settings.rate_limit_window_seconds
        self.overrides = dict(overrides if overrides is not None else settings.callback_rate_limit_overrides)
        self.service_name = service_name or settings.service_name

    def limit_for(self, action: str) -> int:
        return self.overrides.get(action, self.limit)

    def allow(self, actor_id: str, action: str) -> bool:
        """Count one attempt; False once the window's limit is exceeded."""

        key = f"fleeca:rate:{action}:{actor_id}"
        try:
            # NX+EX opens the window exactly once; INCR keeps the existing TTL.
            self.client.set(key, 0, ex=self.window_seconds, nx=True)
            current = int(self.client.incr(key))
        except redis.RedisError as exc:
            logger.warning("rate_limit_storage_error action=%s error=%s", action, exc)
            rate_limit_storage_errors_total.labels(service=self.service_name).inc()
            return True  # Fail open - allow the callback if Redis is down
        if current > self.limit_for(action):
            logger.warning("rate_limited action=%s actor=%s attempts=%s", action, actor_id, current)
            rate_limit_rejections_total.labels(service=self.service_name, action=action).inc()
            return False
        return True
