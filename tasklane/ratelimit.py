"""Per-client request rate limits for the API prefixes.

Counting is done by the ``limits`` package with a fixed window per client
address. Every rule whose prefix matches the request path is charged, so an
``/api/auth/`` request counts against both the general API budget and the
stricter auth budget.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from fastapi.responses import JSONResponse
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from starlette.types import ASGIApp, Receive, Scope, Send

from tasklane.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    prefix: str
    limit: RateLimitItem
    message: str


class RateLimiter:
    """Charges requests against the rules matching their path.

    Args:
        rules: Rules checked in order; all matching rules are charged.
        enabled: When False every request is allowed.
    """

    def __init__(self, rules: list[RateLimitRule], *, enabled: bool = True) -> None:
        self.rules = rules
        self.enabled = enabled
        self._storage = MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        window = settings.rate_limit_window_seconds
        return cls(
            [
                RateLimitRule(
                    "/api/",
                    RateLimitItemPerSecond(settings.rate_limit_max_requests, window),
                    "Too many requests from this IP, please try again later.",
                ),
                RateLimitRule(
                    "/api/auth/",
                    RateLimitItemPerSecond(settings.auth_rate_limit_max_requests, window),
                    "Too many authentication attempts, please try again later.",
                ),
            ],
            enabled=settings.rate_limit_enabled,
        )

    def check(self, path: str, client: str) -> Optional[tuple[RateLimitRule, int]]:
        """Charge one request; return the exhausted rule and seconds to wait, if any."""
        if not self.enabled:
            return None
        for rule in self.rules:
            if not path.startswith(rule.prefix):
                continue
            if not self._strategy.hit(rule.limit, rule.prefix, client):
                reset_at, _ = self._strategy.get_window_stats(rule.limit, rule.prefix, client)
                return rule, max(1, math.ceil(reset_at - time.time()))
        return None

    def reset(self) -> None:
        self._storage.reset()


class RateLimitMiddleware:
    """Answers 429 ``{error, message}`` once a client exhausts a rule."""

    def __init__(self, app: ASGIApp, limiter: RateLimiter) -> None:
        self.app = app
        self.limiter = limiter

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        client = scope["client"][0] if scope.get("client") else "unknown"
        exceeded = self.limiter.check(scope["path"], client)
        if exceeded is None:
            await self.app(scope, receive, send)
            return

        rule, retry_after = exceeded
        logger.warning("Rate limit %s exceeded by %s", rule.prefix, client)
        response = JSONResponse(
            status_code=429,
            content={"error": "Too Many Requests", "message": rule.message},
            headers={"Retry-After": str(retry_after)},
        )
        await response(scope, receive, send)
