"""Request gate: identity, rate limiting and content screening.

Runs in front of chat handlers. Identity is soft; the rate limit and the
content screen are hard rejections.
"""
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from starlette.requests import Request

from tripp.errors import ContentRejected, RateLimitExceeded
from tripp.identity import Identity, IdentityResolver, client_ip
from tripp.moderation import ContentScreen
from tripp.ratelimit import RateLimiter, RateLimitResult, build_rate_key, rate_limit_headers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    identity: Identity
    rate: RateLimitResult

    @property
    def headers(self) -> Dict[str, str]:
        return rate_limit_headers(self.rate)


class RequestGate:
    def __init__(
        self,
        resolver: IdentityResolver,
        limiter: RateLimiter,
        screen: Optional[ContentScreen] = None,
    ):
        self.resolver = resolver
        self.limiter = limiter
        self.screen = screen

    def admit(
        self,
        request: Request,
        text: Optional[str] = None,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> GateDecision:
        """Admit `request` or raise.

        Raises:
            RateLimitExceeded: the caller's window is exhausted
            ContentRejected: `text` was flagged by the content screen
        """
        identity = self.resolver.resolve(request)
        key = build_rate_key(
            client_id=identity.client_id,
            ip=client_ip(request),
            path=request.url.path,
            user_id=identity.user_id,
            session_id=identity.session_id,
        )
        rate = self.limiter.check(key, limit=limit, window_seconds=window_seconds)
        if not rate.allowed:
            raise RateLimitExceeded(rate)

        if text is not None and self.screen is not None:
            verdict = self.screen.check(text)
            if verdict.flagged:
                logger.info(
                    "Content flagged for client %s: %s",
                    identity.client_id,
                    ", ".join(sorted(verdict.categories)) or "unspecified",
                )
                raise ContentRejected(verdict.categories)

        return GateDecision(identity=identity, rate=rate)
