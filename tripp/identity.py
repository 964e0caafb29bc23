"""Soft identity resolution for inbound requests.

Reads client, user and session identifiers from headers, query string and
cookies. Token problems are never surfaced here: a bad or missing identity
token simply means the caller is anonymous.
"""
from dataclasses import dataclass
from typing import Optional, Union
import logging

from slowapi.util import get_remote_address
from starlette.requests import Request

from tripp.errors import TokenError
from tripp.tokens import TokenVerifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    user_id: str


@dataclass(frozen=True)
class Absent:
    pass


UserResolution = Union[Resolved, Absent]


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str]
    client_id: str
    session_id: Optional[str]

    @property
    def anon(self) -> bool:
        return self.user_id is None

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "client_id": self.client_id,
            "session_id": self.session_id,
            "anon": self.anon,
        }


def first_present(*candidates: Optional[str], default: str) -> str:
    """Return the first non-empty candidate, else `default`."""
    for value in candidates:
        if value:
            return value
    return default


def client_ip(request: Request) -> str:
    """Caller address: first X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    return first or get_remote_address(request)


class IdentityResolver:
    """Resolve `{user_id, client_id, session_id, anon}` from a request."""

    def __init__(self, verifier: TokenVerifier, config):
        self.verifier = verifier
        self.config = config

    def resolve_client_id(self, request: Request) -> str:
        return first_present(
            request.headers.get("x-client-id"),
            request.query_params.get("client_id"),
            default=self.config.default_client_id,
        )

    def resolve_user(self, request: Request) -> UserResolution:
        token = request.cookies.get(self.config.id_token_cookie)
        if not token:
            return Absent()
        try:
            verified = self.verifier.verify(token)
        except TokenError as e:
            logger.debug("Identity cookie ignored: %s", e.reason)
            return Absent()
        sub = verified.subject
        return Resolved(sub) if sub else Absent()

    def resolve_session_id(self, request: Request) -> Optional[str]:
        for name in self.config.soft_session_cookies:
            value = request.cookies.get(name)
            if value:
                return value
        return None

    def resolve(self, request: Request) -> Identity:
        user = self.resolve_user(request)
        return Identity(
            user_id=user.user_id if isinstance(user, Resolved) else None,
            client_id=self.resolve_client_id(request),
            session_id=self.resolve_session_id(request),
        )
