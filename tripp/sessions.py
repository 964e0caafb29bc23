"""Session exchange: turn a verified identity token into a server session.

This is the authentication boundary. Unlike identity resolution, every token
problem here is a hard failure reported to the client as 401.
"""
from dataclasses import dataclass
from typing import Callable, Optional
from datetime import datetime, timedelta, timezone
import logging

from starlette.requests import Request

from tripp.errors import AuthError, TokenError
from tripp.identity import Identity, client_ip
from tripp.models import ChatSession, SessionStatus
from tripp.tokens import TokenVerifier
from tripp.utils import hash_string, new_session_id, subnet24

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceFingerprint:
    ua_hash: str
    ip_hash: str
    device_hash: str


def device_fingerprint(user_agent: Optional[str], ip: Optional[str]) -> DeviceFingerprint:
    """Hash the user agent and the /24 network into one device hash."""
    ua_hash = hash_string(user_agent or "")
    ip_hash = hash_string(subnet24(ip))
    return DeviceFingerprint(
        ua_hash=ua_hash,
        ip_hash=ip_hash,
        device_hash=hash_string(f"{ua_hash}:{ip_hash}"),
    )


@dataclass(frozen=True)
class ExchangeResult:
    session_id: str
    user_id: str
    expires_at: datetime
    tier: str
    reused: bool = False


def _claim(payload: dict, name: str) -> Optional[str]:
    value = payload.get(name)
    if isinstance(value, list):
        value = value[0] if value else None
    return None if value is None else str(value)


class SessionManager:
    """Issue or reuse chat sessions for authenticated users."""

    def __init__(
        self,
        verifier: TokenVerifier,
        store,
        config,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.verifier = verifier
        self.store = store
        self.config = config
        self._clock = clock

    def exchange(self, request: Request) -> ExchangeResult:
        """Verify the identity cookie and return the caller's session.

        Raises:
            AuthError: missing_id_token, jwt_invalid, sub_missing or db_error
        """
        token = request.cookies.get(self.config.id_token_cookie)
        if not token:
            raise AuthError("missing_id_token")
        try:
            verified = self.verifier.verify(token)
        except TokenError as e:
            raise AuthError("jwt_invalid", e.reason)

        user_id = verified.subject
        if not user_id:
            raise AuthError("sub_missing")

        fingerprint = device_fingerprint(request.headers.get("user-agent"), client_ip(request))
        client_id = self.config.default_client_id
        tier = _claim(verified.payload, "tier") or "free"
        now = self._clock()
        expires_at = now + timedelta(minutes=self.config.session_ttl_minutes)

        try:
            existing = self.store.find_active_session(user_id, fingerprint.device_hash)
            if existing is not None:
                self.store.touch_session(existing.session_id, now, expires_at, tier, client_id)
                logger.info("Reused session for user %s", user_id)
                return ExchangeResult(existing.session_id, user_id, expires_at, tier, reused=True)

            session = ChatSession(
                session_id=new_session_id(),
                user_id=user_id,
                client_id=client_id,
                tier=tier,
                device_hash=fingerprint.device_hash,
                ua_hash=fingerprint.ua_hash,
                ip_hash=fingerprint.ip_hash,
                jti=_claim(verified.payload, "jti"),
                kid=_claim(verified.header, "kid"),
                iss=_claim(verified.payload, "iss"),
                aud=_claim(verified.payload, "aud"),
                created_at=now,
                updated_at=now,
                last_seen=now,
                expires_at=expires_at,
            )
            self.store.insert_session(session)
            self.store.revoke_excess_sessions(user_id, self.config.max_sessions_per_user, now)
        except Exception as e:
            logger.error("Session store failed during exchange: %s", e)
            raise AuthError("db_error")

        logger.info("Issued new session for user %s", user_id)
        return ExchangeResult(session.session_id, user_id, expires_at, tier)

    def status(self, session_id: Optional[str]) -> SessionStatus:
        """Report whether `session_id` is a live authenticated session."""
        if not session_id:
            return SessionStatus(authenticated=False)
        try:
            session = self.store.get_session(session_id)
        except Exception as e:
            logger.warning("Session status lookup failed: %s", e)
            return SessionStatus(authenticated=False)

        if session is None or session.revoked or not session.user_id:
            return SessionStatus(authenticated=False)
        if session.expires_at is not None and session.expires_at < self._clock():
            return SessionStatus(authenticated=False)
        try:
            memory_opt_in = self.store.get_memory_opt_in(session.user_id)
        except Exception as e:
            logger.warning("Memory preference lookup failed: %s", e)
            memory_opt_in = False
        return SessionStatus(
            authenticated=True,
            user_id=session.user_id,
            tier=session.tier,
            memory_opt_in=memory_opt_in,
        )

    def create_anonymous(self, identity: Identity, request: Request) -> tuple:
        """Mint a soft session id, recording a guest row when the store allows.

        Returns `(session_id, stored)`; the id is usable even if storing failed.
        """
        now = self._clock()
        fingerprint = device_fingerprint(request.headers.get("user-agent"), client_ip(request))
        session = ChatSession(
            session_id=new_session_id(),
            user_id=identity.user_id,
            client_id=identity.client_id,
            tier="guest" if identity.anon else "free",
            device_hash=fingerprint.device_hash,
            ua_hash=fingerprint.ua_hash,
            ip_hash=fingerprint.ip_hash,
            created_at=now,
            updated_at=now,
            last_seen=now,
            expires_at=now + timedelta(minutes=self.config.guest_ttl_minutes),
        )
        try:
            self.store.insert_session(session)
            if identity.user_id:
                self.store.revoke_excess_sessions(
                    identity.user_id, self.config.max_sessions_per_user, now
                )
        except Exception as e:
            logger.warning("Soft session row not stored: %s", e)
            return session.session_id, False
        return session.session_id, True
