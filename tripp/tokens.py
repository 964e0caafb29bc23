"""Identity token verification for the Tripp gateway.

RS256 identity tokens are checked step by step so every failure carries a
precise reason. Signature failures trigger exactly one key set refresh to
ride out key rotation. The legacy HS256 app-session cookie is verified with
python-jose directly.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import json
import logging
import time

from jose import jwt
from jose.exceptions import JWKError, JWTError
from jose.utils import base64url_decode

from tripp.errors import TokenError
from tripp.jwks import DEFAULT_ALG, KeyCache, key_from_components

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedToken:
    header: Dict[str, Any]
    payload: Dict[str, Any]

    @property
    def subject(self) -> str:
        sub = self.payload.get("sub")
        return "" if sub is None else str(sub)


def _decode_segment(segment: str) -> bytes:
    return base64url_decode(segment.encode("ascii"))


def _decode_json(segment: str) -> Dict[str, Any]:
    value = json.loads(_decode_segment(segment).decode("utf-8"))
    if not isinstance(value, dict):
        raise ValueError("not a JSON object")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenVerifier:
    """Verify RS256 identity tokens against a KeyCache."""

    def __init__(
        self,
        key_cache: KeyCache,
        issuer: str,
        audience: str,
        clock_skew_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        self.key_cache = key_cache
        self.issuer = issuer
        self.audience = audience
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config, key_cache: KeyCache, **kwargs) -> "TokenVerifier":
        return cls(
            key_cache,
            issuer=config.expected_issuer,
            audience=config.expected_audience,
            clock_skew_seconds=config.jwt_clock_skew_seconds,
            **kwargs,
        )

    def verify(self, token: str) -> VerifiedToken:
        """Verify signature and claims of `token`.

        Raises:
            TokenError: with the failing step as `reason`
            KeySetFetchError: when the key set cannot be loaded
        """
        try:
            return self._verify(token)
        except TokenError as e:
            logger.warning("Identity token rejected: %s", e.reason)
            raise

    def _verify(self, token: str) -> VerifiedToken:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3 or not all(parts):
            raise TokenError("malformed")
        h, p, s = parts

        try:
            header = _decode_json(h)
            payload = _decode_json(p)
            signature = _decode_segment(s)
        except (ValueError, UnicodeError):
            raise TokenError("malformed")

        if header.get("alg") != DEFAULT_ALG:
            raise TokenError("alg_mismatch")
        typ = header.get("typ")
        if typ is not None and str(typ).upper() != "JWT":
            raise TokenError("typ_mismatch")
        kid = header.get("kid")
        if not kid:
            raise TokenError("kid_missing")

        signing_input = f"{h}.{p}".encode("ascii")

        entry = self.key_cache.get_key_set().find(kid)
        if entry is None:
            raise TokenError("kid_not_found")

        if not self._signature_ok(entry, signing_input, signature):
            # One refresh in case the signer rotated keys since our last fetch.
            logger.info("Signature check failed for kid=%s, refreshing JWKS once", kid)
            self.key_cache.invalidate()
            entry = self.key_cache.get_key_set().find(kid)
            if entry is None:
                raise TokenError("kid_not_found_2")
            if not self._signature_ok(entry, signing_input, signature):
                raise TokenError("sig_fail")

        self._check_claims(payload)
        return VerifiedToken(header=header, payload=payload)

    @staticmethod
    def _signature_ok(entry: Dict[str, Any], signing_input: bytes, signature: bytes) -> bool:
        try:
            key = key_from_components(entry.get("kty"), entry.get("n"), entry.get("e"))
            return bool(key.verify(signing_input, signature))
        except (ValueError, JWKError):
            return False

    def _check_claims(self, payload: Dict[str, Any]) -> None:
        now = int(self._clock())
        skew = self.clock_skew_seconds

        if payload.get("iss") != self.issuer:
            raise TokenError("iss", str(payload.get("iss")))

        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        if aud != self.audience:
            raise TokenError("aud", json.dumps(payload.get("aud")))

        nbf = payload.get("nbf")
        if _is_number(nbf) and nbf > now + skew:
            raise TokenError("nbf", str(nbf))

        exp = payload.get("exp")
        if _is_number(exp) and exp < now - skew:
            raise TokenError("exp", str(exp))

        iat = payload.get("iat")
        if _is_number(iat) and iat > now + skew:
            raise TokenError("iat", str(iat))


def verify_app_session(token: Optional[str], config) -> Optional[Dict[str, Any]]:
    """Verify the legacy HS256 app-session cookie.

    Tries the primary secret, then the legacy one. Returns the claims, or
    None when the token is absent, invalid, or has no string subject.
    """
    if not token:
        return None
    secrets = [s for s in (config.app_session_secret, config.legacy_signing_secret) if s]
    if not secrets:
        logger.warning("APP_SESSION_SECRET not configured, app-session cookie ignored")
        return None

    for secret in secrets:
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except JWTError:
            continue
        if isinstance(claims.get("sub"), str) and claims["sub"]:
            return claims
        return None

    logger.debug("App-session cookie failed verification with all secrets")
    return None
