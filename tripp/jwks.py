"""Remote key set (JWKS) cache for identity token verification.

The cache is a process-wide component constructed once by the app factory.
Fetches use ``requests`` with a bounded timeout; the cached entry is replaced
under a lock because verification runs in the threadpool.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import logging
import threading
import time

import requests
from jose import jwk
from jose.exceptions import JWKError

from tripp.errors import KeySetFetchError

logger = logging.getLogger(__name__)

DEFAULT_ALG = "RS256"


@dataclass(frozen=True)
class KeySet:
    """A fetched key set and the moment it stops being trusted."""

    keys: List[Dict[str, Any]]
    cached_until: float = 0.0
    kids: List[str] = field(default_factory=list)

    def find(self, kid: str, alg: str = DEFAULT_ALG) -> Optional[Dict[str, Any]]:
        """Return the entry for `kid` whose alg (RS256 when absent) matches."""
        for entry in self.keys:
            if entry.get("kid") == kid and (entry.get("alg") or DEFAULT_ALG) == alg:
                return entry
        return None


def key_from_components(kty: Optional[str], n: Optional[str], e: Optional[str]):
    """Build an RS256 verification key from base64url modulus and exponent.

    Raises:
        ValueError: if the entry is not RSA or a component is missing
    """
    if kty != "RSA" or not n or not e:
        raise ValueError("jwk_invalid")
    try:
        return jwk.construct({"kty": "RSA", "n": n, "e": e}, algorithm=DEFAULT_ALG)
    except JWKError as exc:
        raise ValueError("jwk_invalid") from exc


class KeyCache:
    """TTL cache in front of a remote JWKS endpoint."""

    def __init__(
        self,
        url: Optional[str],
        ttl_seconds: float = 300,
        timeout_seconds: float = 3.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[KeySet] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "KeyCache":
        return cls(
            config.jwks_url,
            ttl_seconds=config.jwks_cache_minutes * 60,
            timeout_seconds=config.jwks_timeout_seconds,
            **kwargs,
        )

    def get_key_set(self) -> KeySet:
        """Return the cached key set, fetching it when missing or stale.

        Raises:
            KeySetFetchError: on timeout, non-2xx status, bad body or no keys
        """
        now = self._clock()
        with self._lock:
            cached = self._cached
        if cached is not None and now < cached.cached_until:
            return cached

        keys = self._fetch()
        fresh = KeySet(
            keys=keys,
            cached_until=self._clock() + self.ttl_seconds,
            kids=[str(k.get("kid")) for k in keys],
        )
        with self._lock:
            self._cached = fresh
        logger.info("JWKS refreshed: %d keys (%s)", len(keys), ", ".join(fresh.kids))
        return fresh

    def invalidate(self) -> None:
        """Force the next get_key_set() to refetch."""
        with self._lock:
            self._cached = None

    def fetch_key_count(self) -> int:
        """Fetch the remote key set without touching the cache; return key count."""
        return len(self._fetch())

    def close(self) -> None:
        self._session.close()

    def _fetch(self) -> List[Dict[str, Any]]:
        if not self.url:
            raise KeySetFetchError("jwks_url_not_configured")
        try:
            resp = self._session.get(
                self.url,
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout:
            logger.error("JWKS fetch from %s timed out after %.1fs", self.url, self.timeout_seconds)
            raise KeySetFetchError("jwks_timeout")
        except requests.RequestException as e:
            logger.error("Failed to fetch JWKS from %s: %s", self.url, e)
            raise KeySetFetchError("jwks_unreachable")

        if not resp.ok:
            logger.error("JWKS fetch from %s returned %s", self.url, resp.status_code)
            raise KeySetFetchError(f"jwks_http_{resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            raise KeySetFetchError("jwks_not_json")

        keys = body.get("keys") if isinstance(body, dict) else None
        keys = [k for k in keys if isinstance(k, dict)] if isinstance(keys, list) else []
        if not keys:
            raise KeySetFetchError("jwks_empty")
        return keys
