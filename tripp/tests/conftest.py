"""Pytest configuration for Tripp gateway tests.

Loads environment variables from the project's `.env` file, then provides
fixtures for RSA signing keys, a fake JWKS endpoint, a controllable clock
and an in-memory session store so no test needs the network.
"""
from dotenv import load_dotenv, find_dotenv
from types import SimpleNamespace
import base64
import time

import limits.storage.memory
import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt
from starlette.requests import Request

from tripp.config import Config
from tripp.jwks import KeyCache
from tripp.ratelimit import RateLimiter
from tripp.store import InMemorySessionStore
from tripp.tokens import TokenVerifier


# Load .env from the project root if present.
env_path = find_dotenv(usecwd=True)
if env_path:
    load_dotenv(env_path)


ISSUER = "https://herphut.test"
AUDIENCE = "tripp"
JWKS_URL = "https://herphut.test/jwks"


def _b64url_uint(val: int) -> str:
    raw = val.to_bytes((val.bit_length() + 7) // 8, byteorder="big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class SigningKey:
    """An RSA key pair that can sign tokens and publish itself as a JWK."""

    def __init__(self, kid: str):
        self.kid = kid
        self._private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.pem = self._private.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def as_jwk(self, kid=None, alg="RS256"):
        numbers = self._private.public_key().public_numbers()
        entry = {
            "kty": "RSA",
            "use": "sig",
            "kid": kid or self.kid,
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }
        if alg:
            entry["alg"] = alg
        return entry

    def sign(self, claims=None, kid=None, headers=None, now=None, **overrides):
        now = int(now if now is not None else time.time())
        payload = {
            "iss": ISSUER,
            "aud": AUDIENCE,
            "sub": "42",
            "iat": now,
            "nbf": now,
            "exp": now + 3600,
            "jti": "jti-1",
        }
        payload.update(claims or {})
        payload.update(overrides)
        extra = {"kid": kid or self.kid}
        extra.update(headers or {})
        return jwt.encode(payload, self.pem, algorithm="RS256", headers=extra)


@pytest.fixture(scope="session")
def signing_key():
    return SigningKey("key-1")


@pytest.fixture(scope="session")
def other_key():
    return SigningKey("key-2")


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeJWKSSession:
    """Stands in for requests.Session; serves queued key sets in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def serve(self, *keys, status_code=200):
        self.responses.append(FakeResponse(status_code, {"keys": [k for k in keys]}))

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "timeout": timeout})
        if not self.responses:
            raise requests.ConnectionError("no response queued")
        # Keep serving the last response once the queue drains.
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


class Clock:
    def __init__(self, now=None):
        self.now = float(now if now is not None else int(time.time()))

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture(autouse=True)
def limits_time(clock, monkeypatch):
    """Drive in-memory rate limit windows from the test clock."""
    monkeypatch.setattr(limits.storage.memory, "time", SimpleNamespace(time=clock))
    return clock


@pytest.fixture
def jwks_session(signing_key):
    session = FakeJWKSSession()
    session.serve(signing_key.as_jwk())
    return session


@pytest.fixture
def key_cache(jwks_session, clock):
    return KeyCache(JWKS_URL, ttl_seconds=300, timeout_seconds=3.0, session=jwks_session, clock=clock)


@pytest.fixture
def verifier(key_cache, clock):
    return TokenVerifier(key_cache, issuer=ISSUER, audience=AUDIENCE, clock_skew_seconds=120, clock=clock)


@pytest.fixture
def config():
    return Config(
        jwks_url=JWKS_URL,
        expected_issuer=ISSUER,
        expected_audience=AUDIENCE,
        session_cookie_secure=False,
        session_cookie_domain=None,
        supabase_url=None,
        supabase_service_role_key=None,
        openai_api_key=None,
        moderation_enabled=False,
        app_session_secret="primary-secret",
        legacy_signing_secret="legacy-secret",
        allowed_origins=["https://tripp.herphut.test"],
    )


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def limiter(clock):
    return RateLimiter(default_limit=30, default_window_seconds=60, clock=clock)


@pytest.fixture
def response():
    """FakeResponse factory: response(status_code, body)."""
    return FakeResponse


@pytest.fixture
def make_key_cache(clock):
    """Build a KeyCache over queued fake responses; returns (cache, session)."""
    def _make(*responses, url=JWKS_URL):
        session = FakeJWKSSession(*responses)
        return KeyCache(url, session=session, clock=clock), session
    return _make


@pytest.fixture
def make_request():
    """Build a starlette Request from headers, cookies and a query string."""
    def _make(headers=None, cookies=None, query="", path="/api/chat", client=("203.0.113.9", 50000)):
        raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
        if cookies:
            cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
            raw.append((b"cookie", cookie.encode("latin-1")))
        scope = {
            "type": "http",
            "method": "POST",
            "path": path,
            "raw_path": path.encode("latin-1"),
            "root_path": "",
            "scheme": "http",
            "query_string": query.encode("latin-1"),
            "headers": raw,
            "client": client,
            "server": ("testserver", 80),
        }
        return Request(scope)
    return _make
