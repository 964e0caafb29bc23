"""Error taxonomy for the Tripp gateway.

Every error carries a short machine-readable ``reason`` that is safe to
return to clients; internal detail stays in the logs.
"""
from typing import Dict, Optional


class TrippError(Exception):
    """Base class for gateway errors."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class TokenError(TrippError):
    """Identity token failed verification.

    Reasons: malformed, alg_mismatch, typ_mismatch, kid_missing, kid_not_found,
    kid_not_found_2, sig_fail, iss, aud, nbf, exp, iat.
    """


class KeySetFetchError(TokenError):
    """Remote key set could not be fetched or was empty."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__("jwks_unavailable", detail)


class AuthError(TrippError):
    """Authentication boundary failure, rendered as HTTP 401."""

    def __init__(self, error: str, reason: Optional[str] = None):
        self.error = error
        super().__init__(reason or error)


class RateLimitExceeded(TrippError):
    """Fixed-window limit exhausted for the caller's key."""

    def __init__(self, result):
        self.result = result
        super().__init__("rate_limited")


class ContentRejected(TrippError):
    """Inbound text was flagged by the content screen."""

    def __init__(self, categories: Optional[Dict[str, bool]] = None):
        self.categories = categories or {}
        super().__init__("content_flagged")


class LoginRequired(TrippError):
    """Operation needs a verified identity token, rendered as HTTP 403."""

    def __init__(self):
        super().__init__("login_required")
