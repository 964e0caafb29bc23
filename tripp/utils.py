"""Utility functions for the Tripp gateway.

Provides hashing, address normalisation, PII redaction, and logging setup.
"""
import hashlib
import logging
import re
import secrets
from typing import Optional


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
        datefmt="%Y-%m-%dT%H:%M:%S"
    )


def hash_string(text: str) -> str:
    """Generate SHA256 hash of string.

    Args:
        text: Text to hash

    Returns:
        Hex digest of SHA256 hash
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


IP_PLACEHOLDER = "0.0.0"


def subnet24(ip: Optional[str]) -> str:
    """Normalize an IPv4 address to its /24 network.

    The last octet is zeroed so devices on the same network hash alike.
    IPv4-mapped IPv6 addresses are unwrapped first. Anything that is not a
    dotted quad collapses to a fixed placeholder.
    """
    if not ip:
        return IP_PLACEHOLDER
    ip = ip.strip()
    if ip.lower().startswith("::ffff:"):
        ip = ip[7:]
    parts = ip.split(".")
    if len(parts) != 4 or not all(p.isdigit() and int(p) <= 255 for p in parts):
        return IP_PLACEHOLDER
    return f"{parts[0]}.{parts[1]}.{parts[2]}.0"


def new_session_id() -> str:
    """Opaque session handle: 16 random bytes as 32 hex chars."""
    return secrets.token_hex(16)


_REDACTIONS = [
    (re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "[email]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[ssn]"),
    (re.compile(r"\b(?:\d[ -]*?){13,19}\b"), "[card]"),
    (re.compile(r"(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[phone]"),
    (
        re.compile(
            r"\b\d{1,5}\s+(?:[A-Za-z0-9.'-]+\s){1,4}(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln)\b",
            re.IGNORECASE,
        ),
        "[address]",
    ),
]


def redact_pii(text: Optional[str]) -> Optional[str]:
    """Mask emails, phone numbers, street addresses, SSNs and card numbers.

    Used on free-form error text before it reaches the audit table.
    """
    if not text:
        return text
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text
