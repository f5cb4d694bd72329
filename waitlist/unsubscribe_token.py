# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Signed, time-bound unsubscribe tokens.

A token is the tuple (email, scope, ts) plus an HMAC-SHA256 signature over
"email|scope|ts". Verification needs only the secret; there is no token table.
"""

import hmac
import hashlib
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

UNSUBSCRIBE_TTL_SECONDS = 7 * 24 * 60 * 60
CLOCK_SKEW_SECONDS = 300
ALLOWED_SCOPES = frozenset({"all", "marketing"})

_HEX_SIGNATURE = re.compile(r"^[0-9a-f]{64}$")

class InvalidTokenInput(ValueError):
    """Raised when a token cannot be signed because an input failed normalization."""

@dataclass
class TokenVerification:
    ok: bool
    email: Optional[str] = None
    scope: Optional[str] = None
    ts: Optional[int] = None
    reason: Optional[str] = None  # "invalid" | "expired"

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def normalize_email(value) -> str:
    return _clean(value).lower()

def normalize_scope(value) -> str:
    scope = _clean(value).lower()
    return scope if scope in ALLOWED_SCOPES else ""

def parse_unix_seconds(value) -> Optional[int]:
    """Parse a positive integer timestamp from an int or an integer string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        parsed = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not re.fullmatch(r"[+-]?\d+", text):
            return None
        parsed = int(text)
    else:
        return None
    return parsed if parsed > 0 else None

def _payload(email: str, scope: str, ts: int) -> bytes:
    return f"{email}|{scope}|{ts}".encode("utf-8")

def sign_unsubscribe_token(secret: str, email: str, scope: str, ts) -> str:
    """Return the lowercase hex HMAC-SHA256 signature for (email, scope, ts)."""
    normalized_secret = _clean(secret)
    normalized_email = normalize_email(email)
    normalized_scope = normalize_scope(scope)
    parsed_ts = parse_unix_seconds(ts)

    if not normalized_secret or not normalized_email or not normalized_scope or parsed_ts is None:
        raise InvalidTokenInput("invalid_unsubscribe_signature_input")

    return hmac.new(
        normalized_secret.encode("utf-8"),
        _payload(normalized_email, normalized_scope, parsed_ts),
        hashlib.sha256,
    ).hexdigest()

def timing_safe_hex_equal(expected_hex, provided_hex) -> bool:
    """Constant-time comparison of two hex signatures.

    Both sides must be well-formed 64 character hex strings. The comparison
    runs over the decoded bytes, and buffers of unequal length are rejected
    before any byte is compared.
    """
    expected = _clean(expected_hex).lower()
    provided = _clean(provided_hex).lower()

    if not _HEX_SIGNATURE.match(expected) or not _HEX_SIGNATURE.match(provided):
        return False

    expected_bytes = bytes.fromhex(expected)
    provided_bytes = bytes.fromhex(provided)
    if len(expected_bytes) != len(provided_bytes):
        return False

    return hmac.compare_digest(expected_bytes, provided_bytes)

def verify_unsubscribe_token(secret: str, email, scope, ts, sig,
                             now: Optional[int] = None,
                             ttl: int = UNSUBSCRIBE_TTL_SECONDS) -> TokenVerification:
    """Verify a token. Never raises; failures come back as reason "invalid" or "expired"."""
    normalized_secret = _clean(secret)
    normalized_email = normalize_email(email)
    normalized_scope = normalize_scope(scope)
    parsed_ts = parse_unix_seconds(ts)
    parsed_now = parse_unix_seconds(int(time.time()) if now is None else now)

    if not normalized_secret or not normalized_email or not normalized_scope \
            or parsed_ts is None or parsed_now is None:
        return TokenVerification(ok=False, reason="invalid")

    if parsed_ts > parsed_now + CLOCK_SKEW_SECONDS:
        return TokenVerification(ok=False, reason="invalid")

    expected = sign_unsubscribe_token(normalized_secret, normalized_email, normalized_scope, parsed_ts)
    if not timing_safe_hex_equal(expected, sig):
        return TokenVerification(ok=False, reason="invalid")

    if parsed_now - parsed_ts > ttl:
        return TokenVerification(ok=False, reason="expired")

    return TokenVerification(ok=True, email=normalized_email, scope=normalized_scope, ts=parsed_ts)

def build_unsubscribe_url(base_url: str, secret: str, email: str,
                          scope: str = "marketing", ts: Optional[int] = None) -> str:
    """Compose {base_url}/unsubscribe?email=...&scope=...&ts=...&sig=..."""
    normalized_email = normalize_email(email)
    normalized_scope = normalize_scope(scope)
    base = _clean(base_url).rstrip("/")
    if not normalized_email or not normalized_scope or not base:
        raise InvalidTokenInput("invalid_unsubscribe_url_input")

    issued_at = int(time.time()) if ts is None else ts
    signature = sign_unsubscribe_token(secret, normalized_email, normalized_scope, issued_at)

    query = urlencode({
        "email": normalized_email,
        "scope": normalized_scope,
        "ts": str(issued_at),
        "sig": signature,
    })
    return f"{base}/unsubscribe?{query}"
