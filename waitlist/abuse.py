# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Request checks shared by the public endpoints.

Each check either returns normally or raises `Rejected(code, status)`. The
waitlist service runs them in a fixed order: origin, content type, body size,
honeypot, field validation, rate limit, bot challenge.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import IO, Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import requests

from .config import WaitlistConfig
from .ratelimit import RateLimiter
from .utility.privacy import salted_hash

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 320
MAX_SOURCE_LENGTH = 64
MAX_PRIVACY_VERSION_LENGTH = 64

PUBLIC_MAX_BODY_BYTES = 2 * 1024
ADMIN_MAX_BODY_BYTES = 64 * 1024
READ_CHUNK_BYTES = 1024

RATE_LIMIT_WINDOW_SECONDS = 10 * 60
RATE_LIMIT_MAX_REQUESTS = 8

# Used for counter keys when WAITLIST_IP_SALT is unset, so keys are still hashed.
FALLBACK_SALT = "waitlist-default-salt"

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"

class Rejected(Exception):
    """A request failed a check. `code` is the public error code."""

    def __init__(self, code: str, status: int):
        super().__init__(f"{code} ({status})")
        self.code = code
        self.status = status

@dataclass
class InboundRequest:
    """The parts of an HTTP request the checks look at."""
    origin: str
    request_origin: str
    content_type: str
    content_length: Optional[int]
    stream: IO[bytes]
    ip: Optional[str]
    user_agent: str
    request_id: str = "-"

    @classmethod
    def from_flask(cls, request, request_id: str = "-") -> "InboundRequest":
        return cls(
            origin=_clean(request.headers.get("Origin")),
            request_origin=normalize_origin(request.host_url),
            content_type=_clean(request.headers.get("Content-Type")).lower(),
            content_length=request.content_length,
            stream=request.stream,
            ip=client_ip(request.headers, request.remote_addr),
            user_agent=_clean(request.headers.get("User-Agent")),
            request_id=request_id,
        )

@dataclass
class Submission:
    email: str
    source: str
    marketing_consent: bool
    privacy_version: str
    turnstile_token: str = ""

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> Optional[str]:
    """CF-Connecting-IP, then the first X-Forwarded-For hop, then the socket peer."""
    cf_ip = _clean(headers.get("CF-Connecting-IP"))
    if cf_ip:
        return cf_ip

    forwarded = _clean(headers.get("X-Forwarded-For"))
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    return _clean(remote_addr) or None

def normalize_origin(value) -> str:
    """Reduce a URL to scheme://host[:port], or "" when it is not an absolute URL."""
    text = _clean(value)
    if not text:
        return ""
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError:
        return ""
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return ""
    origin = f"{parts.scheme}://{parts.hostname.lower()}"
    if port is not None:
        origin += f":{port}"
    return origin

def allowed_origin(origin: str, request_origin: str, config: WaitlistConfig,
                   allow_suffix: bool = True) -> Optional[str]:
    """Return the normalized origin when it may call the API, else None.

    The https suffix match (preview deploys) only applies when `allow_suffix` is set.
    """
    normalized = normalize_origin(origin)
    if not normalized:
        return None

    if request_origin and normalized == normalize_origin(request_origin):
        return normalized

    if normalized in {normalize_origin(entry) for entry in config.allowed_origins}:
        return normalized

    suffix = config.allowed_origin_suffix.lower() if allow_suffix else ""
    if suffix and normalized.startswith("https://"):
        hostname = urlsplit(normalized).hostname or ""
        if hostname.endswith(suffix):
            return normalized

    return None

def check_origin(inbound: InboundRequest, config: WaitlistConfig) -> str:
    """A missing Origin header is rejected too."""
    origin = allowed_origin(inbound.origin, inbound.request_origin, config)
    if origin is None:
        raise Rejected("forbidden_origin", 403)
    return origin

def check_content_type(content_type: str):
    if not _clean(content_type).lower().startswith("application/json"):
        raise Rejected("invalid_request", 415)

def read_body_with_limit(stream: IO[bytes], max_bytes: int, content_length: Optional[int] = None) -> bytes:
    """Read at most `max_bytes` from the stream, in chunks.

    A declared Content-Length over the ceiling is refused without reading.
    Otherwise reading stops as soon as the running total passes the ceiling,
    so an undeclared oversized body is never buffered in full.
    """
    if content_length is not None and content_length > max_bytes:
        raise Rejected("payload_too_large", 413)

    chunks = []
    total = 0
    while True:
        chunk = stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise Rejected("payload_too_large", 413)
        chunks.append(chunk)
    return b"".join(chunks)

def parse_json_object(raw: bytes) -> Dict[str, Any]:
    if not raw or not raw.strip():
        raise Rejected("invalid_request", 400)
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise Rejected("invalid_request", 400)
    if not isinstance(payload, dict):
        raise Rejected("invalid_request", 400)
    return payload

def read_json_body(inbound: InboundRequest, max_bytes: int) -> Dict[str, Any]:
    """Content type, size and JSON shape checks, in that order."""
    check_content_type(inbound.content_type)
    raw = read_body_with_limit(inbound.stream, max_bytes, inbound.content_length)
    return parse_json_object(raw)

def is_honeypot(payload: Mapping[str, Any]) -> bool:
    return bool(_clean(payload.get("company")))

def is_valid_email(email: str) -> bool:
    return 0 < len(email) <= MAX_EMAIL_LENGTH and EMAIL_PATTERN.match(email) is not None

def validate_submission(payload: Mapping[str, Any]) -> Submission:
    email = _clean(payload.get("email")).lower()
    if not is_valid_email(email):
        raise Rejected("invalid_request", 400)

    # JSON booleans only: "true" or 1 do not count as consent
    if payload.get("age_confirmed") is not True:
        raise Rejected("age_required", 400)
    if payload.get("privacy_accepted") is not True:
        raise Rejected("privacy_required", 400)

    marketing_consent = payload.get("marketing_consent")
    if not isinstance(marketing_consent, bool):
        raise Rejected("invalid_request", 400)

    privacy_version = _clean(payload.get("privacy_version"))[:MAX_PRIVACY_VERSION_LENGTH]
    if not privacy_version:
        raise Rejected("invalid_request", 400)

    return Submission(
        email=email,
        source=(_clean(payload.get("source")) or "landing")[:MAX_SOURCE_LENGTH],
        marketing_consent=marketing_consent,
        privacy_version=privacy_version,
        turnstile_token=_clean(payload.get("turnstileToken")),
    )

def ip_hash_for(ip: Optional[str], config: WaitlistConfig) -> Optional[str]:
    return salted_hash(ip, config.ip_salt or FALLBACK_SALT)

def rate_limit_key(ip: Optional[str], user_agent: str, config: WaitlistConfig) -> str:
    """Salted hash of the client IP, or of the user agent when there is no IP."""
    salt = config.ip_salt or FALLBACK_SALT
    if ip:
        return salted_hash(ip, salt)
    return salted_hash(f"ua:{_clean(user_agent)[:80]}", salt)

def check_rate_limit(limiter: RateLimiter, key: str):
    if limiter.hit(key):
        raise Rejected("rate_limited", 429)

def verify_turnstile(secret: str, token: str, remote_ip: Optional[str] = None, timeout: float = 10) -> bool:
    """Ask Cloudflare Turnstile whether `token` is a solved challenge."""
    data = {"secret": secret, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip

    try:
        response = requests.post(TURNSTILE_VERIFY_URL, data=data, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.warning("Turnstile verification request failed: %s", type(e).__name__)
        return False

    if not response.ok:
        logger.warning("Turnstile verification returned HTTP %s", response.status_code)
        return False

    try:
        result = response.json()
    except ValueError:
        return False
    return isinstance(result, dict) and result.get("success") is True

def check_bot(submission: Submission, ip: Optional[str], config: WaitlistConfig):
    if not config.turnstile_enabled:
        return
    if not submission.turnstile_token or not config.turnstile_secret:
        raise Rejected("bot_suspected", 403)
    if not verify_turnstile(config.turnstile_secret, submission.turnstile_token, ip):
        raise Rejected("bot_suspected", 403)
