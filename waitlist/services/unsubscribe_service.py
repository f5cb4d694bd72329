# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import logging
import math
from typing import Any, Dict, Mapping, Optional

from .response import ServiceResponse
from ..abuse import (
    FALLBACK_SALT,
    PUBLIC_MAX_BODY_BYTES,
    InboundRequest,
    Rejected,
    read_json_body,
)
from ..config import WaitlistConfig
from ..ratelimit import RateLimiter
from ..store import StoreError, WaitlistStore
from ..unsubscribe_token import verify_unsubscribe_token
from ..utility.privacy import hash_prefix, log_stage, salted_hash

logger = logging.getLogger(__name__)

INVALID_ATTEMPT_WINDOW_SECONDS = 10 * 60
INVALID_ATTEMPT_MAX = 12

TOKEN_FIELDS = ("email", "scope", "ts", "sig")

def _param_string(value) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return ""

def read_unsubscribe_body(inbound: InboundRequest) -> Dict[str, str]:
    """Token fields from a JSON POST body. Any malformed body is an invalid signature."""
    try:
        payload = read_json_body(inbound, PUBLIC_MAX_BODY_BYTES)
    except Rejected:
        raise Rejected("invalid_signature", 400)
    return {name: _param_string(payload.get(name)) for name in TOKEN_FIELDS}

def handle_unsubscribe(params: Mapping[str, Any], ip: Optional[str], config: WaitlistConfig,
                       store: WaitlistStore, invalid_attempts: RateLimiter) -> ServiceResponse:
    secret = config.unsubscribe_secret
    if not secret:
        log_stage(logger, logging.ERROR, "unsubscribe", "misconfigured", error="server_error")
        return ServiceResponse(500, {"status": "error", "error": "server_error"})

    ip_hash = salted_hash(ip or "unknown", config.ip_salt or FALLBACK_SALT)

    verified = verify_unsubscribe_token(
        secret,
        params.get("email"),
        params.get("scope"),
        params.get("ts"),
        params.get("sig"),
    )

    if not verified.ok:
        # Counted and logged only; the response is the same either way.
        over_limit = invalid_attempts.hit(ip_hash)
        log_stage(logger, logging.WARNING, "unsubscribe", "token_rejected", reason=verified.reason,
                  ip_hash=hash_prefix(ip_hash), rate_limited=over_limit)
        error = "expired" if verified.reason == "expired" else "invalid_signature"
        return ServiceResponse(403, {"status": "error", "error": error})

    email_hash = salted_hash(verified.email, config.ip_salt or FALLBACK_SALT)
    try:
        store.apply_unsubscribe(verified.email, verified.scope)
    except StoreError as e:
        log_stage(logger, logging.ERROR, "unsubscribe", "apply_failed", email_hash=hash_prefix(email_hash),
                  scope=verified.scope, store_error=e.kind.value)
        return ServiceResponse(500, {"status": "error", "error": "server_error"})

    log_stage(logger, logging.INFO, "unsubscribe", "applied", email_hash=hash_prefix(email_hash),
              scope=verified.scope)
    return ServiceResponse(200, {"status": "ok"})
