# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import hmac
import logging
from functools import wraps
from typing import Optional, Tuple

from flask import jsonify, request

from .abuse import allowed_origin, normalize_origin
from .config import WaitlistConfig, get_config

logger = logging.getLogger(__name__)

def parse_bearer_token(header) -> str:
    value = header.strip() if isinstance(header, str) else ""
    if not value.lower().startswith("bearer "):
        return ""
    return value[7:].strip()

def tokens_match(expected: str, provided: str) -> bool:
    expected_bytes = expected.encode("utf-8")
    provided_bytes = provided.encode("utf-8")
    if len(expected_bytes) != len(provided_bytes):
        return False
    return hmac.compare_digest(expected_bytes, provided_bytes)

def check_admin(origin: str, request_origin: str, authorization: str,
                config: WaitlistConfig) -> Optional[Tuple[str, int]]:
    """Return (code, status) when the caller may not use the admin API, else None.

    Requests without an Origin header (curl, server-side scripts) pass the
    origin check; browsers always send one for cross-origin calls. Browser
    callers must be same-origin or on the explicit origin list.
    """
    if origin and allowed_origin(origin, request_origin, config, allow_suffix=False) is None:
        return "forbidden_origin", 403

    expected = config.admin_token
    if not expected:
        logger.error("WAITLIST_ADMIN_TOKEN is not set; admin API is unavailable")
        return "server_error", 500

    provided = parse_bearer_token(authorization)
    if not provided:
        return "unauthorized", 401

    if not tokens_match(expected, provided):
        return "forbidden", 403

    return None

def require_admin(view):
    """Guard a view with the origin and bearer token checks."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        failure = check_admin(
            (request.headers.get("Origin") or "").strip(),
            normalize_origin(request.host_url),
            request.headers.get("Authorization", ""),
            get_config(),
        )
        if failure is not None:
            code, status = failure
            logger.warning("Admin request to %s rejected: %s", request.path, code)
            return jsonify({"status": "error", "code": code}), status
        return view(*args, **kwargs)
    return wrapper
