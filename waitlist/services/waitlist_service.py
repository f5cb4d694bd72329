# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import logging
from typing import Optional

from .response import ServiceResponse
from ..abuse import (
    FALLBACK_SALT,
    PUBLIC_MAX_BODY_BYTES,
    InboundRequest,
    Rejected,
    check_bot,
    check_origin,
    check_rate_limit,
    ip_hash_for,
    is_honeypot,
    rate_limit_key,
    read_json_body,
    validate_submission,
)
from ..config import WaitlistConfig
from ..mail import Mailer
from ..ratelimit import RateLimiter
from ..store import StoreError, StoreErrorKind, WaitlistStore
from ..unsubscribe_token import InvalidTokenInput, build_unsubscribe_url
from ..utility.privacy import hash_prefix, log_stage, salted_hash

logger = logging.getLogger(__name__)

# Looks like a normal success to a bot that filled in the hidden field.
HONEYPOT_BODY = {
    "status": "ok",
    "email": "hidden",
    "inserted": False,
    "updated": False,
    "email_sent": True,
}

def _log(level: int, stage: str, request_id: str, provider: str, email_hash: Optional[str] = None, **fields):
    log_stage(logger, level, "waitlist", stage, request_id=request_id, provider=provider,
              email_hash=hash_prefix(email_hash), **fields)

def handle_submission(inbound: InboundRequest, config: WaitlistConfig, store: WaitlistStore,
                      mailer: Mailer, limiter: RateLimiter, notifier=None) -> ServiceResponse:
    """Run the full signup pipeline for one POST /api/waitlist request."""
    provider = mailer.provider
    request_id = inbound.request_id
    _log(logging.INFO, "request_received", request_id, provider)

    try:
        check_origin(inbound, config)
    except Rejected as e:
        _log(logging.WARNING, "request_rejected", request_id, provider, error_code=e.code)
        return ServiceResponse(e.status, {"status": "error", "code": e.code})

    email_hash = None
    try:
        payload = read_json_body(inbound, PUBLIC_MAX_BODY_BYTES)

        if is_honeypot(payload):
            _log(logging.INFO, "honeypot_tripped", request_id, provider)
            return ServiceResponse(200, dict(HONEYPOT_BODY))

        submission = validate_submission(payload)
        email_hash = salted_hash(submission.email, config.ip_salt or FALLBACK_SALT)

        check_rate_limit(limiter, rate_limit_key(inbound.ip, inbound.user_agent, config))
        check_bot(submission, inbound.ip, config)
    except Rejected as e:
        _log(logging.WARNING, "request_rejected", request_id, provider, email_hash, error_code=e.code)
        return ServiceResponse(e.status, {"status": "error", "code": e.code})

    try:
        result = store.upsert_waitlist(
            email=submission.email,
            source=submission.source,
            user_agent=inbound.user_agent or None,
            ip_hash=ip_hash_for(inbound.ip, config),
            marketing_consent=submission.marketing_consent,
            privacy_version=submission.privacy_version,
        )
    except StoreError as e:
        if e.kind is StoreErrorKind.CONSTRAINT_VIOLATION:
            _log(logging.WARNING, "request_rejected", request_id, provider, email_hash,
                 error_code="invalid_request")
            return ServiceResponse(400, {"status": "error", "code": "invalid_request"})

        _log(logging.ERROR, "insert_failed", request_id, provider, email_hash,
             error_code="server_error", store_error=e.kind.value)
        if notifier is not None:
            notifier.send_diagnostic(
                level="error",
                service="Waitlist",
                message="Waitlist insert failed",
                details={"Kind": e.kind.value, "Email Hash": hash_prefix(email_hash), "Request ID": request_id},
            )
        return ServiceResponse(500, {"status": "error", "code": "server_error"})

    _log(logging.INFO, "insert_ok", request_id, provider, email_hash,
         inserted=result.inserted, updated=result.updated)

    email_sent = False
    email_error_code = None

    if not result.inserted and not config.send_on_duplicate:
        _log(logging.INFO, "email_skipped_duplicate", request_id, provider, email_hash)
    else:
        secret = config.unsubscribe_secret
        base_url = config.unsubscribe_base_url or inbound.request_origin
        unsubscribe_url = None
        if secret and base_url:
            try:
                unsubscribe_url = build_unsubscribe_url(base_url, secret, submission.email, scope="marketing")
            except InvalidTokenInput:
                unsubscribe_url = None

        if unsubscribe_url is None:
            email_error_code = "misconfigured_email"
        else:
            _log(logging.INFO, "email_send_attempt", request_id, provider, email_hash)
            try:
                send_result = mailer.send_welcome(submission.email, submission.marketing_consent, unsubscribe_url)
            except Exception:
                logger.exception("Welcome email send raised")
                email_error_code = "send_failed"
            else:
                email_sent = send_result.ok
                email_error_code = None if send_result.ok else (send_result.error_code or "send_failed")

        if email_sent:
            _log(logging.INFO, "email_send_succeeded", request_id, provider, email_hash)
        else:
            _log(logging.ERROR, "email_send_failed", request_id, provider, email_hash, error_code=email_error_code)

    body = {
        "status": "ok",
        "email": submission.email,
        "inserted": result.inserted,
        "updated": result.updated,
        "email_sent": email_sent,
    }
    if email_error_code:
        body["email_error_code"] = email_error_code
    return ServiceResponse(200, body)
