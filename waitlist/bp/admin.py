# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import logging
from typing import Any, Dict, List, Mapping

from flask import Blueprint, g, jsonify, request

from ..abuse import ADMIN_MAX_BODY_BYTES, InboundRequest, Rejected, is_valid_email, read_json_body
from ..auth import require_admin
from ..campaigns import CampaignError, is_campaign_id, preview_recipients, send_campaign
from ..config import get_config
from ..segments import parse_beta, parse_boolean, parse_date
from ..state import get_mailer, get_state
from ..store import StoreError, WaitlistQuery

logger = logging.getLogger(__name__)

bp_admin = Blueprint('admin', __name__)

def _error(code: str, status: int):
    return jsonify({"status": "error", "code": code}), status

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def parse_int(value, default: int, minimum: int, maximum: int) -> int:
    """Parse an integer query parameter and clamp it into [minimum, maximum]."""
    try:
        parsed = int(_clean(value))
    except ValueError:
        return default
    return min(max(parsed, minimum), maximum)

def parse_email_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    emails = {}
    for item in value:
        email = _clean(item).lower()
        if email and is_valid_email(email):
            emails.setdefault(email, None)
    return list(emails)

def _json_body() -> Dict[str, Any]:
    """Raises Rejected for a non-JSON, oversized or malformed body."""
    return read_json_body(InboundRequest.from_flask(request, g.get("request_id", "-")), ADMIN_MAX_BODY_BYTES)

def _filter_query(source: Mapping[str, Any], subscribed_default: bool = False) -> WaitlistQuery:
    marketing = parse_boolean(source.get("marketing"))
    if marketing is None:
        marketing = parse_boolean(source.get("marketing_only"))
    subscribed_only = parse_boolean(source.get("subscribed_only"))
    return WaitlistQuery(
        marketing=marketing,
        source=_clean(source.get("source")) or None,
        subscribed_only=subscribed_default if subscribed_only is None else subscribed_only,
        beta=parse_beta(source.get("beta"), allow_none=True),
        from_date=parse_date(source.get("from")),
        to_date=parse_date(source.get("to")),
    )

@bp_admin.route("/waitlist", methods=["GET"])
@require_admin
def list_waitlist():
    query = _filter_query(request.args)
    limit = parse_int(request.args.get("limit"), 50, 1, 500)
    offset = parse_int(request.args.get("offset"), 0, 0, 1000000)

    try:
        page = get_state().store.list_waitlist(query, limit=limit, offset=offset)
    except StoreError as e:
        logger.warning("Admin waitlist listing failed: %s", e.kind.value)
        return _error("invalid_request", 400)

    return jsonify({
        "status": "ok",
        "total_count": page.total_count,
        "limit": limit,
        "offset": offset,
        "rows": [row.to_dict() for row in page.rows],
    })

@bp_admin.route("/stats", methods=["GET"])
@require_admin
def stats():
    try:
        result = get_state().store.stats()
    except StoreError as e:
        logger.error("Admin stats failed: %s", e.kind.value)
        return _error("server_error", 500)

    return jsonify({
        "status": "ok",
        "total": result.total,
        "marketing_opt_in": result.marketing_opt_in,
        "unsubscribed": result.unsubscribed,
        "last_7_days": result.last_7_days,
        "beta_invited": result.beta_invited,
        "beta_active": result.beta_active,
    })

@bp_admin.route("/beta/invite", methods=["POST"])
@require_admin
def invite_beta():
    """Invite an explicit list of emails, or everyone matching a filter."""
    try:
        body = _json_body()
    except Rejected as e:
        return _error(e.code, e.status)

    store = get_state().store
    emails = parse_email_list(body.get("emails"))
    if emails:
        try:
            updated = store.invite_beta_emails(emails)
        except StoreError as e:
            logger.error("Beta invite by email failed: %s", e.kind.value)
            return _error("server_error", 500)
        return jsonify({"status": "ok", "updated_count": updated})

    segment_filter = body.get("filter")
    if not isinstance(segment_filter, dict):
        return _error("invalid_request", 400)

    try:
        updated = store.invite_beta_segment(_filter_query(segment_filter))
    except StoreError as e:
        logger.warning("Beta invite by segment failed: %s", e.kind.value)
        return _error("invalid_request", 400)
    return jsonify({"status": "ok", "updated_count": updated})

@bp_admin.route("/beta/set-active", methods=["POST"])
@require_admin
def set_beta_active():
    try:
        body = _json_body()
    except Rejected as e:
        return _error(e.code, e.status)

    email = _clean(body.get("email")).lower()
    active = body.get("active")
    if not is_valid_email(email) or not isinstance(active, bool):
        return _error("invalid_request", 400)

    try:
        found = get_state().store.set_beta_active(email, active)
    except StoreError as e:
        logger.warning("Setting beta flag failed: %s", e.kind.value)
        return _error("invalid_request", 400)

    if not found:
        return _error("not_found", 404)
    return jsonify({"status": "ok"})

@bp_admin.route("/campaigns/<campaign_id>", methods=["GET"])
@require_admin
def get_campaign(campaign_id):
    if not is_campaign_id(campaign_id):
        return _error("invalid_request", 400)

    try:
        campaign = get_state().store.get_campaign(campaign_id)
    except StoreError as e:
        logger.error("Loading campaign %s failed: %s", campaign_id, e.kind.value)
        return _error("server_error", 500)

    if campaign is None:
        return _error("not_found", 404)
    return jsonify({"status": "ok", "campaign": campaign.to_dict()})

@bp_admin.route("/campaigns/<campaign_id>/recipients", methods=["GET"])
@require_admin
def campaign_recipients(campaign_id):
    if not is_campaign_id(campaign_id):
        return _error("invalid_request", 400)

    limit = parse_int(request.args.get("limit"), 100, 1, 500)
    offset = parse_int(request.args.get("offset"), 0, 0, 1000000)

    try:
        page = get_state().store.list_campaign_recipients(campaign_id, limit=limit, offset=offset)
    except StoreError as e:
        logger.error("Listing recipients of %s failed: %s", campaign_id, e.kind.value)
        return _error("server_error", 500)

    return jsonify({
        "status": "ok",
        "total_count": page.total_count,
        "limit": limit,
        "offset": offset,
        "rows": [row.to_dict() for row in page.rows],
    })

@bp_admin.route("/campaigns/preview", methods=["POST"])
@require_admin
def preview_campaign():
    try:
        body = _json_body()
    except Rejected as e:
        return _error(e.code, e.status)

    try:
        preview = preview_recipients(get_state().store, body.get("segment") or {})
    except StoreError as e:
        logger.error("Campaign preview failed: %s", e.kind.value)
        return _error("server_error", 500)

    return jsonify({
        "status": "ok",
        "recipient_count": preview.recipient_count,
        "sample_emails": preview.sample_emails,
    })

@bp_admin.route("/campaigns/send", methods=["POST"])
@require_admin
def send():
    try:
        body = _json_body()
    except Rejected as e:
        return _error(e.code, e.status)

    config = get_config()
    state = get_state()
    try:
        result = send_campaign(state.store, get_mailer(config), config, body)
    except CampaignError as e:
        return _error(e.code, e.status)
    except StoreError as e:
        logger.error("Campaign send failed: %s", e.kind.value)
        state.notifier.send_diagnostic(
            level="error",
            service="Campaigns",
            message="Campaign send failed",
            details={"Kind": e.kind.value, "Request ID": g.get("request_id", "-")},
        )
        return _error("server_error", 500)

    if not result.get("already_processed"):
        state.notifier.send_diagnostic(
            level="info",
            service="Campaigns",
            message="Campaign sent",
            details={
                "Campaign": result["campaign_id"],
                "Recipients": result["recipient_count"],
                "Sent": result["sent"],
                "Failed": result["failed"],
            },
        )
    return jsonify(result)
