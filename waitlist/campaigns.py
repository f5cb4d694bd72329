# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Campaign recipients, rendering and delivery.

A campaign moves draft -> sending -> sent (or failed). The store's
`begin_send` is the only way into `sending`, and it is idempotent: a second
request for the same campaign gets `can_send=False` and reports
`already_processed` instead of delivering again.
"""

import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .config import WaitlistConfig
from .mail import Mailer
from .segments import CampaignSegment, is_recipient, normalize_safe_segment, to_list_query
from .store import WaitlistStore
from .unsubscribe_token import InvalidTokenInput, build_unsubscribe_url
from .utility.privacy import log_stage

logger = logging.getLogger(__name__)

WAITLIST_PAGE_LIMIT = 500
RECIPIENT_PAGE_LIMIT = 500
PREVIEW_LIMIT = 10
SEND_CHUNK_SIZE = 50
SUBJECT_MAX_LENGTH = 255  # campaigns.subject VARCHAR(255)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

@dataclass
class SendOutcome:
    ok: bool
    error_code: Optional[str] = None

@dataclass
class BatchTotals:
    sent: int = 0
    failed: int = 0

@dataclass
class CampaignPreview:
    segment: CampaignSegment
    recipient_count: int
    sample_emails: List[str]

class CampaignError(Exception):
    """A send request that cannot proceed. Carries the public error code and HTTP status."""

    def __init__(self, code: str, status: int):
        super().__init__(f"{code} ({status})")
        self.code = code
        self.status = status

def is_campaign_id(value) -> bool:
    return isinstance(value, str) and UUID_PATTERN.match(value) is not None

def markdown_to_html(markdown: str) -> str:
    """Minimal rendering: blank lines separate paragraphs, single newlines become <br />."""
    normalized = (markdown or "").strip()
    if not normalized:
        return "<p></p>"
    blocks = re.split(r"\n\s*\n", normalized)
    return "\n".join(f"<p>{html.escape(block).replace(chr(10), '<br />')}</p>" for block in blocks)

def render_campaign_content(body_markdown: str, unsubscribe_url: str):
    """Return (text, html) with the unsubscribe footer appended to both."""
    body_text = (body_markdown or "").strip()
    text = f"{body_text}\n\nUnsubscribe from marketing updates: {unsubscribe_url}".strip()
    html_body = (
        f"{markdown_to_html(body_text)}\n"
        f'<p><a href="{html.escape(unsubscribe_url, quote=True)}">Unsubscribe from marketing updates</a></p>'
    )
    return text, html_body

def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for index in range(0, len(items), size):
        yield items[index:index + size]

def iter_segment_rows(store: WaitlistStore, segment: CampaignSegment, page_limit: int = WAITLIST_PAGE_LIMIT):
    """Yield waitlist rows for a segment, one store page at a time."""
    query = to_list_query(segment)
    offset = 0
    while True:
        page = store.list_waitlist(query, limit=page_limit, offset=offset)
        for row in page.rows:
            yield row
        if len(page.rows) < page_limit:
            break
        offset += page_limit

def collect_recipients(store: WaitlistStore, segment_input: Optional[Mapping[str, Any]]) -> List[str]:
    """Every eligible email for the (safety-enforced) segment, lowercased and de-duplicated."""
    segment = normalize_safe_segment(segment_input)
    seen = {}
    for row in iter_segment_rows(store, segment):
        if not is_recipient(row, segment):
            continue
        email = (row.email or "").strip().lower()
        if email:
            seen.setdefault(email, None)
    return list(seen)

def preview_recipients(store: WaitlistStore, segment_input: Optional[Mapping[str, Any]]) -> CampaignPreview:
    segment = normalize_safe_segment(segment_input)
    page = store.list_waitlist(to_list_query(segment), limit=PREVIEW_LIMIT, offset=0)

    sample = []
    for row in page.rows:
        if not is_recipient(row, segment):
            continue
        email = (row.email or "").strip().lower()
        if email:
            sample.append(email)
        if len(sample) >= PREVIEW_LIMIT:
            break

    return CampaignPreview(segment=segment, recipient_count=page.total_count, sample_emails=sample)

def send_batch(emails: Sequence[str], subject: str, body_markdown: str, config: WaitlistConfig,
               mailer: Mailer, on_result: Callable[[str, SendOutcome], None]) -> BatchTotals:
    """Send to each recipient in turn, reporting every outcome through `on_result`.

    A failure for one recipient never stops the batch. Exceptions raised by
    `on_result` itself propagate to the caller.
    """
    totals = BatchTotals()
    secret = config.unsubscribe_secret
    base_url = config.unsubscribe_base_url

    for chunk in _chunks(list(emails), SEND_CHUNK_SIZE):
        for email in chunk:
            outcome = SendOutcome(ok=False, error_code="misconfigured_email")
            if secret and base_url:
                try:
                    unsubscribe_url = build_unsubscribe_url(base_url, secret, email, scope="marketing")
                except InvalidTokenInput:
                    unsubscribe_url = None
                if unsubscribe_url:
                    try:
                        text, html_body = render_campaign_content(body_markdown, unsubscribe_url)
                        result = mailer.send(email, subject, text, html_body)
                        outcome = SendOutcome(ok=result.ok, error_code=None if result.ok else result.error_code)
                    except Exception:
                        logger.exception("Campaign send to one recipient raised; continuing with the batch")
                        outcome = SendOutcome(ok=False, error_code="send_failed")

            if outcome.ok:
                totals.sent += 1
            else:
                totals.failed += 1
            on_result(email, outcome)

    return totals

def _pending_recipient_emails(store: WaitlistStore, campaign_id: str) -> List[str]:
    """Stored recipients not yet marked sent."""
    seen = {}
    offset = 0
    while True:
        page = store.list_campaign_recipients(campaign_id, limit=RECIPIENT_PAGE_LIMIT, offset=offset)
        for row in page.rows:
            if (row.status or "").strip().lower() == "sent":
                continue
            email = (row.email or "").strip().lower()
            if email:
                seen.setdefault(email, None)
        if len(page.rows) < RECIPIENT_PAGE_LIMIT:
            break
        offset += RECIPIENT_PAGE_LIMIT
    return list(seen)

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def send_campaign(store: WaitlistStore, mailer: Mailer, config: WaitlistConfig,
                  payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Create (or resume) a campaign and deliver it.

    `payload` is either {subject, body_markdown, segment} for a new campaign
    or {campaign_id} to resume one. Returns the response body; raises
    `CampaignError` for request problems and lets store errors propagate.
    Once `begin_send` has claimed the campaign, any exception marks it
    failed (best effort) before propagating.
    """
    requested_id = _clean(payload.get("campaign_id"))
    existing = bool(requested_id)
    if existing and not is_campaign_id(requested_id):
        raise CampaignError("invalid_request", 400)

    subject = _clean(payload.get("subject"))
    body_markdown = _clean(payload.get("body_markdown"))
    segment_input = payload.get("segment") if isinstance(payload.get("segment"), Mapping) else {}
    campaign_id = requested_id
    recipients: List[str] = []

    if not existing:
        if not subject or not body_markdown or len(subject) > SUBJECT_MAX_LENGTH:
            raise CampaignError("invalid_request", 400)
        safe_segment = normalize_safe_segment(segment_input)
        recipients = collect_recipients(store, safe_segment.to_dict())
        campaign_id = store.create_campaign(subject, body_markdown, safe_segment.to_dict())
        store.add_campaign_recipients(campaign_id, recipients)
        log_stage(logger, logging.INFO, "campaign", "created", campaign_id=campaign_id,
                  recipient_count=len(recipients))

    begin = store.begin_send(campaign_id)
    if begin is None:
        raise CampaignError("not_found", 404)

    if not begin.can_send:
        log_stage(logger, logging.INFO, "campaign", "already_processed", campaign_id=campaign_id,
                  campaign_status=begin.campaign_status)
        return {
            "status": "ok",
            "campaign_id": campaign_id,
            "campaign_status": begin.campaign_status or "unknown",
            "already_processed": True,
            "recipient_count": 0,
            "sent": 0,
            "failed": 0,
            "skipped": 0,
        }

    try:
        subject = _clean(begin.subject) or subject
        body_markdown = _clean(begin.body_markdown) or body_markdown
        safe_segment = normalize_safe_segment(begin.segment or segment_input)
        if not subject or not body_markdown:
            raise CampaignError("server_error", 500)

        if existing:
            recipients = _pending_recipient_emails(store, campaign_id)
            if not recipients:
                recipients = collect_recipients(store, safe_segment.to_dict())
                store.add_campaign_recipients(campaign_id, recipients)

        def record(email: str, outcome: SendOutcome):
            store.set_recipient_result(
                campaign_id,
                email,
                "sent" if outcome.ok else "failed",
                None if outcome.ok else (outcome.error_code or "send_failed"),
            )

        totals = send_batch(recipients, subject, body_markdown, config, mailer, record)
        store.finish_send(campaign_id, len(recipients))
    except Exception:
        try:
            store.mark_failed(campaign_id)
        except Exception:
            logger.exception("Could not mark campaign %s as failed", campaign_id)
        raise

    log_stage(logger, logging.INFO, "campaign", "sent", campaign_id=campaign_id,
              recipient_count=len(recipients), sent=totals.sent, failed=totals.failed)

    return {
        "status": "ok",
        "campaign_id": campaign_id,
        "campaign_status": "sent",
        "recipient_count": len(recipients),
        "sent": totals.sent,
        "failed": totals.failed,
        "skipped": max(len(recipients) - totals.sent - totals.failed, 0),
    }
