# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
In-memory stand-ins used by the unit tests.

`FakeStore` mirrors the public methods of `waitlist.store.WaitlistStore` and
returns the same dataclasses, so routes and services can be exercised without
MySQL. Any operation can be made to fail by putting a `StoreError` in
`store.failures[<method name>]`.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from waitlist import create_app
from waitlist.mail import Mailer, MockSender, SendResult
from waitlist.store import (
    BeginSendResult,
    Campaign,
    CampaignRecipientRow,
    RecipientPage,
    StoreError,
    StoreErrorKind,
    UpsertResult,
    WaitlistPage,
    WaitlistRow,
    WaitlistStats,
)

ALLOWED_ORIGIN = "https://toyb.space"
ADMIN_TOKEN = "admin-token"
UNSUBSCRIBE_SECRET = "test-secret"

BASE_ENV = {
    "WAITLIST_ALLOWED_ORIGINS": "https://toyb.space,http://localhost:4321",
    "WAITLIST_ALLOWED_ORIGIN_SUFFIX": ".pages.dev",
    "WAITLIST_IP_SALT": "test-salt",
    "WAITLIST_UNSUBSCRIBE_SECRET": UNSUBSCRIBE_SECRET,
    "WAITLIST_UNSUBSCRIBE_BASE_URL": "https://toyb.space",
    "WAITLIST_SEND_ON_DUPLICATE": "false",
    "WAITLIST_TURNSTILE_ENABLED": "false",
    "TURNSTILE_SECRET_KEY": "",
    "WAITLIST_ADMIN_TOKEN": ADMIN_TOKEN,
    "EMAIL_PROVIDER": "mock",
    "NO_EMAIL": "",
    "DISCORD_WEBHOOK_URL": "",
    "FLASK_ENV": "testing",
}

def unavailable():
    return StoreError(StoreErrorKind.UNAVAILABLE, "database is down")

class FailingSender:
    """Sender that refuses every message with a provider error."""
    provider = "resend"

    def __init__(self, error_code="resend_error"):
        self.error_code = error_code
        self.attempts = []

    def send(self, message):
        self.attempts.append(message)
        return SendResult(ok=False, provider=self.provider, error_code=self.error_code, provider_status=500)

class ExplodingSender(MockSender):
    """Sender that raises for the given addresses (or all of them) and delivers the rest."""

    def __init__(self, *explode_for):
        super().__init__()
        self.explode_for = set(explode_for)

    def send(self, message):
        if not self.explode_for or message.to in self.explode_for:
            raise RuntimeError("provider crashed")
        return super().send(message)

class FakeStore:
    def __init__(self):
        self.rows = {}
        self.privacy_versions = {}
        self.campaigns = {}
        self.recipients = {}
        self.failures = {}
        self.calls = []

    def _record(self, name):
        self.calls.append(name)
        error = self.failures.get(name)
        if error is not None:
            raise error

    def seed(self, email, **fields):
        """Add a waitlist row directly. Defaults to a subscribed, marketing-consenting entry."""
        fields.setdefault("marketing_consent", True)
        fields.setdefault("created_at", datetime.now(timezone.utc) - timedelta(minutes=len(self.rows)))
        row = WaitlistRow(email=email, **fields)
        self.rows[email] = row
        self.privacy_versions[email] = "2025-01"
        return row

    def ping(self):
        self._record("ping")
        return True

    def apply_schema(self, schema_path=None):
        self._record("apply_schema")
        return 0

    # Waitlist

    def upsert_waitlist(self, email, source, user_agent, ip_hash, marketing_consent, privacy_version):
        self._record("upsert_waitlist")
        row = self.rows.get(email)
        if row is None:
            self.rows[email] = WaitlistRow(
                email=email,
                created_at=datetime.now(timezone.utc),
                source=source,
                marketing_consent=marketing_consent,
            )
            self.privacy_versions[email] = privacy_version
            return UpsertResult(inserted=True, updated=False)

        updated = False
        if marketing_consent and not row.marketing_consent:
            row.marketing_consent = True
            updated = True
        if self.privacy_versions.get(email) != privacy_version:
            self.privacy_versions[email] = privacy_version
            updated = True
        return UpsertResult(inserted=False, updated=updated)

    def apply_unsubscribe(self, email, scope):
        self._record("apply_unsubscribe")
        row = self.rows.get(email)
        if row is None:
            return
        if scope == "all":
            row.unsubscribed_at = row.unsubscribed_at or datetime.now(timezone.utc)
        row.marketing_consent = False

    def _matches(self, row, query):
        if query.marketing is not None and row.marketing_consent != query.marketing:
            return False
        if query.source and row.source != query.source:
            return False
        if query.subscribed_only and row.unsubscribed_at is not None:
            return False
        if query.beta == "invited" and row.beta_invited_at is None:
            return False
        if query.beta == "active" and not row.beta_active:
            return False
        if query.beta == "none" and row.beta_invited_at is not None:
            return False
        created = row.created_at.date().isoformat()
        if query.from_date and created < query.from_date:
            return False
        if query.to_date and created > query.to_date:
            return False
        return True

    def list_waitlist(self, query, limit, offset):
        self._record("list_waitlist")
        matching = [row for row in self.rows.values() if self._matches(row, query)]
        matching.sort(key=lambda row: row.email)
        matching.sort(key=lambda row: row.created_at, reverse=True)
        return WaitlistPage(rows=matching[offset:offset + limit], total_count=len(matching))

    def stats(self):
        self._record("stats")
        week_ago = datetime.now(timezone.utc) - timedelta(days=7)
        rows = list(self.rows.values())
        return WaitlistStats(
            total=len(rows),
            marketing_opt_in=sum(1 for r in rows if r.marketing_consent and r.unsubscribed_at is None),
            unsubscribed=sum(1 for r in rows if r.unsubscribed_at is not None),
            last_7_days=sum(1 for r in rows if r.created_at >= week_ago),
            beta_invited=sum(1 for r in rows if r.beta_invited_at is not None),
            beta_active=sum(1 for r in rows if r.beta_active),
        )

    def invite_beta_emails(self, emails):
        self._record("invite_beta_emails")
        updated = 0
        for email in emails:
            row = self.rows.get(email)
            if row is not None and row.beta_invited_at is None:
                row.beta_invited_at = datetime.now(timezone.utc)
                updated += 1
        return updated

    def invite_beta_segment(self, query):
        self._record("invite_beta_segment")
        updated = 0
        for row in self.rows.values():
            if self._matches(row, query) and row.beta_invited_at is None:
                row.beta_invited_at = datetime.now(timezone.utc)
                updated += 1
        return updated

    def set_beta_active(self, email, active):
        self._record("set_beta_active")
        row = self.rows.get(email)
        if row is None:
            return False
        row.beta_active = active
        if active and row.beta_invited_at is None:
            row.beta_invited_at = datetime.now(timezone.utc)
        return True

    # Campaigns

    def create_campaign(self, subject, body_markdown, segment):
        self._record("create_campaign")
        campaign_id = str(uuid.uuid4())
        self.campaigns[campaign_id] = Campaign(
            id=campaign_id,
            subject=subject,
            body_markdown=body_markdown,
            segment=dict(segment),
            created_at=datetime.now(timezone.utc),
        )
        self.recipients[campaign_id] = {}
        return campaign_id

    def add_campaign_recipients(self, campaign_id, emails):
        self._record("add_campaign_recipients")
        emails = list(emails)
        existing = self.recipients.setdefault(campaign_id, {})
        for email in emails:
            existing.setdefault(email, CampaignRecipientRow(email=email))
        return len(emails)

    def get_campaign(self, campaign_id):
        self._record("get_campaign")
        return self.campaigns.get(campaign_id)

    def begin_send(self, campaign_id):
        self._record("begin_send")
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return None
        claimed = campaign.status in ("draft", "failed")
        if claimed:
            campaign.status = "sending"
            campaign.started_at = datetime.now(timezone.utc)
        return BeginSendResult(
            can_send=claimed,
            campaign_status=campaign.status,
            subject=campaign.subject,
            body_markdown=campaign.body_markdown,
            segment=dict(campaign.segment),
        )

    def list_campaign_recipients(self, campaign_id, limit, offset):
        self._record("list_campaign_recipients")
        rows = sorted(self.recipients.get(campaign_id, {}).values(), key=lambda row: row.email)
        return RecipientPage(rows=rows[offset:offset + limit], total_count=len(rows))

    def set_recipient_result(self, campaign_id, email, status, error_code):
        self._record("set_recipient_result")
        row = self.recipients.get(campaign_id, {}).get(email)
        if row is not None:
            row.status = status
            row.error_code = error_code
            row.updated_at = datetime.now(timezone.utc)

    def finish_send(self, campaign_id, recipient_count):
        self._record("finish_send")
        campaign = self.campaigns[campaign_id]
        campaign.status = "sent"
        campaign.recipient_count = recipient_count
        campaign.finished_at = datetime.now(timezone.utc)

    def mark_failed(self, campaign_id):
        self._record("mark_failed")
        campaign = self.campaigns[campaign_id]
        campaign.status = "failed"
        campaign.finished_at = datetime.now(timezone.utc)

def make_app(env=None, store=None, sender=None, notifier=None):
    """App wired to in-memory collaborators. Returns (app, store, sender, notifier)."""
    overrides = dict(BASE_ENV)
    overrides.update(env or {})
    store = store if store is not None else FakeStore()
    sender = sender if sender is not None else MockSender()
    notifier = notifier if notifier is not None else MagicMock()
    app = create_app(env_overrides=overrides, store=store, mailer=Mailer(sender), notifier=notifier)
    return app, store, sender, notifier
