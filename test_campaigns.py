#!/usr/bin/env python3
# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Unit tests for campaign segments, rendering and the send state machine.
"""

import unittest
import uuid
from datetime import datetime, timezone

from fakes import ExplodingSender, FailingSender, FakeStore, unavailable
from waitlist.campaigns import (
    CampaignError,
    collect_recipients,
    is_campaign_id,
    markdown_to_html,
    preview_recipients,
    render_campaign_content,
    send_batch,
    send_campaign,
)
from waitlist.config import WaitlistConfig
from waitlist.mail import Mailer, MockSender
from waitlist.segments import (
    CampaignSegment,
    enforce_safety,
    is_recipient,
    normalize_safe_segment,
    normalize_segment,
    to_list_query,
)
from waitlist.store import StoreError, StoreErrorKind, WaitlistRow

CONFIG = WaitlistConfig(unsubscribe_secret="campaign-secret", unsubscribe_base_url="https://toyb.space")

class TestSegments(unittest.TestCase):
    def test_defaults(self):
        segment = normalize_segment(None)
        self.assertEqual(segment, CampaignSegment(marketing_only=True, subscribed_only=True))

    def test_parsing(self):
        segment = normalize_segment({
            "marketing_only": "false",
            "subscribed_only": False,
            "source": " landing ",
            "beta": "ACTIVE",
            "from": "2025-01-01",
            "to": "January 5th",
        })
        self.assertFalse(segment.marketing_only)
        self.assertFalse(segment.subscribed_only)
        self.assertEqual(segment.source, "landing")
        self.assertEqual(segment.beta, "active")
        self.assertEqual(segment.from_date, "2025-01-01")
        self.assertIsNone(segment.to_date)

    def test_impossible_dates_are_dropped(self):
        segment = normalize_segment({"from": "2026-02-30", "to": "2026-13-45"})
        self.assertIsNone(segment.from_date)
        self.assertIsNone(segment.to_date)
        self.assertEqual(normalize_segment({"to": "2024-02-29"}).to_date, "2024-02-29")

    def test_unknown_beta_value(self):
        self.assertIsNone(normalize_segment({"beta": "none"}).beta)

    def test_safety_is_enforced(self):
        """Campaigns can never target unsubscribed or non-consenting entries."""
        segment = normalize_safe_segment({"marketing_only": False, "subscribed_only": False, "source": "ads"})
        self.assertTrue(segment.marketing_only)
        self.assertTrue(segment.subscribed_only)
        self.assertEqual(segment.source, "ads")
        self.assertEqual(enforce_safety(CampaignSegment(False, False)), CampaignSegment(True, True))

    def test_to_dict_uses_wire_names(self):
        data = CampaignSegment(from_date="2025-01-01", to_date="2025-02-01").to_dict()
        self.assertEqual(data["from"], "2025-01-01")
        self.assertEqual(data["to"], "2025-02-01")
        self.assertNotIn("from_date", data)

    def test_list_query(self):
        query = to_list_query(CampaignSegment(source="landing", beta="invited"))
        self.assertTrue(query.marketing)
        self.assertTrue(query.subscribed_only)
        self.assertEqual(query.source, "landing")
        self.assertEqual(query.beta, "invited")

    def test_is_recipient(self):
        segment = CampaignSegment()
        now = datetime.now(timezone.utc)
        self.assertTrue(is_recipient(WaitlistRow("a@example.com", marketing_consent=True), segment))
        self.assertFalse(is_recipient(WaitlistRow("b@example.com", marketing_consent=False), segment))
        self.assertFalse(is_recipient(WaitlistRow("c@example.com", marketing_consent=True, unsubscribed_at=now), segment))

        invited = CampaignSegment(beta="invited")
        self.assertFalse(is_recipient(WaitlistRow("d@example.com", marketing_consent=True), invited))
        self.assertTrue(is_recipient(WaitlistRow("d@example.com", marketing_consent=True, beta_invited_at=now), invited))

        active = CampaignSegment(beta="active")
        self.assertFalse(is_recipient(WaitlistRow("e@example.com", marketing_consent=True, beta_invited_at=now), active))
        self.assertTrue(is_recipient(WaitlistRow("e@example.com", marketing_consent=True, beta_active=True), active))

class TestRendering(unittest.TestCase):
    def test_empty_markdown(self):
        self.assertEqual(markdown_to_html(""), "<p></p>")
        self.assertEqual(markdown_to_html("   \n  "), "<p></p>")

    def test_paragraphs_and_escaping(self):
        self.assertEqual(
            markdown_to_html("Hello <b>there</b>\nfriend\n\nSecond & last"),
            "<p>Hello &lt;b&gt;there&lt;/b&gt;<br />friend</p>\n<p>Second &amp; last</p>",
        )

    def test_footer(self):
        url = "https://toyb.space/unsubscribe?email=a%40b.co&scope=marketing"
        text, html_body = render_campaign_content("Big news", url)
        self.assertEqual(text, f"Big news\n\nUnsubscribe from marketing updates: {url}")
        self.assertIn('href="https://toyb.space/unsubscribe?email=a%40b.co&amp;scope=marketing"', html_body)
        self.assertTrue(html_body.startswith("<p>Big news</p>"))

    def test_campaign_ids(self):
        self.assertTrue(is_campaign_id(str(uuid.uuid4())))
        self.assertTrue(is_campaign_id(str(uuid.uuid4()).upper()))
        self.assertFalse(is_campaign_id("not-a-uuid"))
        self.assertFalse(is_campaign_id("00000000-0000-0000-0000-000000000000"))
        self.assertFalse(is_campaign_id(None))

class TestRecipients(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore()
        self.store.seed("keep@example.com")
        self.store.seed("Mixed@Example.com")
        self.store.seed("mixed@example.com")
        self.store.seed("no-consent@example.com", marketing_consent=False)
        self.store.seed("gone@example.com", unsubscribed_at=datetime.now(timezone.utc))

    def test_collect(self):
        recipients = collect_recipients(self.store, {"marketing_only": False, "subscribed_only": False})
        self.assertEqual(sorted(recipients), ["keep@example.com", "mixed@example.com"])

    def test_collect_pages_through_store(self):
        store = FakeStore()
        for index in range(1203):
            store.seed(f"user{index}@example.com")
        self.assertEqual(len(collect_recipients(store, {})), 1203)
        self.assertEqual(store.calls.count("list_waitlist"), 3)

    def test_preview(self):
        preview = preview_recipients(self.store, {})
        self.assertEqual(preview.recipient_count, 3)
        self.assertIn("keep@example.com", preview.sample_emails)
        self.assertNotIn("no-consent@example.com", preview.sample_emails)
        self.assertTrue(preview.segment.marketing_only)

    def test_preview_sample_is_capped(self):
        store = FakeStore()
        for index in range(25):
            store.seed(f"user{index}@example.com")
        preview = preview_recipients(store, {})
        self.assertEqual(preview.recipient_count, 25)
        self.assertEqual(len(preview.sample_emails), 10)

class TestSendBatch(unittest.TestCase):
    def test_sends_each_recipient(self):
        sender = MockSender()
        results = []
        totals = send_batch(["a@example.com", "b@example.com"], "Hi", "Body", CONFIG, Mailer(sender),
                            lambda email, outcome: results.append((email, outcome.ok)))
        self.assertEqual((totals.sent, totals.failed), (2, 0))
        self.assertEqual(results, [("a@example.com", True), ("b@example.com", True)])
        self.assertIn("Unsubscribe from marketing updates: https://toyb.space/unsubscribe?", sender.outbox[0].text)

    def test_misconfigured(self):
        sender = MockSender()
        results = []
        totals = send_batch(["a@example.com"], "Hi", "Body", WaitlistConfig(), Mailer(sender),
                            lambda email, outcome: results.append(outcome.error_code))
        self.assertEqual((totals.sent, totals.failed), (0, 1))
        self.assertEqual(results, ["misconfigured_email"])
        self.assertEqual(sender.outbox, [])

    def test_provider_failure_does_not_stop_batch(self):
        sender = FailingSender()
        results = []
        totals = send_batch(["a@example.com", "b@example.com"], "Hi", "Body", CONFIG, Mailer(sender),
                            lambda email, outcome: results.append(outcome.error_code))
        self.assertEqual(totals.failed, 2)
        self.assertEqual(results, ["resend_error", "resend_error"])
        self.assertEqual(len(sender.attempts), 2)

    def test_raising_recipient_does_not_stop_batch(self):
        sender = ExplodingSender("b@example.com")
        results = []
        totals = send_batch(["a@example.com", "b@example.com", "c@example.com"], "Hi", "Body", CONFIG,
                            Mailer(sender), lambda email, outcome: results.append((email, outcome.error_code)))
        self.assertEqual((totals.sent, totals.failed), (2, 1))
        self.assertEqual(results, [("a@example.com", None), ("b@example.com", "send_failed"), ("c@example.com", None)])
        self.assertEqual([message.to for message in sender.outbox], ["a@example.com", "c@example.com"])

    def test_result_callback_errors_propagate(self):
        def record(email, outcome):
            raise StoreError(StoreErrorKind.UNAVAILABLE)

        with self.assertRaises(StoreError):
            send_batch(["a@example.com", "b@example.com"], "Hi", "Body", CONFIG, Mailer(MockSender()), record)

class TestSendCampaign(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore()
        self.store.seed("one@example.com")
        self.store.seed("two@example.com")
        self.store.seed("quiet@example.com", marketing_consent=False)
        self.sender = MockSender()
        self.mailer = Mailer(self.sender)

    def send(self, payload, mailer=None):
        return send_campaign(self.store, mailer or self.mailer, CONFIG, payload)

    def test_new_campaign(self):
        result = self.send({"subject": "Launch", "body_markdown": "We are live", "segment": {"marketing_only": False}})
        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["campaign_status"], "sent")
        self.assertEqual((result["recipient_count"], result["sent"], result["failed"], result["skipped"]), (2, 2, 0, 0))
        self.assertEqual(sorted(message.to for message in self.sender.outbox), ["one@example.com", "two@example.com"])

        campaign = self.store.campaigns[result["campaign_id"]]
        self.assertEqual(campaign.status, "sent")
        self.assertEqual(campaign.recipient_count, 2)
        self.assertTrue(campaign.segment["marketing_only"])
        statuses = {row.email: row.status for row in self.store.recipients[result["campaign_id"]].values()}
        self.assertEqual(statuses, {"one@example.com": "sent", "two@example.com": "sent"})

    def test_second_send_is_already_processed(self):
        first = self.send({"subject": "Launch", "body_markdown": "We are live"})
        second = self.send({"campaign_id": first["campaign_id"]})
        self.assertTrue(second["already_processed"])
        self.assertEqual(second["campaign_status"], "sent")
        self.assertEqual(second["sent"], 0)
        self.assertEqual(len(self.sender.outbox), 2)

    def test_missing_content(self):
        with self.assertRaises(CampaignError) as ctx:
            self.send({"subject": "Launch"})
        self.assertEqual((ctx.exception.code, ctx.exception.status), ("invalid_request", 400))
        self.assertEqual(self.store.campaigns, {})

    def test_subject_too_long(self):
        with self.assertRaises(CampaignError) as ctx:
            self.send({"subject": "x" * 256, "body_markdown": "We are live"})
        self.assertEqual((ctx.exception.code, ctx.exception.status), ("invalid_request", 400))
        self.assertNotIn("create_campaign", self.store.calls)

        result = self.send({"subject": "x" * 255, "body_markdown": "We are live"})
        self.assertEqual(result["campaign_status"], "sent")

    def test_bad_campaign_id(self):
        with self.assertRaises(CampaignError) as ctx:
            self.send({"campaign_id": "123"})
        self.assertEqual(ctx.exception.status, 400)

    def test_unknown_campaign(self):
        with self.assertRaises(CampaignError) as ctx:
            self.send({"campaign_id": str(uuid.uuid4())})
        self.assertEqual((ctx.exception.code, ctx.exception.status), ("not_found", 404))

    def test_recipient_exception_is_recorded(self):
        result = self.send({"subject": "Launch", "body_markdown": "We are live"},
                           mailer=Mailer(ExplodingSender("one@example.com")))
        self.assertEqual((result["campaign_status"], result["sent"], result["failed"]), ("sent", 1, 1))
        recipients = self.store.recipients[result["campaign_id"]]
        self.assertEqual((recipients["one@example.com"].status, recipients["one@example.com"].error_code),
                         ("failed", "send_failed"))
        self.assertEqual(recipients["two@example.com"].status, "sent")

    def test_failure_marks_campaign_failed(self):
        self.store.failures["set_recipient_result"] = unavailable()
        with self.assertRaises(StoreError):
            self.send({"subject": "Launch", "body_markdown": "We are live"})
        campaign = next(iter(self.store.campaigns.values()))
        self.assertEqual(campaign.status, "failed")
        self.assertIn("mark_failed", self.store.calls)

    def test_mark_failed_error_does_not_mask_original(self):
        self.store.failures["finish_send"] = StoreError(StoreErrorKind.UNKNOWN, "finish failed")
        self.store.failures["mark_failed"] = unavailable()
        with self.assertRaises(StoreError) as ctx:
            self.send({"subject": "Launch", "body_markdown": "We are live"})
        self.assertEqual(ctx.exception.kind, StoreErrorKind.UNKNOWN)

    def test_failed_campaign_can_be_resumed(self):
        self.store.failures["finish_send"] = unavailable()
        with self.assertRaises(StoreError):
            self.send({"subject": "Launch", "body_markdown": "We are live"})
        del self.store.failures["finish_send"]
        campaign_id = next(iter(self.store.campaigns))
        self.assertEqual(self.store.campaigns[campaign_id].status, "failed")
        for row in self.store.recipients[campaign_id].values():
            row.status = "pending"

        result = self.send({"campaign_id": campaign_id})
        self.assertEqual(result["campaign_status"], "sent")
        self.assertEqual(result["sent"], 2)
        self.assertEqual(self.store.campaigns[campaign_id].status, "sent")

    def test_resume_skips_delivered_recipients(self):
        campaign_id = self.store.create_campaign("Launch", "We are live", {})
        self.store.add_campaign_recipients(campaign_id, ["one@example.com", "two@example.com"])
        self.store.set_recipient_result(campaign_id, "one@example.com", "sent", None)

        result = self.send({"campaign_id": campaign_id})
        self.assertEqual(result["recipient_count"], 1)
        self.assertEqual([message.to for message in self.sender.outbox], ["two@example.com"])

    def test_store_error_before_begin_propagates(self):
        self.store.failures["create_campaign"] = unavailable()
        with self.assertRaises(StoreError):
            self.send({"subject": "Launch", "body_markdown": "We are live"})
        self.assertNotIn("mark_failed", self.store.calls)

if __name__ == '__main__':
    unittest.main()
