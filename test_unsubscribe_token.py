#!/usr/bin/env python3
# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Unit tests for signed unsubscribe tokens.
"""

import hashlib
import hmac
import unittest
from urllib.parse import parse_qs, urlsplit

from waitlist.unsubscribe_token import (
    UNSUBSCRIBE_TTL_SECONDS,
    InvalidTokenInput,
    build_unsubscribe_url,
    sign_unsubscribe_token,
    timing_safe_hex_equal,
    verify_unsubscribe_token,
)

SECRET = "unit-test-secret"
TS = 1700000000

class TestSignUnsubscribeToken(unittest.TestCase):
    def test_signature_is_hmac_of_payload(self):
        """The signature is HMAC-SHA256 over email|scope|ts in lowercase hex."""
        expected = hmac.new(SECRET.encode(), f"user@example.com|marketing|{TS}".encode(), hashlib.sha256).hexdigest()
        self.assertEqual(sign_unsubscribe_token(SECRET, "user@example.com", "marketing", TS), expected)

    def test_inputs_are_normalized(self):
        """Email and scope are trimmed and lowercased; ts may be a string."""
        a = sign_unsubscribe_token(SECRET, "  User@Example.COM ", " MARKETING", str(TS))
        b = sign_unsubscribe_token(SECRET, "user@example.com", "marketing", TS)
        self.assertEqual(a, b)

    def test_scopes_sign_differently(self):
        self.assertNotEqual(
            sign_unsubscribe_token(SECRET, "user@example.com", "all", TS),
            sign_unsubscribe_token(SECRET, "user@example.com", "marketing", TS),
        )

    def test_invalid_inputs_raise(self):
        bad_inputs = [
            ("", "user@example.com", "marketing", TS),
            (SECRET, "", "marketing", TS),
            (SECRET, "user@example.com", "newsletter", TS),
            (SECRET, "user@example.com", "marketing", 0),
            (SECRET, "user@example.com", "marketing", -5),
            (SECRET, "user@example.com", "marketing", "abc"),
            (SECRET, "user@example.com", "marketing", 1.5),
            (SECRET, "user@example.com", "marketing", True),
        ]
        for args in bad_inputs:
            with self.subTest(args=args):
                with self.assertRaises(InvalidTokenInput):
                    sign_unsubscribe_token(*args)

class TestTimingSafeHexEqual(unittest.TestCase):
    def test_equal_signatures(self):
        sig = "a" * 64
        self.assertTrue(timing_safe_hex_equal(sig, sig))

    def test_case_insensitive(self):
        self.assertTrue(timing_safe_hex_equal("ab" * 32, "AB" * 32))

    def test_rejects_malformed(self):
        self.assertFalse(timing_safe_hex_equal("a" * 64, "a" * 63))
        self.assertFalse(timing_safe_hex_equal("a" * 64, "g" * 64))
        self.assertFalse(timing_safe_hex_equal("a" * 64, None))
        self.assertFalse(timing_safe_hex_equal("a" * 64, "b" * 64))

class TestVerifyUnsubscribeToken(unittest.TestCase):
    def setUp(self):
        self.sig = sign_unsubscribe_token(SECRET, "user@example.com", "marketing", TS)

    def verify(self, now, sig=None, **overrides):
        params = {"email": "user@example.com", "scope": "marketing", "ts": str(TS), "sig": sig or self.sig}
        params.update(overrides)
        return verify_unsubscribe_token(SECRET, params["email"], params["scope"], params["ts"], params["sig"], now=now)

    def test_valid_token(self):
        result = self.verify(TS + 60)
        self.assertTrue(result.ok)
        self.assertEqual(result.email, "user@example.com")
        self.assertEqual(result.scope, "marketing")
        self.assertEqual(result.ts, TS)

    def test_ttl_boundary(self):
        """A token is still valid at exactly seven days and expired one second later."""
        self.assertTrue(self.verify(TS + UNSUBSCRIBE_TTL_SECONDS).ok)
        expired = self.verify(TS + UNSUBSCRIBE_TTL_SECONDS + 1)
        self.assertFalse(expired.ok)
        self.assertEqual(expired.reason, "expired")

    def test_flipped_signature_character(self):
        flipped = ("0" if self.sig[10] != "0" else "1").join([self.sig[:10], self.sig[11:]])
        result = self.verify(TS + 60, sig=flipped)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "invalid")

    def test_tampered_fields(self):
        self.assertEqual(self.verify(TS + 60, email="other@example.com").reason, "invalid")
        self.assertEqual(self.verify(TS + 60, scope="all").reason, "invalid")
        self.assertEqual(self.verify(TS + 60, ts=str(TS + 1)).reason, "invalid")

    def test_future_timestamp_skew(self):
        """Up to five minutes of clock skew is tolerated."""
        self.assertTrue(self.verify(TS - 300).ok)
        self.assertEqual(self.verify(TS - 301).reason, "invalid")

    def test_forged_expired_token_is_invalid(self):
        result = self.verify(TS + UNSUBSCRIBE_TTL_SECONDS * 2, sig="0" * 64)
        self.assertEqual(result.reason, "invalid")

    def test_missing_parts_are_invalid(self):
        self.assertEqual(self.verify(TS + 60, email="").reason, "invalid")
        self.assertEqual(self.verify(TS + 60, scope="everything").reason, "invalid")
        self.assertEqual(self.verify(TS + 60, ts="soon").reason, "invalid")
        self.assertEqual(
            verify_unsubscribe_token("", "user@example.com", "marketing", TS, self.sig, now=TS).reason,
            "invalid",
        )

class TestBuildUnsubscribeUrl(unittest.TestCase):
    def test_url_shape(self):
        url = build_unsubscribe_url("https://toyb.space/", SECRET, "User@Example.com", ts=TS)
        parts = urlsplit(url)
        self.assertEqual(f"{parts.scheme}://{parts.netloc}{parts.path}", "https://toyb.space/unsubscribe")

        query = parse_qs(parts.query)
        self.assertEqual(query["email"], ["user@example.com"])
        self.assertEqual(query["scope"], ["marketing"])
        self.assertEqual(query["ts"], [str(TS)])
        self.assertEqual(query["sig"], [sign_unsubscribe_token(SECRET, "user@example.com", "marketing", TS)])

    def test_generated_link_verifies(self):
        url = build_unsubscribe_url("https://toyb.space", SECRET, "user@example.com", scope="all", ts=TS)
        query = {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}
        result = verify_unsubscribe_token(SECRET, query["email"], query["scope"], query["ts"], query["sig"], now=TS)
        self.assertTrue(result.ok)
        self.assertEqual(result.scope, "all")

    def test_missing_base_url_raises(self):
        with self.assertRaises(InvalidTokenInput):
            build_unsubscribe_url("", SECRET, "user@example.com", ts=TS)

if __name__ == '__main__':
    unittest.main()
