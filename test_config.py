#!/usr/bin/env python3
# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Unit tests for environment-driven configuration.
"""

import os
import runpy
import unittest
from unittest.mock import patch

from waitlist.config import DEFAULT_ALLOWED_ORIGINS, WaitlistConfig, resolve_env

class TestWaitlistConfig(unittest.TestCase):
    def test_defaults(self):
        config = WaitlistConfig.from_env({})
        self.assertEqual(config.allowed_origins, DEFAULT_ALLOWED_ORIGINS)
        self.assertEqual(config.allowed_origin_suffix, ".pages.dev")
        self.assertFalse(config.send_on_duplicate)
        self.assertFalse(config.turnstile_enabled)
        self.assertEqual(config.smtp_port, 587)
        self.assertEqual(config.mysql["host"], "127.0.0.1")
        self.assertIsNone(config.discord_webhook_url)
        self.assertFalse(config.production)

    def test_origin_list(self):
        config = WaitlistConfig.from_env({"WAITLIST_ALLOWED_ORIGINS": " https://a.example/, ,https://b.example "})
        self.assertEqual(config.allowed_origins, ("https://a.example", "https://b.example"))

    def test_flags_require_literal_true(self):
        config = WaitlistConfig.from_env({"WAITLIST_SEND_ON_DUPLICATE": "TRUE", "WAITLIST_TURNSTILE_ENABLED": "1"})
        self.assertTrue(config.send_on_duplicate)
        self.assertFalse(config.turnstile_enabled)

    def test_values_are_trimmed(self):
        config = WaitlistConfig.from_env({
            "WAITLIST_UNSUBSCRIBE_SECRET": "  s3cret  ",
            "EMAIL_PROVIDER": " Resend ",
            "SMTP_PORT": "not-a-port",
            "FLASK_ENV": "production",
        })
        self.assertEqual(config.unsubscribe_secret, "s3cret")
        self.assertEqual(config.email_provider, "resend")
        self.assertEqual(config.smtp_port, 587)
        self.assertTrue(config.production)

    def test_smtp_user_falls_back_to_from_address(self):
        config = WaitlistConfig.from_env({"WAITLIST_FROM": "hello@toyb.space"})
        self.assertEqual(config.smtp_user, "hello@toyb.space")

    @patch.dict("os.environ", {"WAITLIST_IP_SALT": "from-env", "WAITLIST_ADMIN_TOKEN": "env-token"})
    def test_overrides_win(self):
        env = resolve_env({"WAITLIST_IP_SALT": "override", "WAITLIST_ADMIN_TOKEN": None})
        self.assertEqual(env["WAITLIST_IP_SALT"], "override")
        self.assertEqual(env["WAITLIST_ADMIN_TOKEN"], "env-token")

class TestGunicornConfig(unittest.TestCase):
    def test_access_log_has_no_client_address(self):
        path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "gunicorn.conf.py")
        log_format = runpy.run_path(path)["access_log_format"]
        for field in ("%(h)s", "X-Forwarded-For", "%(q)s", "%(r)s"):
            self.assertNotIn(field, log_format)
        self.assertIn("%({X-Request-ID}o)s", log_format)

if __name__ == '__main__':
    unittest.main()
