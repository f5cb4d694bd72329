# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
Locust load testing configuration for the Toyb waitlist backend.
Drives the public signup and unsubscribe endpoints.
"""

from locust import HttpUser, task, between
import os
import random
import string

ORIGIN = os.getenv("LOADTEST_ORIGIN", "http://localhost:4321")

def generate_fake_email():
    """Generate a fake email address without external dependencies"""
    domains = ["example.com", "test.com", "loadtest.org", "demo.net"]
    username = ''.join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{username}@{random.choice(domains)}"

def signup_payload(email, **extra):
    payload = {
        "email": email,
        "source": "loadtest",
        "age_confirmed": True,
        "privacy_accepted": True,
        "marketing_consent": random.random() < 0.5,
        "privacy_version": "2025-01",
    }
    payload.update(extra)
    return payload

class WaitlistSignupUser(HttpUser):
    """
    Simulates visitors joining the waitlist.
    Each simulated user has its own forwarded IP so the per-IP limiter is not the bottleneck.
    """
    wait_time = between(1, 5)

    def on_start(self):
        self.email = generate_fake_email()
        self.headers = {
            "Origin": ORIGIN,
            "X-Forwarded-For": f"10.{random.randint(0, 255)}.{random.randint(0, 255)}.{random.randint(1, 254)}",
        }

    @task(10)
    def join(self):
        self.client.post("/api/waitlist", json=signup_payload(self.email), headers=self.headers)

    @task(2)
    def join_again(self):
        """Duplicate signups are a success without a second email"""
        self.client.post("/api/waitlist", json=signup_payload(self.email), headers=self.headers,
                         name="join_duplicate")

    @task(1)
    def preflight(self):
        self.client.options("/api/waitlist", headers={**self.headers, "Access-Control-Request-Method": "POST"})

    @task(1)
    def healthcheck(self):
        self.client.get("/api/health?c=1", name="healthcheck_cached")

class AbusiveUser(HttpUser):
    """
    Bots and scripts: honeypot fills, bad origins, oversized bodies and
    rapid requests from one IP (should hit 429 after 8 requests).
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.headers = {"Origin": ORIGIN, "X-Forwarded-For": "192.0.2.10"}

    @task(4)
    def rapid_signup(self):
        with self.client.post("/api/waitlist", json=signup_payload(generate_fake_email()),
                              headers=self.headers, name="rapid_signup", catch_response=True) as response:
            if response.status_code in (200, 429):
                response.success()

    @task(2)
    def honeypot(self):
        self.client.post("/api/waitlist", json=signup_payload(generate_fake_email(), company="Acme"),
                         headers=self.headers, name="honeypot")

    @task(1)
    def forbidden_origin(self):
        with self.client.post("/api/waitlist", json=signup_payload(generate_fake_email()),
                              headers={"Origin": "https://evil.example"}, name="forbidden_origin",
                              catch_response=True) as response:
            if response.status_code == 403:
                response.success()

    @task(1)
    def oversized(self):
        with self.client.post("/api/waitlist", data="x" * 4096,
                              headers={**self.headers, "Content-Type": "application/json"},
                              name="oversized", catch_response=True) as response:
            if response.status_code == 413:
                response.success()

class UnsubscribeLinkUser(HttpUser):
    """Forged unsubscribe links; every one should be refused with 403."""
    wait_time = between(1, 3)

    @task
    def forged_link(self):
        params = {
            "email": generate_fake_email(),
            "scope": random.choice(["all", "marketing"]),
            "ts": "1700000000",
            "sig": "0" * 64,
        }
        with self.client.get("/api/unsubscribe", params=params, name="unsubscribe_forged",
                             catch_response=True) as response:
            if response.status_code == 403:
                response.success()

"""
Usage Examples:

1. Signup load:
   locust -f locustfile.py --users 20 --spawn-rate 2 --host http://localhost:8000 WaitlistSignupUser

2. Anti-abuse checks under load:
   locust -f locustfile.py --users 10 --spawn-rate 5 --host http://localhost:8000 AbusiveUser

Set EMAIL_PROVIDER=mock (or NO_EMAIL=1) on the target so no real email is sent, and make
LOADTEST_ORIGIN one of WAITLIST_ALLOWED_ORIGINS.
"""
