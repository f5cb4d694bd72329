# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import html
import logging
import os
import re
import smtplib
import threading
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Protocol

import requests

from ..config import WaitlistConfig

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

with open(os.path.join(_TEMPLATE_DIR, "WELCOME.txt"), "r") as file:
    WELCOME_TEMPLATE = file.read()

with open(os.path.join(_TEMPLATE_DIR, "WELCOME.html"), "r") as file:
    WELCOME_HTML_TEMPLATE = file.read()

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

@dataclass
class SendResult:
    ok: bool
    provider: str
    error_code: Optional[str] = None  # "misconfigured_email" | "resend_error" | "smtp_error"
    provider_status: Optional[int] = None

@dataclass
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: str

class EmailSender(Protocol):
    provider: str

    def send(self, message: OutgoingEmail) -> SendResult: ...

def extract_address(value: str) -> str:
    """`Toyb <hello@toyb.space>` -> `hello@toyb.space`"""
    match = re.search(r"<([^<>]+)>", value or "")
    return (match.group(1) if match else (value or "")).strip().lower()

def is_valid_from_address(value: str) -> bool:
    address = extract_address(value)
    if not _EMAIL_PATTERN.match(address):
        return False
    domain = address.split("@", 1)[1]
    return "." in domain and not domain.startswith(".") and not domain.endswith(".")

class SMTPManager:
    def __init__(self, smtp_server: str,
                 smtp_port: int,
                 smtp_password: str,
                 smtp_user: str,
                 smtp_from_email: Optional[str] = None):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_from_email = smtp_from_email or smtp_user
        self.smtp_password = smtp_password
        self.smtp_connection = None

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.close()

    def connect(self):
        """Establish connection to SMTP server. Raises smtplib.SMTPException or OSError."""
        self.smtp_connection = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30)
        self.smtp_connection.starttls()
        self.smtp_connection.login(self.smtp_user, self.smtp_password)

    def send_email(self, to_email: str, subject: str, message: str, html_content: Optional[str] = None):
        """Send email with optional HTML content"""
        if not self.smtp_connection:
            self.connect()

        if html_content:
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(message, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))
        else:
            msg = MIMEText(message)

        msg['From'] = self.smtp_from_email
        msg['To'] = to_email
        msg['Subject'] = subject
        self.smtp_connection.send_message(msg)

    def is_connected(self):
        """Check if SMTP connection is active"""
        return self.smtp_connection is not None

    def close(self):
        """Close SMTP connection"""
        if self.smtp_connection:
            try:
                self.smtp_connection.quit()
            except smtplib.SMTPException as e:
                logger.warning(f"Error closing SMTP connection: {e}")
            self.smtp_connection = None

class SMTPSender:
    provider = "smtp"

    def __init__(self, config: WaitlistConfig):
        self.config = config

    def send(self, message: OutgoingEmail) -> SendResult:
        config = self.config
        from_address = config.email_from or config.smtp_user
        if not config.smtp_password or not config.smtp_user or not is_valid_from_address(from_address):
            return SendResult(ok=False, provider=self.provider, error_code="misconfigured_email")

        try:
            with SMTPManager(config.smtp_server, config.smtp_port, config.smtp_password,
                             config.smtp_user, from_address) as smtp:
                smtp.send_email(message.to, message.subject, message.text, html_content=message.html)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {type(e).__name__}")
            return SendResult(ok=False, provider=self.provider, error_code="smtp_error")

        return SendResult(ok=True, provider=self.provider)

class ResendSender:
    provider = "resend"

    def __init__(self, config: WaitlistConfig, timeout: float = 15):
        self.config = config
        self.timeout = timeout

    def send(self, message: OutgoingEmail) -> SendResult:
        api_key = self.config.resend_api_key
        from_address = self.config.email_from
        if not api_key or not is_valid_from_address(from_address):
            return SendResult(ok=False, provider=self.provider, error_code="misconfigured_email")

        try:
            response = requests.post(
                RESEND_API_URL,
                json={
                    "from": from_address,
                    "to": [message.to],
                    "subject": message.subject,
                    "text": message.text,
                    "html": message.html,
                },
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Resend request failed: {type(e).__name__}")
            return SendResult(ok=False, provider=self.provider, error_code="resend_error")

        if not response.ok:
            logger.error(f"Resend API error {response.status_code}")
            return SendResult(ok=False, provider=self.provider, error_code="resend_error",
                              provider_status=response.status_code)

        return SendResult(ok=True, provider=self.provider)

class MockSender:
    """Keeps messages in memory instead of sending them. Used for development and tests."""
    provider = "mock"

    def __init__(self):
        self.outbox: List[OutgoingEmail] = []
        self._lock = threading.Lock()

    def send(self, message: OutgoingEmail) -> SendResult:
        with self._lock:
            self.outbox.append(message)
        logger.debug("Mock email accepted (%d in outbox)", len(self.outbox))
        return SendResult(ok=True, provider=self.provider)

def get_email_provider(config: WaitlistConfig) -> str:
    if config.no_email:
        return "mock"
    if config.email_provider in ("smtp", "resend", "mock"):
        return config.email_provider
    if config.resend_api_key:
        return "resend"
    if config.smtp_password:
        return "smtp"
    # production must not silently drop mail
    return "resend" if config.production else "mock"

def render_welcome(marketing_consent: bool, unsubscribe_url: str) -> OutgoingEmail:
    """Subject and bodies of the signup confirmation. `to` is left empty."""
    if marketing_consent:
        subject = "Welcome to Toyb (marketing enabled)"
        marketing_line = "You also opted in for marketing updates."
        link_label = "Unsubscribe from marketing"
    else:
        subject = "Welcome to Toyb"
        marketing_line = "You did not opt in for marketing updates."
        link_label = "Manage marketing preference"

    text = WELCOME_TEMPLATE.format(
        marketing_line=marketing_line,
        link_label=link_label,
        unsubscribe_url=unsubscribe_url,
    ).strip()
    html_body = WELCOME_HTML_TEMPLATE.format(
        subject=html.escape(subject),
        marketing_line=html.escape(marketing_line),
        link_label=html.escape(link_label),
        unsubscribe_url=html.escape(unsubscribe_url, quote=True),
    )
    return OutgoingEmail(to="", subject=subject, text=text, html=html_body)

class Mailer:
    """Front for one email provider."""

    def __init__(self, sender: EmailSender):
        self.sender = sender

    @property
    def provider(self) -> str:
        return self.sender.provider

    def send(self, to: str, subject: str, text: str, html: str) -> SendResult:
        return self.sender.send(OutgoingEmail(to=to, subject=subject, text=text, html=html))

    def send_welcome(self, to: str, marketing_consent: bool, unsubscribe_url: str) -> SendResult:
        message = render_welcome(marketing_consent, unsubscribe_url)
        return self.send(to, message.subject, message.text, message.html)

    @staticmethod
    def from_config(config: WaitlistConfig) -> "Mailer":
        provider = get_email_provider(config)
        if provider == "smtp":
            return Mailer(SMTPSender(config))
        if provider == "resend":
            return Mailer(ResendSender(config))
        return Mailer(MockSender())
