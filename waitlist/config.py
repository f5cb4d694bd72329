# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple
from dotenv import load_dotenv
from flask import current_app, g, has_app_context

# Load environment variables from .env file
load_dotenv()

DEFAULT_ALLOWED_ORIGINS = (
    "https://toyb.space",
    "https://www.toyb.space",
    "http://localhost:4321",
    "http://127.0.0.1:4321",
)
DEFAULT_ALLOWED_ORIGIN_SUFFIX = ".pages.dev"

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def _flag(value) -> bool:
    return _clean(value).lower() == "true"

def _int(value, default: int) -> int:
    try:
        return int(_clean(value))
    except ValueError:
        return default

def _origins(value) -> Tuple[str, ...]:
    entries = tuple(entry.strip().rstrip("/") for entry in _clean(value).split(",") if entry.strip())
    return entries or DEFAULT_ALLOWED_ORIGINS

@dataclass(frozen=True)
class WaitlistConfig:
    """Resolved configuration for one request.

    Built by `get_config()` from the process environment overlaid with the
    app's runtime overrides, then passed down to services explicitly.
    """

    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    allowed_origin_suffix: str = DEFAULT_ALLOWED_ORIGIN_SUFFIX
    ip_salt: str = ""
    unsubscribe_secret: str = ""
    unsubscribe_base_url: str = ""
    send_on_duplicate: bool = False
    turnstile_enabled: bool = False
    turnstile_secret: str = ""
    admin_token: str = ""

    # Email
    email_provider: str = ""
    no_email: bool = False
    email_from: str = ""
    resend_api_key: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""

    # Database
    mysql: Mapping[str, object] = field(default_factory=dict)

    discord_webhook_url: Optional[str] = None
    production: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "WaitlistConfig":
        return cls(
            allowed_origins=_origins(env.get("WAITLIST_ALLOWED_ORIGINS")),
            allowed_origin_suffix=_clean(env.get("WAITLIST_ALLOWED_ORIGIN_SUFFIX", DEFAULT_ALLOWED_ORIGIN_SUFFIX)),
            ip_salt=_clean(env.get("WAITLIST_IP_SALT")),
            unsubscribe_secret=_clean(env.get("WAITLIST_UNSUBSCRIBE_SECRET")),
            unsubscribe_base_url=_clean(env.get("WAITLIST_UNSUBSCRIBE_BASE_URL")),
            send_on_duplicate=_flag(env.get("WAITLIST_SEND_ON_DUPLICATE")),
            turnstile_enabled=_flag(env.get("WAITLIST_TURNSTILE_ENABLED")),
            turnstile_secret=_clean(env.get("TURNSTILE_SECRET_KEY")),
            admin_token=_clean(env.get("WAITLIST_ADMIN_TOKEN")),
            email_provider=_clean(env.get("EMAIL_PROVIDER")).lower(),
            no_email=bool(_clean(env.get("NO_EMAIL"))),
            email_from=_clean(env.get("WAITLIST_FROM")),
            resend_api_key=_clean(env.get("RESEND_API_KEY")),
            smtp_server=_clean(env.get("SMTP_SERVER")) or "smtp.gmail.com",
            smtp_port=_int(env.get("SMTP_PORT"), 587),
            smtp_user=_clean(env.get("SMTP_USER")) or _clean(env.get("WAITLIST_FROM")),
            smtp_password=_clean(env.get("SMTP_PASSWORD")),
            mysql={
                "host": _clean(env.get("MYSQL_HOST")) or "127.0.0.1",
                "user": _clean(env.get("MYSQL_USER")) or None,
                "port": _int(env.get("MYSQL_PORT"), 3306),
                "password": _clean(env.get("MYSQL_PASSWORD")) or None,
                "database": _clean(env.get("MYSQL_DATABASE")) or None,
            },
            discord_webhook_url=_clean(env.get("DISCORD_WEBHOOK_URL")) or None,
            production=_clean(env.get("FLASK_ENV")) == "production",
        )

def resolve_env(overrides: Optional[Mapping[str, str]] = None) -> dict:
    """Static environment overlaid by runtime overrides."""
    merged = dict(os.environ)
    if overrides:
        merged.update({key: value for key, value in overrides.items() if value is not None})
    return merged

def get_config() -> WaitlistConfig:
    """Return the configuration for the current request, resolving it on first use."""
    if not has_app_context():
        return WaitlistConfig.from_env(resolve_env())

    cached = g.get("waitlist_config")
    if cached is None:
        cached = WaitlistConfig.from_env(resolve_env(current_app.config.get("WAITLIST_ENV")))
        g.waitlist_config = cached
    return cached
