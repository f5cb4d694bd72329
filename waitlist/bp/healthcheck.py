# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from flask import Blueprint, jsonify, make_response, request

from ..config import WaitlistConfig, get_config
from ..mail import get_email_provider
from ..state import get_state
from ..store import StoreError
from ..version import __version__

bp_healthcheck = Blueprint('healthcheck', __name__)

# In-memory cache for healthcheck, per worker process
_healthcheck_cache: Dict[str, Any] = {
    "response": None,
    "timestamp": None,
    "status_code": None
}
_healthcheck_lock = threading.Lock()

REQUIRED_SETTINGS = {
    "WAITLIST_UNSUBSCRIBE_SECRET": "unsubscribe_secret",
    "WAITLIST_IP_SALT": "ip_salt",
    "WAITLIST_ADMIN_TOKEN": "admin_token",
}
OPTIONAL_SETTINGS = {
    "WAITLIST_UNSUBSCRIBE_BASE_URL": "unsubscribe_base_url",
    "DISCORD_WEBHOOK_URL": "discord_webhook_url",
}

class Healthcheck:
    def __init__(self, config: WaitlistConfig, store):
        self.config = config
        self.store = store
        self.overall_healthy = True
        self.result = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "checks": {},
            "environment": "production" if config.production else "development"
        }

    def run(self):
        self.check_database()
        self.check_email()
        self.check_discord()
        self.check_environment()
        self.result["status"] = "healthy" if self.overall_healthy else "unhealthy"
        return self.result, self.overall_healthy

    def check_database(self):
        try:
            self.store.ping()
            self.result["checks"]["database"] = {
                "status": "healthy",
                "message": "Database connection is healthy",
            }
        except StoreError as e:
            self.overall_healthy = False
            self.result["checks"]["database"] = {
                "status": "unhealthy",
                "message": f"Database check failed ({e.kind.value})",
            }

    def check_email(self):
        provider = get_email_provider(self.config)
        status = "healthy"
        if provider == "mock":
            # fine for development, a misconfiguration in production
            status = "unhealthy" if self.config.production else "degraded"
        if status == "unhealthy":
            self.overall_healthy = False
        self.result["checks"]["email"] = {
            "status": status,
            "message": f"Email provider: {provider}",
            "details": {
                "provider": provider,
                "email_sending_enabled": not self.config.no_email,
                "from_configured": bool(self.config.email_from or self.config.smtp_user),
            }
        }

    def check_discord(self):
        configured = bool(self.config.discord_webhook_url)
        self.result["checks"]["discord"] = {
            "status": "healthy" if configured else "degraded",
            "message": "Discord notifications configured" if configured else "Discord notifications not configured",
        }

    def check_environment(self):
        missing_required = [name for name, attr in REQUIRED_SETTINGS.items() if not getattr(self.config, attr)]
        missing_optional = [name for name, attr in OPTIONAL_SETTINGS.items() if not getattr(self.config, attr)]
        env_status = "healthy"
        if missing_required:
            env_status = "unhealthy"
            self.overall_healthy = False
        elif missing_optional:
            env_status = "degraded"
        self.result["checks"]["environment"] = {
            "status": env_status,
            "message": "Environment variables configured properly" if env_status == "healthy" else "Some environment variables missing",
            "details": {
                "missing_required": missing_required,
                "missing_optional": missing_optional,
            }
        }

@bp_healthcheck.route("/api/health")
@bp_healthcheck.route("/health")
def health():
    """Health of the database, email, Discord and configuration. `?c=1` allows a cached answer."""
    use_cache = request.args.get("c") == "1"
    now = datetime.now(timezone.utc)

    with _healthcheck_lock:
        cache_valid = (
            _healthcheck_cache["response"] is not None and
            _healthcheck_cache["timestamp"] is not None and
            (now - _healthcheck_cache["timestamp"]) < timedelta(minutes=1)
        )
        if use_cache and cache_valid:
            resp = make_response(jsonify(_healthcheck_cache["response"]), _healthcheck_cache["status_code"])
            resp.headers["X-Cache"] = "HIT"
            return resp

    hc = Healthcheck(get_config(), get_state().store)
    health_status, overall_healthy = hc.run()
    status_code = 200 if overall_healthy else 503

    with _healthcheck_lock:
        _healthcheck_cache["response"] = health_status
        _healthcheck_cache["timestamp"] = now
        _healthcheck_cache["status_code"] = status_code

    resp = make_response(jsonify(health_status), status_code)
    resp.headers["X-Cache"] = "MISS"
    return resp
