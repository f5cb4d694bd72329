# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import atexit
import faulthandler
import logging
import re
import time
import uuid
from os import getenv
from typing import Mapping, Optional

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from mysql.connector import __version__ as mysql_version

from .abuse import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS
from .config import WaitlistConfig, resolve_env
from .discord import DiscordNotifier
from .mail import get_email_provider
from .ratelimit import CounterStore, InMemoryCounter, RateLimiter
from .services.unsubscribe_service import INVALID_ATTEMPT_MAX, INVALID_ATTEMPT_WINDOW_SECONDS
from .state import WaitlistState
from .store import WaitlistStore
from .utility import GunicornWorkerFilter, MultiLineFormatter, RequestIdFilter
from .version import __version__

faulthandler.enable()

logger = logging.getLogger("waitlist")

LOG_FORMAT = '[%(worker_id)s] %(asctime)-21s %(levelname)-8s %(name)-12s [%(request_id)s] | %(message)s'

def configure_logging():
    """Attach the worker/request-id aware handler to the `waitlist` logger (once)."""
    level = (logging.DEBUG if getenv("FLASK_ENV") == "development" or getenv("DEBUG_LOGGING") is not None else logging.INFO)
    level = logging.getLevelName(getenv("LOG_LEVEL", "").upper()) if getenv("LOG_LEVEL") else level
    if not isinstance(level, int):
        level = logging.INFO

    logger.setLevel(level)
    logger.propagate = False  # Prevent duplicate lines through the root logger
    if any(getattr(h, "_waitlist_handler", False) for h in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(MultiLineFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(GunicornWorkerFilter())
    handler.addFilter(RequestIdFilter())
    handler._waitlist_handler = True
    logger.addHandler(handler)

def _cors_origins(config: WaitlistConfig):
    origins = list(config.allowed_origins)
    if config.allowed_origin_suffix:
        origins.append(re.compile(r"^https://[A-Za-z0-9.-]+" + re.escape(config.allowed_origin_suffix) + r"$"))
    return origins

def create_app(env_overrides: Optional[Mapping[str, str]] = None,
               store: Optional[WaitlistStore] = None,
               mailer=None,
               notifier=None,
               counter: Optional[CounterStore] = None,
               invalid_attempt_counter: Optional[CounterStore] = None) -> Flask:
    """Build the Flask app.

    `env_overrides` is overlaid on the process environment for every request.
    Anything not injected is built from configuration: the MySQL store (with
    the schema applied), the Discord notifier and in-memory counters. Without
    an injected mailer, one is chosen per request from EMAIL_PROVIDER.
    """
    configure_logging()

    app = Flask(__name__)
    app.config["WAITLIST_ENV"] = dict(env_overrides or {})
    config = WaitlistConfig.from_env(resolve_env(app.config["WAITLIST_ENV"]))
    app.debug = app.debug or (getenv("FLASK_DEBUG", False) != False or getenv("FLASK_ENV", False) == "development")

    if notifier is None:
        notifier = DiscordNotifier(config.discord_webhook_url)

    if store is None:
        logger.info("Using MySQL Connector/Python version: %s", mysql_version)
        logger.info("Connecting to MySQL database with config:")
        logger.info(f"* Host: {config.mysql['host']}")
        logger.info(f"* Port: {config.mysql['port']}")
        logger.info(f"* Database: {config.mysql['database']}")
        store = WaitlistStore(config.mysql)
        store.apply_schema()

    app.extensions["waitlist"] = WaitlistState(
        store=store,
        limiter=RateLimiter(counter or InMemoryCounter(RATE_LIMIT_WINDOW_SECONDS), RATE_LIMIT_MAX_REQUESTS),
        invalid_attempts=RateLimiter(
            invalid_attempt_counter or InMemoryCounter(INVALID_ATTEMPT_WINDOW_SECONDS), INVALID_ATTEMPT_MAX
        ),
        notifier=notifier,
        mailer=mailer,
    )

    CORS(app, resources={
        r"/api/waitlist": {
            "origins": _cors_origins(config),
            "methods": ["POST", "OPTIONS"],
            "allow_headers": ["Content-Type"],
        }
    })

    @app.before_request
    def assign_request_id():
        g.request_id = str(uuid.uuid4())
        g.request_start_time = time.time()

    @app.after_request
    def finalize_response(response):
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Request-ID"] = g.get("request_id", "-")

        # No query string: unsubscribe links carry the email address.
        started = g.get("request_start_time")
        logging.getLogger("waitlist.request").info(
            '%s %s %s %s',
            request.method,
            request.path,
            response.status_code,
            f"{(time.time() - started):.2f}s" if started else "-",
        )
        return response

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning(f"404 error: {request.path} not found")
        return jsonify({"status": "error", "code": "not_found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        headers = {}
        if getattr(error, "valid_methods", None):
            headers["Allow"] = ", ".join(error.valid_methods)
        return jsonify({"status": "error", "code": "method_not_allowed"}), 405, headers

    @app.errorhandler(500)
    def handle_internal_error(error):
        """Log the traceback and report the failure to Discord."""
        original = getattr(error, "original_exception", None) or error
        logger.error("Internal server error on %s %s", request.method, request.path, exc_info=original)

        notifier.send_diagnostic(
            level="error",
            service="Flask Application",
            message="Internal server error occurred",
            details={
                "Error Type": type(original).__name__,
                "Endpoint": request.path,
                "Method": request.method,
                "Request ID": g.get("request_id", "-"),
            }
        )

        body = {"status": "error", "code": "server_error"}
        if app.debug:
            body["message"] = str(original)
        return jsonify(body), 500

    @app.route('/')
    def index():
        return jsonify({"status": "ok", "service": "toyb-waitlist", "version": __version__})

    from .bp import bp_admin, bp_healthcheck, bp_unsubscribe, bp_waitlist
    app.register_blueprint(bp_waitlist, url_prefix='/api')
    app.register_blueprint(bp_unsubscribe, url_prefix='/api')
    app.register_blueprint(bp_admin, url_prefix='/api/admin')
    app.register_blueprint(bp_healthcheck, url_prefix='/')

    logger.info("Toyb waitlist backend version %s starting up", __version__)

    provider = get_email_provider(config)
    if config.no_email:
        logger.warning("Email sending is disabled because NO_EMAIL is set; using the mock provider.")
    else:
        logger.info("Email provider: %s", provider)
        if provider == "mock" and config.production:
            logger.warning("* Production is using the mock email provider.")
    if not config.unsubscribe_secret:
        logger.warning("* WAITLIST_UNSUBSCRIBE_SECRET is not set; welcome emails will not be sent.")

    if config.production and not app.debug:
        notifier.send_startup_notification("Toyb Waitlist Backend", __version__)

    if hasattr(notifier, "shutdown"):
        atexit.register(notifier.shutdown)

    return app
