# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import logging
from os import getenv, getpid
from flask import g, has_request_context

class MultiLineFormatter(logging.Formatter):
    """Formatter that repeats the record prefix on every line of a multi-line message."""

    def format(self, record):
        formatted = super().format(record)
        message = record.getMessage()
        if "\n" not in message:
            return formatted

        first_line = formatted.split("\n", 1)[0]
        first_message_line = message.split("\n", 1)[0]
        cut = first_line.rfind(first_message_line)
        prefix = first_line[:cut] if cut >= 0 else ""

        lines = formatted.split("\n")
        return "\n".join([lines[0]] + [prefix + line for line in lines[1:]])

class GunicornWorkerFilter(logging.Filter):
    """Adds `worker_id` to log records (Gunicorn worker number, else the PID)."""

    def filter(self, record):
        worker_id = getenv("GUNICORN_WORKER_ID")
        record.worker_id = f"worker{worker_id}" if worker_id else f"PID {getpid()}"
        return True

class RequestIdFilter(logging.Filter):
    """Adds `request_id` to log records emitted while handling a request."""

    def filter(self, record):
        request_id = "-"
        if has_request_context():
            request_id = getattr(g, "request_id", "-")
        record.request_id = request_id
        return True
