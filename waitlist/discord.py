# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

class DiscordNotifier:
    """
    Non-blocking Discord notifications for app diagnostics.

    Messages are queued and posted by a daemon worker thread, so a slow or
    rate-limited webhook never holds up a request. Callers must only put
    hashed identifiers in `details`; nothing here redacts.
    """

    LEVEL_COLORS = {
        'info': 0x0099ff,
        'warning': 0xffaa00,
        'error': 0xff0000,
        'critical': 0x990000,
    }

    def __init__(self, webhook_url: Optional[str] = None, max_retries: int = 3):
        self.webhook_url = webhook_url
        self.enabled = bool(webhook_url)
        self.max_retries = max_retries
        self.notification_queue: "queue.Queue[Dict[str, Any]]" = queue.Queue()

        self._worker_thread = None
        self._stop_worker = threading.Event()
        self._worker_lock = threading.Lock()

        if not self.enabled:
            logger.warning("No Discord webhook URL provided. Notifications will be disabled.")

    def _start_worker(self):
        with self._worker_lock:
            if self._worker_thread is None or not self._worker_thread.is_alive():
                self._stop_worker.clear()
                self._worker_thread = threading.Thread(
                    target=self._worker_loop,
                    daemon=True,
                    name="DiscordNotificationWorker"
                )
                self._worker_thread.start()

    def _worker_loop(self):
        logger.info("Discord notification worker started")
        while not self._stop_worker.is_set():
            try:
                payload = self.notification_queue.get(timeout=1.0)
            except queue.Empty:
                continue

            if not self._post_with_retry(payload):
                logger.error("Failed to send Discord notification after all retries")
            self.notification_queue.task_done()
        logger.info("Discord notification worker stopped")

    def _post_with_retry(self, payload: Dict[str, Any]) -> bool:
        """Returns True once Discord accepted the message (or rejected it for good)."""
        for attempt in range(self.max_retries + 1):
            try:
                response = requests.post(self.webhook_url, json=payload, timeout=10)
            except requests.exceptions.RequestException as e:
                logger.error(f"Network error sending Discord notification (attempt {attempt + 1}): {e}")
                if attempt < self.max_retries:
                    time.sleep((2 ** attempt) + 1)
                continue

            if response.status_code == 429:
                try:
                    retry_after = float(response.json().get('retry_after', 1.0))
                except (ValueError, AttributeError):
                    retry_after = 1.0
                logger.warning(f"Rate limited by Discord, waiting {retry_after:.2f}s before retry")
                time.sleep(retry_after)
                continue

            if not response.ok:
                logger.error(f"Discord webhook error {response.status_code}")
                # client errors other than 429 will not succeed on retry
                if 400 <= response.status_code < 500:
                    return True
                continue

            return True
        return False

    def _enqueue(self, payload: Dict[str, Any]):
        if not self.enabled:
            logger.debug("Discord notifications disabled")
            return
        self._start_worker()
        self.notification_queue.put(payload)

    def send_embed(self, title: str, description: str, color: int = 0x00ff00,
                   fields: Optional[List[Dict[str, Any]]] = None, username: Optional[str] = None):
        embed = {
            'title': title,
            'description': description,
            'color': color,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'footer': {'text': 'Toyb Waitlist Diagnostics'},
        }
        if fields:
            embed['fields'] = fields

        payload: Dict[str, Any] = {'embeds': [embed]}
        if username:
            payload['username'] = username
        self._enqueue(payload)

    def send_diagnostic(self, level: str, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Send a diagnostic notification.

        Args:
            level: 'info', 'warning', 'error' or 'critical'
            service: Name of the component reporting
            message: Short description
            details: Extra fields (hashed identifiers only)
        """
        fields = [
            {'name': 'Service', 'value': service, 'inline': True},
            {'name': 'Level', 'value': level.upper(), 'inline': True},
        ]
        for key, value in (details or {}).items():
            fields.append({'name': key, 'value': str(value), 'inline': False})

        self.send_embed(
            title=f"App Diagnostic - {level.upper()}",
            description=message,
            color=self.LEVEL_COLORS.get(level.lower(), 0x808080),
            fields=fields,
        )

    def send_startup_notification(self, service_name: str, version: Optional[str] = None):
        details = {'Version': version} if version else {}
        self.send_diagnostic('info', service_name, 'Service started successfully', details)

    def shutdown(self):
        logger.info("Shutting down Discord notification manager")
        self._stop_worker.set()
