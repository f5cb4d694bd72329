# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from dataclasses import dataclass
from typing import Optional

from flask import current_app

from .config import WaitlistConfig
from .mail import Mailer
from .ratelimit import RateLimiter
from .store import WaitlistStore

@dataclass
class WaitlistState:
    """Per-process collaborators, kept on `app.extensions["waitlist"]`."""
    store: WaitlistStore
    limiter: RateLimiter
    invalid_attempts: RateLimiter
    notifier: object
    mailer: Optional[Mailer] = None

def get_state() -> WaitlistState:
    return current_app.extensions["waitlist"]

def get_mailer(config: WaitlistConfig) -> Mailer:
    """The injected mailer, else one built for this request's configuration."""
    state = get_state()
    if state.mailer is not None:
        return state.mailer
    return Mailer.from_config(config)
