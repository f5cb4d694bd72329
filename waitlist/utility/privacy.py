# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Helpers for keeping raw emails and IP addresses out of logs and counters."""

import hashlib
import logging
from typing import Optional

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()

def salted_hash(value: Optional[str], salt: Optional[str]) -> Optional[str]:
    """Return sha256("value:salt"), or None when either side is missing."""
    if not value or not salt:
        return None
    return sha256_hex(f"{value}:{salt}")

def hash_prefix(value: Optional[str]) -> str:
    """First 8 characters of a hash, for log correlation."""
    return value[:8] if value else "none"

def log_stage(logger: logging.Logger, level: int, channel: str, stage: str, **fields):
    """Emit a single `key=value` log line for a request stage.

    Callers only pass hashed identifiers; this function does no redaction.
    """
    parts = [f"stage={stage}"]
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = str(value).lower()
        parts.append(f"{key}={value}")
    logger.log(level, "[%s] %s", channel, " ".join(parts))
