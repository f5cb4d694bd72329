# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import re
from dataclasses import dataclass, asdict, replace
from datetime import date
from typing import Any, Dict, Mapping, Optional

from .store import WaitlistQuery, WaitlistRow

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

@dataclass(frozen=True)
class CampaignSegment:
    marketing_only: bool = True
    subscribed_only: bool = True
    source: Optional[str] = None
    beta: Optional[str] = None  # "invited" | "active"
    from_date: Optional[str] = None
    to_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["from"] = data.pop("from_date")
        data["to"] = data.pop("to_date")
        return data

def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def parse_boolean(value) -> Optional[bool]:
    """JSON booleans and the strings "true"/"false"; anything else is None."""
    if value is True or value == "true":
        return True
    if value is False or value == "false":
        return False
    return None

def parse_date(value) -> Optional[str]:
    normalized = _clean(value)
    if not normalized or not DATE_PATTERN.match(normalized):
        return None
    try:
        date.fromisoformat(normalized)
    except ValueError:
        return None
    return normalized

def parse_beta(value, allow_none: bool = False) -> Optional[str]:
    """`invited`/`active`, plus `none` (never invited) for admin listings."""
    normalized = _clean(value).lower()
    allowed = ("invited", "active", "none") if allow_none else ("invited", "active")
    return normalized if normalized in allowed else None

def normalize_segment(data: Optional[Mapping[str, Any]],
                      default_marketing_only: bool = True,
                      default_subscribed_only: bool = True) -> CampaignSegment:
    if not isinstance(data, Mapping):
        data = {}

    marketing_only = parse_boolean(data.get("marketing_only"))
    subscribed_only = parse_boolean(data.get("subscribed_only"))

    return CampaignSegment(
        marketing_only=default_marketing_only if marketing_only is None else marketing_only,
        subscribed_only=default_subscribed_only if subscribed_only is None else subscribed_only,
        source=_clean(data.get("source")) or None,
        beta=parse_beta(data.get("beta")),
        from_date=parse_date(data.get("from")),
        to_date=parse_date(data.get("to")),
    )

def enforce_safety(segment: CampaignSegment) -> CampaignSegment:
    """Outbound campaigns only ever reach subscribed, marketing-consenting entries."""
    return replace(segment, marketing_only=True, subscribed_only=True)

def normalize_safe_segment(data: Optional[Mapping[str, Any]]) -> CampaignSegment:
    return enforce_safety(normalize_segment(data))

def is_recipient(row: WaitlistRow, segment: CampaignSegment) -> bool:
    if row.unsubscribed_at is not None:
        return False
    if segment.marketing_only and row.marketing_consent is not True:
        return False
    if segment.beta == "invited" and row.beta_invited_at is None:
        return False
    if segment.beta == "active" and row.beta_active is not True:
        return False
    return True

def to_list_query(segment: CampaignSegment) -> WaitlistQuery:
    """Store query for enumerating a campaign segment (subscribed entries only)."""
    return WaitlistQuery(
        marketing=True if segment.marketing_only else None,
        source=segment.source,
        subscribed_only=True,
        beta=segment.beta,
        from_date=segment.from_date,
        to_date=segment.to_date,
    )
