# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""
MySQL-backed waitlist store.

Every public method is one logical "RPC": it borrows a pooled connection,
runs its statements in a single transaction and returns typed rows. Driver
failures surface as `StoreError` carrying a `StoreErrorKind`.
"""

import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from mysql.connector import errors as mysql_errors
from mysql.connector import pooling

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "databaseSchema.sql")

class StoreErrorKind(Enum):
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

class StoreError(Exception):
    """A store operation failed."""

    def __init__(self, kind: StoreErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

def _isoformat(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value

@dataclass
class WaitlistRow:
    email: str
    created_at: Optional[Any] = None
    source: str = "landing"
    marketing_consent: bool = False
    unsubscribed_at: Optional[Any] = None
    beta_invited_at: Optional[Any] = None
    beta_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {key: _isoformat(value) for key, value in asdict(self).items()}

@dataclass
class UpsertResult:
    inserted: bool
    updated: bool

@dataclass
class WaitlistQuery:
    """Filter for the paged admin listing. `None` means "don't filter"."""
    marketing: Optional[bool] = None
    source: Optional[str] = None
    subscribed_only: bool = False
    beta: Optional[str] = None  # "invited" | "active" | "none"
    from_date: Optional[str] = None
    to_date: Optional[str] = None

@dataclass
class WaitlistPage:
    rows: List[WaitlistRow]
    total_count: int

@dataclass
class WaitlistStats:
    total: int = 0
    marketing_opt_in: int = 0
    unsubscribed: int = 0
    last_7_days: int = 0
    beta_invited: int = 0
    beta_active: int = 0

@dataclass
class Campaign:
    id: str
    subject: str
    body_markdown: str
    segment: Dict[str, Any] = field(default_factory=dict)
    status: str = "draft"
    recipient_count: int = 0
    created_at: Optional[Any] = None
    started_at: Optional[Any] = None
    finished_at: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: _isoformat(value) for key, value in asdict(self).items()}

@dataclass
class BeginSendResult:
    can_send: bool
    campaign_status: str
    subject: str = ""
    body_markdown: str = ""
    segment: Dict[str, Any] = field(default_factory=dict)

@dataclass
class CampaignRecipientRow:
    email: str
    status: str = "pending"
    error_code: Optional[str] = None
    updated_at: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: _isoformat(value) for key, value in asdict(self).items()}

@dataclass
class RecipientPage:
    rows: List[CampaignRecipientRow]
    total_count: int

def _classify(error: Exception) -> StoreErrorKind:
    if isinstance(error, (mysql_errors.IntegrityError, mysql_errors.DataError)):
        return StoreErrorKind.CONSTRAINT_VIOLATION
    if isinstance(error, (mysql_errors.InterfaceError, mysql_errors.OperationalError, mysql_errors.PoolError)):
        return StoreErrorKind.UNAVAILABLE
    return StoreErrorKind.UNKNOWN

def _day(value) -> Optional[date]:
    """Impossible or malformed dates leave the filter open."""
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        return None

def _where(query: WaitlistQuery):
    clauses, params = [], []
    if query.marketing is not None:
        clauses.append("marketing_consent = %s")
        params.append(query.marketing)
    if query.source:
        clauses.append("source = %s")
        params.append(query.source)
    if query.subscribed_only:
        clauses.append("unsubscribed_at IS NULL")
    if query.beta == "invited":
        clauses.append("beta_invited_at IS NOT NULL")
    elif query.beta == "active":
        clauses.append("beta_active = TRUE")
    elif query.beta == "none":
        clauses.append("beta_invited_at IS NULL")
    from_day = _day(query.from_date)
    if from_day:
        clauses.append("created_at >= %s")
        params.append(from_day)
    to_day = _day(query.to_date)
    if to_day:
        # inclusive end date
        clauses.append("created_at < %s")
        params.append(to_day + timedelta(days=1))
    sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    return sql, params

_WAITLIST_COLUMNS = "email, created_at, source, marketing_consent, unsubscribed_at, beta_invited_at, beta_active"

def _waitlist_row(row) -> WaitlistRow:
    return WaitlistRow(
        email=row[0],
        created_at=row[1],
        source=row[2],
        marketing_consent=bool(row[3]),
        unsubscribed_at=row[4],
        beta_invited_at=row[5],
        beta_active=bool(row[6]),
    )

def _load_segment(raw) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        loaded = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}

class WaitlistStore:
    """Waitlist and campaign persistence on a MySQL connection pool."""

    def __init__(self, connection_info: Dict[str, Any], pool_size: int = 10):
        pool_config = dict(connection_info)
        pool_config.update({
            "pool_name": "waitlist_pool",
            "pool_size": pool_size,
            "pool_reset_session": True,
            "autocommit": False,
            "connect_timeout": 30,
            "use_unicode": True,
            "charset": "utf8mb4",
        })
        try:
            self.pool = pooling.MySQLConnectionPool(**pool_config)
        except mysql_errors.Error as e:
            raise StoreError(StoreErrorKind.UNAVAILABLE, f"Failed to create MySQL connection pool: {e}") from e
        logger.info("Created MySQL connection pool with %d connections", pool_size)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """Borrow a connection, yield a cursor, commit on success and roll back on error."""
        try:
            cnx = self.pool.get_connection()
        except mysql_errors.Error as e:
            raise StoreError(_classify(e), str(e)) from e

        cursor = None
        try:
            cursor = cnx.cursor(buffered=True)
            yield cursor
            cnx.commit()
        except mysql_errors.Error as e:
            cnx.rollback()
            raise StoreError(_classify(e), str(e)) from e
        except Exception:
            cnx.rollback()
            raise
        finally:
            if cursor is not None:
                cursor.close()
            cnx.close()  # back to the pool

    def apply_schema(self, schema_path: str = SCHEMA_PATH) -> int:
        """Run every statement in the schema file. Returns the number executed."""
        with open(schema_path, "r") as file:
            commands = [cmd.strip() for cmd in file.read().split(";") if cmd.strip()]
        with self._cursor() as cursor:
            for command in commands:
                cursor.execute(command)
        logger.info("Database schema initialized successfully. (%d commands executed)", len(commands))
        return len(commands)

    def ping(self) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        return True

    # Waitlist

    def upsert_waitlist(self, email: str, source: str, user_agent: Optional[str], ip_hash: Optional[str],
                        marketing_consent: bool, privacy_version: str) -> UpsertResult:
        """Insert a signup, or refresh consent/privacy version on an existing one.

        Marketing consent only ever goes from false to true here; withdrawing
        it is the unsubscribe path's job.
        """
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO waitlist (email, source, user_agent, ip_hash, marketing_consent, privacy_version)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON DUPLICATE KEY UPDATE
                    marketing_consent = (marketing_consent OR VALUES(marketing_consent)),
                    privacy_version = VALUES(privacy_version)
                """,
                (email, source, user_agent, ip_hash, marketing_consent, privacy_version),
            )
            # MySQL reports 1 for an insert, 2 for an update and 0 for a no-op
            affected = cursor.rowcount
        return UpsertResult(inserted=affected == 1, updated=affected == 2)

    def apply_unsubscribe(self, email: str, scope: str) -> None:
        with self._cursor() as cursor:
            if scope == "all":
                cursor.execute(
                    """
                    UPDATE waitlist
                    SET unsubscribed_at = COALESCE(unsubscribed_at, CURRENT_TIMESTAMP),
                        marketing_consent = FALSE
                    WHERE email = %s
                    """,
                    (email,),
                )
            elif scope == "marketing":
                cursor.execute("UPDATE waitlist SET marketing_consent = FALSE WHERE email = %s", (email,))
            else:
                raise StoreError(StoreErrorKind.CONSTRAINT_VIOLATION, f"unknown unsubscribe scope {scope!r}")

    def list_waitlist(self, query: WaitlistQuery, limit: int, offset: int) -> WaitlistPage:
        where, params = _where(query)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM waitlist{where}", tuple(params))
            total = cursor.fetchone()[0]
            cursor.execute(
                f"SELECT {_WAITLIST_COLUMNS} FROM waitlist{where} ORDER BY created_at DESC, email LIMIT %s OFFSET %s",
                tuple(params) + (limit, offset),
            )
            rows = [_waitlist_row(row) for row in cursor.fetchall()]
        return WaitlistPage(rows=rows, total_count=int(total or 0))

    def stats(self) -> WaitlistStats:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(marketing_consent = TRUE AND unsubscribed_at IS NULL), 0),
                    COALESCE(SUM(unsubscribed_at IS NOT NULL), 0),
                    COALESCE(SUM(created_at >= NOW() - INTERVAL 7 DAY), 0),
                    COALESCE(SUM(beta_invited_at IS NOT NULL), 0),
                    COALESCE(SUM(beta_active = TRUE), 0)
                FROM waitlist
                """
            )
            row = cursor.fetchone() or (0, 0, 0, 0, 0, 0)
        return WaitlistStats(*(int(value or 0) for value in row))

    def invite_beta_emails(self, emails: Sequence[str]) -> int:
        if not emails:
            return 0
        placeholders = ", ".join(["%s"] * len(emails))
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE waitlist SET beta_invited_at = CURRENT_TIMESTAMP
                WHERE beta_invited_at IS NULL AND email IN ({placeholders})
                """,
                tuple(emails),
            )
            return cursor.rowcount

    def invite_beta_segment(self, query: WaitlistQuery) -> int:
        where, params = _where(query)
        extra = " AND beta_invited_at IS NULL" if where else " WHERE beta_invited_at IS NULL"
        with self._cursor() as cursor:
            cursor.execute(f"UPDATE waitlist SET beta_invited_at = CURRENT_TIMESTAMP{where}{extra}", tuple(params))
            return cursor.rowcount

    def set_beta_active(self, email: str, active: bool) -> bool:
        """Returns False when no waitlist entry has this email."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE waitlist
                SET beta_active = %s,
                    beta_invited_at = CASE WHEN %s THEN COALESCE(beta_invited_at, CURRENT_TIMESTAMP) ELSE beta_invited_at END
                WHERE email = %s
                """,
                (active, active, email),
            )
            if cursor.rowcount:
                return True
            cursor.execute("SELECT 1 FROM waitlist WHERE email = %s", (email,))
            return cursor.fetchone() is not None

    # Campaigns

    def create_campaign(self, subject: str, body_markdown: str, segment: Dict[str, Any]) -> str:
        campaign_id = str(uuid.uuid4())
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO campaigns (id, subject, body_markdown, segment, status) VALUES (%s, %s, %s, %s, 'draft')",
                (campaign_id, subject, body_markdown, json.dumps(segment)),
            )
        return campaign_id

    def add_campaign_recipients(self, campaign_id: str, emails: Iterable[str]) -> int:
        rows = [(campaign_id, email) for email in emails]
        if not rows:
            return 0
        with self._cursor() as cursor:
            cursor.executemany(
                "INSERT IGNORE INTO campaign_recipients (campaign_id, email, status) VALUES (%s, %s, 'pending')",
                rows,
            )
        return len(rows)

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, subject, body_markdown, segment, status, recipient_count,
                       created_at, started_at, finished_at
                FROM campaigns WHERE id = %s
                """,
                (campaign_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return Campaign(
            id=row[0], subject=row[1], body_markdown=row[2], segment=_load_segment(row[3]),
            status=row[4], recipient_count=int(row[5] or 0),
            created_at=row[6], started_at=row[7], finished_at=row[8],
        )

    def begin_send(self, campaign_id: str) -> Optional[BeginSendResult]:
        """Atomically move a draft (or previously failed) campaign to `sending`.

        A second call observes `can_send=False`, so concurrent send requests
        cannot both deliver the same campaign. Returns None for unknown ids.
        """
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE campaigns SET status = 'sending', started_at = CURRENT_TIMESTAMP
                WHERE id = %s AND status IN ('draft', 'failed')
                """,
                (campaign_id,),
            )
            claimed = cursor.rowcount == 1
            cursor.execute(
                "SELECT status, subject, body_markdown, segment FROM campaigns WHERE id = %s",
                (campaign_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return BeginSendResult(
            can_send=claimed,
            campaign_status=row[0],
            subject=row[1] or "",
            body_markdown=row[2] or "",
            segment=_load_segment(row[3]),
        )

    def list_campaign_recipients(self, campaign_id: str, limit: int, offset: int) -> RecipientPage:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM campaign_recipients WHERE campaign_id = %s", (campaign_id,))
            total = cursor.fetchone()[0]
            cursor.execute(
                """
                SELECT email, status, error_code, updated_at FROM campaign_recipients
                WHERE campaign_id = %s ORDER BY email LIMIT %s OFFSET %s
                """,
                (campaign_id, limit, offset),
            )
            rows = [CampaignRecipientRow(*row) for row in cursor.fetchall()]
        return RecipientPage(rows=rows, total_count=int(total or 0))

    def set_recipient_result(self, campaign_id: str, email: str, status: str, error_code: Optional[str]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE campaign_recipients SET status = %s, error_code = %s, updated_at = CURRENT_TIMESTAMP
                WHERE campaign_id = %s AND email = %s
                """,
                (status, error_code, campaign_id, email),
            )

    def finish_send(self, campaign_id: str, recipient_count: int) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE campaigns SET status = 'sent', recipient_count = %s, finished_at = CURRENT_TIMESTAMP
                WHERE id = %s
                """,
                (recipient_count, campaign_id),
            )

    def mark_failed(self, campaign_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE campaigns SET status = 'failed', finished_at = CURRENT_TIMESTAMP WHERE id = %s",
                (campaign_id,),
            )
