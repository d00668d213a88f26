"""
Repository pattern for data access.

Reads organizations and authentication events from the log store. Values are
always bound as parameters; the only interpolated identifier is the events
table name, which must come from an explicit allow-list.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from auth_billing.core.errors import UpstreamFailure
from auth_billing.core.memoizer import QueryMemoizer

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import EventRecord, Organization

logger = logging.getLogger(__name__)

ORG_TABLE = "t_org_info"
ALLOWED_EVENT_TABLES = frozenset({"t_service_log", "t_third_service_log"})


def to_db_time(value: datetime) -> str:
    """Serialize a timestamp in the sortable text form stored in SQLite."""
    return value.isoformat(sep=" ")


class EventRepository:
    """Repository for organizations and their authentication events.

    Args:
        db_path: Path to SQLite database file
        events_table: Log table to read, one of ``ALLOWED_EVENT_TABLES``
        memoizer: Optional memoizer; reads given a positive TTL go through it

    Raises:
        ValueError: If ``events_table`` is not allow-listed
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        events_table: str = "t_service_log",
        memoizer: Optional[QueryMemoizer] = None
    ):
        if events_table not in ALLOWED_EVENT_TABLES:
            raise ValueError(
                f"Unsupported events table: {events_table!r}; "
                f"expected one of {sorted(ALLOWED_EVENT_TABLES)}"
            )
        self.db_path = db_path
        self.events_table = events_table
        self.memoizer = memoizer

    def initialize_schema(self) -> None:
        """Create the organization and event tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {ORG_TABLE} (
                    org_id TEXT PRIMARY KEY,
                    org_name TEXT NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.events_table} (
                    uuid TEXT PRIMARY KEY,
                    org_id TEXT NOT NULL REFERENCES {ORG_TABLE}(org_id),
                    auth_mode TEXT NOT NULL,
                    result_code TEXT NOT NULL,
                    result_msg TEXT,
                    exec_start_time TEXT NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.events_table}_org_time
                ON {self.events_table} (org_id, exec_start_time)
            """)
            conn.commit()
            logger.info("Initialized schema for %s in %s", self.events_table, self.db_path)
        finally:
            conn.close()

    def insert_organizations(self, organizations: Iterable[Organization]) -> None:
        """Insert or rename organizations in a single transaction."""
        with transaction(self.db_path) as conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO {ORG_TABLE} (org_id, org_name) VALUES (?, ?)",
                [(org.org_id, org.org_name) for org in organizations]
            )

    def insert_events(self, events: List[EventRecord]) -> None:
        """Insert authentication events atomically.

        Args:
            events: Events to record; ``org_name`` is not stored, it is
                joined from the organization table on read
        """
        if not events:
            return

        with transaction(self.db_path) as conn:
            conn.executemany(
                f"""
                INSERT INTO {self.events_table}
                (uuid, org_id, auth_mode, result_code, result_msg, exec_start_time)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        uuid.uuid4().hex,
                        event.org_id,
                        event.auth_mode,
                        event.result_code,
                        event.result_message,
                        to_db_time(event.exec_start_time)
                    )
                    for event in events
                ]
            )
        logger.debug("Inserted %d events into %s", len(events), self.events_table)

    def get_organization(self, org_id: str, ttl_ms: int = 0) -> Optional[Organization]:
        """Look up a single organization, or None if it doesn't exist."""
        rows = self._query(
            f"SELECT org_id, org_name FROM {ORG_TABLE} WHERE org_id = ? LIMIT 1",
            [org_id],
            ttl_ms
        )
        if not rows:
            return None
        return Organization(org_id=rows[0][0], org_name=rows[0][1])

    def list_organizations(self) -> List[Organization]:
        """Return every organization ordered by name."""
        rows = self._run(f"SELECT org_id, org_name FROM {ORG_TABLE} ORDER BY org_name, org_id", [])
        return [Organization(org_id=row[0], org_name=row[1]) for row in rows]

    def fetch_events(
        self,
        org_id: str,
        start: datetime,
        end: datetime,
        ttl_ms: int = 0
    ) -> List[EventRecord]:
        """Fetch one organization's events with ``start <= time <= end``.

        Args:
            org_id: Organization to filter on
            start: Inclusive lower bound
            end: Inclusive upper bound
            ttl_ms: Cache TTL for this read; ``<= 0`` always hits the database

        Returns:
            Events ordered by start time
        """
        sql = f"""
            SELECT sl.org_id, oi.org_name, sl.auth_mode, sl.result_code,
                   sl.result_msg, sl.exec_start_time
            FROM {self.events_table} sl
            JOIN {ORG_TABLE} oi ON sl.org_id = oi.org_id
            WHERE sl.org_id = ?
              AND sl.exec_start_time >= ?
              AND sl.exec_start_time <= ?
            ORDER BY sl.exec_start_time
        """
        params = [org_id, to_db_time(start), to_db_time(end)]
        return self._query(sql, params, ttl_ms, self._fetch_event_rows)

    def fetch_events_in_range(
        self,
        start: datetime,
        end: datetime,
        ttl_ms: int = 0
    ) -> List[EventRecord]:
        """Fetch events of every organization with ``start <= time <= end``."""
        sql = f"""
            SELECT sl.org_id, oi.org_name, sl.auth_mode, sl.result_code,
                   sl.result_msg, sl.exec_start_time
            FROM {self.events_table} sl
            JOIN {ORG_TABLE} oi ON sl.org_id = oi.org_id
            WHERE sl.exec_start_time >= ?
              AND sl.exec_start_time <= ?
            ORDER BY sl.exec_start_time
        """
        params = [to_db_time(start), to_db_time(end)]
        return self._query(sql, params, ttl_ms, self._fetch_event_rows)

    def count_events(
        self,
        start: datetime,
        end: datetime,
        org_id: Optional[str] = None,
        ttl_ms: int = 0
    ) -> int:
        """Count events with ``start <= time <= end``, optionally for one organization."""
        sql = f"""
            SELECT COUNT(*) FROM {self.events_table}
            WHERE exec_start_time >= ?
              AND exec_start_time <= ?
        """
        params: List[Any] = [to_db_time(start), to_db_time(end)]
        if org_id is not None:
            sql += " AND org_id = ?"
            params.append(org_id)
        rows = self._query(sql, params, ttl_ms)
        return int(rows[0][0]) if rows else 0

    def _query(self, sql: str, params: List[Any], ttl_ms: int, fetch=None) -> List[Any]:
        fetch = fetch or self._run
        if self.memoizer is None:
            return fetch(sql, params)
        return self.memoizer.query(sql, params, ttl_ms, fetch=fetch)

    def _run(self, sql: str, params: Sequence[Any]) -> List[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(sql, list(params)).fetchall()
        finally:
            conn.close()

    def _fetch_event_rows(self, sql: str, params: Sequence[Any]) -> List[EventRecord]:
        events = []
        for row in self._run(sql, params):
            try:
                exec_start_time = datetime.fromisoformat(row[5])
            except (TypeError, ValueError) as e:
                raise UpstreamFailure(
                    f"Malformed exec_start_time {row[5]!r} in {self.events_table}"
                ) from e
            events.append(EventRecord(
                org_id=row[0],
                org_name=row[1],
                auth_mode=row[2],
                result_code=str(row[3]),
                result_message=row[4] or "",
                exec_start_time=exec_start_time
            ))
        return events
