"""
Statement service.

Validates requests, resolves organizations and serves memoized billing,
reconciliation, organization statistics and call statistics views.

Request handling order:
1. Input validation - InvalidArgument before any cache or store access
2. Organization lookup - NotFound short-circuits before aggregation
3. Memoized fetch and build - store failures become UpstreamFailure
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from auth_billing.config.loader import Settings
from auth_billing.storage.models import Organization
from auth_billing.storage.repository import EventRepository

from .aggregation import aggregate_events, normalize_period, period_bounds, previous_period_bounds
from .cache import CacheStore
from .errors import InvalidArgument, NotFound, StatementError, UpstreamFailure
from .memoizer import QueryMemoizer
from .statements import (
    BillingStatement,
    CallStats,
    OrgStat,
    ReconciliationPage,
    build_billing_statement,
    build_call_stats,
    build_org_stats,
    build_reconciliation_page,
    validate_pagination,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Store errors surfaced to callers as UpstreamFailure
UPSTREAM_ERRORS = (sqlite3.Error, TimeoutError, ConnectionError)

# Cache key prefix per flushable scope
CACHE_SCOPES = {
    "billing": "bill-preview:",
    "reconciliation": "reconciliation:",
    "org-stats": "org-stats:",
    "call-stats": "call-stats:",
    "query": "query:",
}


@dataclass(frozen=True)
class BillingConfig:
    """Billing request: organization, period and per-tier unit prices.

    Prices are in minor currency units per valid call.
    """
    org_id: str
    period_start: Union[str, date, datetime, None]
    period_end: Union[str, date, datetime, None]
    two_factor_price: int = 0
    three_factor_price: int = 0


@dataclass(frozen=True)
class CacheFlushAck:
    """Acknowledgement of an operator cache flush."""
    success: bool
    message: str
    timestamp: str
    evicted: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp,
            "evicted": self.evicted,
        }


class StatementService:
    """Serves statements for organizations from the authentication log.

    Args:
        repository: Event repository; its memoizer, if any, should share
            ``memoizer.cache`` so a flush clears query rows too
        memoizer: Memoizer for whole statements
        settings: Application settings
    """

    def __init__(
        self,
        repository: EventRepository,
        memoizer: QueryMemoizer,
        settings: Optional[Settings] = None
    ):
        self.repository = repository
        self.memoizer = memoizer
        self.settings = settings or Settings()

    def billing_statement(self, config: BillingConfig) -> BillingStatement:
        """Build the priced statement for an organization and period.

        Raises:
            InvalidArgument: If the org id, period or prices are invalid
            NotFound: If the organization doesn't exist
            UpstreamFailure: If the log store fails
        """
        start, end = self._validate_config(config)
        org = self._require_org(config.org_id)

        key = (
            f"bill-preview:{org.org_id}:{start.isoformat()}:{end.isoformat()}"
            f":{config.two_factor_price}:{config.three_factor_price}"
        )

        def compute() -> BillingStatement:
            events = self.repository.fetch_events(
                org.org_id, start, end, ttl_ms=self.settings.cache.query_ttl_ms
            )
            codes, modes = self.settings.result_codes, self.settings.auth_modes
            return build_billing_statement(
                org,
                start,
                end,
                aggregate_events(events),
                config.two_factor_price,
                config.three_factor_price,
                valid_codes=codes.valid,
                success_code=codes.success,
                two_factor_mode=modes.two_factor,
                three_factor_mode=modes.three_factor,
            )

        return self._memoized(key, compute, self.settings.cache.billing_ttl_ms)

    def reconciliation_page(
        self,
        config: BillingConfig,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> ReconciliationPage:
        """Build one page of the daily reconciliation view.

        Args:
            config: Organization and period; prices are ignored
            page: 1-based page number
            page_size: Rows per page; defaults to the configured size

        Raises:
            InvalidArgument: If the org id, period or paging is invalid
            NotFound: If the organization doesn't exist
            UpstreamFailure: If the log store fails
        """
        pagination = self.settings.pagination
        if page_size is None:
            page_size = pagination.default_page_size
        validate_pagination(page, page_size, pagination.max_page_size)
        start, end = self._validate_period(config)
        org = self._require_org(config.org_id)

        key = f"reconciliation:{org.org_id}:{start.isoformat()}:{end.isoformat()}:{page}:{page_size}"

        def compute() -> ReconciliationPage:
            events = self.repository.fetch_events(
                org.org_id, start, end, ttl_ms=self.settings.cache.query_ttl_ms
            )
            codes = self.settings.result_codes
            return build_reconciliation_page(
                org,
                start,
                end,
                aggregate_events(events, by_date=True),
                page=page,
                page_size=page_size,
                valid_codes=codes.valid,
                success_code=codes.success,
                max_page_size=pagination.max_page_size,
            )

        return self._memoized(key, compute, self.settings.cache.reconciliation_ttl_ms)

    def org_stats(self, period: str = "day", day: Union[str, date, None] = None) -> List[OrgStat]:
        """Per-organization totals for the year, month or day containing ``day``.

        Raises:
            InvalidArgument: If the period or date is invalid
            UpstreamFailure: If the log store fails
        """
        if day is None:
            day = date.today()
        start, end = period_bounds(period, day)
        key = f"org-stats:{period}:{start.date().isoformat()}"

        def compute() -> Tuple[OrgStat, ...]:
            events = self.repository.fetch_events_in_range(
                start, end, ttl_ms=self.settings.cache.query_ttl_ms
            )
            modes = self.settings.auth_modes
            return tuple(build_org_stats(
                aggregate_events(events),
                valid_codes=self.settings.result_codes.valid,
                two_factor_mode=modes.two_factor,
                three_factor_mode=modes.three_factor,
            ))

        return list(self._memoized(key, compute, self.settings.cache.org_stats_ttl_ms))

    def call_stats(
        self,
        period: str = "day",
        day: Union[str, date, None] = None,
        org_id: Optional[str] = None
    ) -> CallStats:
        """Call series, totals, top result codes and change versus the previous period.

        Args:
            period: ``year`` (monthly series), ``month`` (daily) or ``day`` (hourly)
            day: Any date within the period; defaults to today
            org_id: Restrict to one organization; all organizations if None

        Raises:
            InvalidArgument: If the period, date or org id is invalid
            NotFound: If ``org_id`` is given and doesn't exist
            UpstreamFailure: If the log store fails
        """
        if day is None:
            day = date.today()
        start, end = period_bounds(period, day)
        previous_start, previous_end = previous_period_bounds(period, day)
        org = None
        if org_id is not None:
            if not str(org_id).strip():
                raise InvalidArgument("Organization id cannot be blank")
            org = self._require_org(org_id)

        scope = org.org_id if org is not None else "*"
        key = f"call-stats:{period}:{start.date().isoformat()}:{scope}"

        def compute() -> CallStats:
            ttl_ms = self.settings.cache.query_ttl_ms
            if org is None:
                events = self.repository.fetch_events_in_range(start, end, ttl_ms=ttl_ms)
            else:
                events = self.repository.fetch_events(org.org_id, start, end, ttl_ms=ttl_ms)
            previous_total = self.repository.count_events(
                previous_start,
                previous_end,
                org_id=org.org_id if org is not None else None,
                ttl_ms=ttl_ms,
            )
            modes = self.settings.auth_modes
            return build_call_stats(
                events,
                period,
                start,
                end,
                previous_total,
                valid_codes=self.settings.result_codes.valid,
                two_factor_mode=modes.two_factor,
                three_factor_mode=modes.three_factor,
                org=org,
            )

        return self._memoized(key, compute, self.settings.cache.call_stats_ttl_ms)

    def clear_cache(self, scope: Optional[str] = None) -> CacheFlushAck:
        """Evict cached statements and query results.

        Args:
            scope: One of ``CACHE_SCOPES`` to evict only that view's entries;
                None evicts everything

        Raises:
            InvalidArgument: If ``scope`` is unknown
        """
        if scope is None:
            evicted = self.memoizer.cache.clear_all()
            message = "Cache cleared"
        elif scope in CACHE_SCOPES:
            evicted = self.memoizer.cache.invalidate_prefix(CACHE_SCOPES[scope])
            message = f"Cache cleared for {scope}"
        else:
            raise InvalidArgument(f"Unknown cache scope {scope!r}; expected one of {sorted(CACHE_SCOPES)}")
        return CacheFlushAck(
            success=True,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
            evicted=evicted,
        )

    def _validate_period(self, config: BillingConfig):
        if not config.org_id or not str(config.org_id).strip():
            raise InvalidArgument("Organization id is required")
        return normalize_period(config.period_start, config.period_end)

    def _validate_config(self, config: BillingConfig):
        period = self._validate_period(config)
        for name in ("two_factor_price", "three_factor_price"):
            price = getattr(config, name)
            if isinstance(price, bool) or not isinstance(price, int) or price < 0:
                raise InvalidArgument(f"{name} must be a non-negative integer in minor units")
        return period

    def _require_org(self, org_id: str) -> Organization:
        org = self._guard(lambda: self.repository.get_organization(org_id))
        if org is None:
            raise NotFound(f"Organization with ID {org_id} not found")
        return org

    def _memoized(self, key: str, compute: Callable[[], T], ttl_ms: int) -> T:
        return self._guard(lambda: self.memoizer.memoize(key, compute, ttl_ms))

    def _guard(self, call: Callable[[], T]) -> T:
        """Translate store failures into UpstreamFailure."""
        try:
            return call()
        except StatementError:
            raise
        except UPSTREAM_ERRORS as e:
            logger.error("Log store query failed: %s", e, exc_info=True)
            raise UpstreamFailure(f"Data fetch failed: {e}") from e


def create_service(settings: Optional[Settings] = None, cache: Optional[CacheStore] = None) -> StatementService:
    """Wire a service whose statements and query rows share one cache.

    Args:
        settings: Application settings; defaults apply if None
        cache: Cache store to use; a fresh one is created if None

    Returns:
        Ready-to-use StatementService
    """
    settings = settings or Settings()
    cache = cache if cache is not None else CacheStore()
    memoizer = QueryMemoizer(
        cache,
        single_flight=settings.cache.single_flight,
        slow_query_ms=settings.cache.slow_query_ms,
    )
    repository = EventRepository(
        db_path=settings.database.path,
        events_table=settings.database.events_table,
        memoizer=memoizer,
    )
    return StatementService(repository, memoizer, settings)
