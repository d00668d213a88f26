"""
Statement building from aggregation buckets.

Produces the priced billing statement, the paginated reconciliation page,
the per-organization dashboard statistics and the call-statistics series. Every view classifies outcomes
with :func:`is_valid_result` and orders codes with
:func:`result_code_sort_key`, so totals agree across views.

All builders are pure and safe to call from any thread.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from auth_billing.storage.models import EventRecord, Organization

from .aggregation import (
    SUCCESS_CODE,
    AggregationBucket,
    is_valid_result,
    normalize_code,
    result_code_sort_key,
)
from .errors import InvalidArgument
from .pricing import amount_minor_units, to_major_units

logger = logging.getLogger(__name__)

TWO_FACTOR_MODE = "0x40"
THREE_FACTOR_MODE = "0x42"
DEFAULT_VALID_CODES = ("0", "200004", "210001", "210002", "210004", "210005", "210006", "210009")
MAX_PAGE_SIZE = 100
TOP_RESULT_CODES = 10

# Series interval label per call-statistics period
SERIES_FORMATS = {"year": "%Y-%m", "month": "%Y-%m-%d", "day": "%H"}


@dataclass(frozen=True)
class BillingItem:
    """One result-code line of a billing tier."""
    auth_mode: str
    result_code: str
    result_message: str
    count: int
    valid_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.auth_mode,
            "resultCode": self.result_code,
            "resultMessage": self.result_message,
            "count": self.count,
            "validCount": self.valid_count,
        }


@dataclass(frozen=True)
class BillingStatement:
    """Priced statement for one organization and period.

    Prices and amounts are in major currency units.
    """
    org_id: str
    org_name: str
    period_start: datetime
    period_end: datetime
    two_factor_items: Tuple[BillingItem, ...]
    three_factor_items: Tuple[BillingItem, ...]
    two_factor_price: Decimal
    three_factor_price: Decimal
    two_factor_total: int
    two_factor_valid_total: int
    three_factor_total: int
    three_factor_valid_total: int
    two_factor_amount: Decimal
    three_factor_amount: Decimal
    total_amount: Decimal
    total_valid_count: int

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with camelCase keys; money renders as strings."""
        return {
            "orgId": self.org_id,
            "orgName": self.org_name,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "twoFactorItems": [item.to_dict() for item in self.two_factor_items],
            "twoFactorPrice": str(self.two_factor_price),
            "twoFactorTotal": self.two_factor_total,
            "twoFactorValidTotal": self.two_factor_valid_total,
            "twoFactorAmount": str(self.two_factor_amount),
            "threeFactorItems": [item.to_dict() for item in self.three_factor_items],
            "threeFactorPrice": str(self.three_factor_price),
            "threeFactorTotal": self.three_factor_total,
            "threeFactorValidTotal": self.three_factor_valid_total,
            "threeFactorAmount": str(self.three_factor_amount),
            "totalAmount": str(self.total_amount),
            "totalValidCount": self.total_valid_count,
        }


@dataclass(frozen=True)
class ReconciliationRow:
    """Daily count for one mode and outcome."""
    org_name: str
    auth_mode: str
    date: date
    result_code: str
    result_message: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orgName": self.org_name,
            "authMode": self.auth_mode,
            "date": self.date.isoformat(),
            "resultCode": self.result_code,
            "resultMessage": self.result_message,
            "count": self.count,
        }


@dataclass(frozen=True)
class ResultDetail:
    """Count for a result code and message within a mode summary."""
    result_code: str
    result_message: str
    count: int


@dataclass(frozen=True)
class ModeSummary:
    """Success/fail split for one authentication mode."""
    auth_mode: str
    total: int
    success: int
    fail: int
    details: Tuple[ResultDetail, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authMode": self.auth_mode,
            "total": self.total,
            "success": self.success,
            "fail": self.fail,
            "details": [
                {"resultCode": d.result_code, "resultMessage": d.result_message, "count": d.count}
                for d in self.details
            ],
        }


@dataclass(frozen=True)
class ReconciliationPage:
    """One page of daily reconciliation rows plus the full-period summary."""
    org_id: str
    org_name: str
    period_start: datetime
    period_end: datetime
    items: Tuple[ReconciliationRow, ...]
    total_count: int
    total_pages: int
    current_page: int
    page_size: int
    summary: Tuple[ModeSummary, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orgId": self.org_id,
            "orgName": self.org_name,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "items": [row.to_dict() for row in self.items],
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
            "currentPage": self.current_page,
            "pageSize": self.page_size,
            "summary": [mode.to_dict() for mode in self.summary],
        }


@dataclass(frozen=True)
class OrgStat:
    """Dashboard totals for one organization over a period."""
    org_id: str
    org_name: str
    total: int
    valid_total: int
    invalid_total: int
    valid_percentage: float
    two_factor_calls: int
    three_factor_calls: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orgId": self.org_id,
            "orgName": self.org_name,
            "total": self.total,
            "validTotal": self.valid_total,
            "invalidTotal": self.invalid_total,
            "validPercentage": self.valid_percentage,
            "twoFactorCalls": self.two_factor_calls,
            "threeFactorCalls": self.three_factor_calls,
        }


@dataclass(frozen=True)
class CallStatPoint:
    """Call counts for one interval of a call-statistics series."""
    label: str
    valid_calls: int
    invalid_calls: int
    two_factor_calls: int
    three_factor_calls: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.label,
            "validCalls": self.valid_calls,
            "invalidCalls": self.invalid_calls,
            "twoFactorCalls": self.two_factor_calls,
            "threeFactorCalls": self.three_factor_calls,
        }


@dataclass(frozen=True)
class ResultCodeShare:
    """A result code's share of all calls in a period, in percent."""
    result_code: str
    result_message: str
    count: int
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resultCode": self.result_code,
            "resultMessage": self.result_message,
            "count": self.count,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class CallStats:
    """Call-statistics view for a year, month or day.

    ``change`` and ``change_percentage`` compare against the previous period
    and are zero when that period had no calls.
    """
    period: str
    period_start: datetime
    period_end: datetime
    series: Tuple[CallStatPoint, ...]
    total: int
    valid_total: int
    invalid_total: int
    two_factor_total: int
    three_factor_total: int
    previous_total: int
    change: int
    change_percentage: float
    result_codes: Tuple[ResultCodeShare, ...]
    org_id: Optional[str] = None
    org_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "data": [point.to_dict() for point in self.series],
            "summary": {
                "total": self.total,
                "validTotal": self.valid_total,
                "invalidTotal": self.invalid_total,
                "twoFactorTotal": self.two_factor_total,
                "threeFactorTotal": self.three_factor_total,
                "previousTotal": self.previous_total,
                "change": self.change,
                "changePercentage": self.change_percentage,
            },
            "resultCodes": [share.to_dict() for share in self.result_codes],
            "organization": (
                {"orgId": self.org_id, "orgName": self.org_name} if self.org_id is not None else None
            ),
        }


def _tier_items(
    buckets: Iterable[AggregationBucket],
    valid_codes: Sequence[str],
    success_code: str
) -> Tuple[BillingItem, ...]:
    items = [
        BillingItem(
            auth_mode=bucket.auth_mode,
            result_code=bucket.result_code,
            result_message=bucket.result_message,
            count=bucket.count,
            valid_count=bucket.count if is_valid_result(bucket.result_code, valid_codes) else 0,
        )
        for bucket in buckets
    ]
    items.sort(key=lambda item: (result_code_sort_key(item.result_code, success_code), item.result_message))
    return tuple(items)


def build_billing_statement(
    org: Organization,
    period_start: datetime,
    period_end: datetime,
    buckets: Iterable[AggregationBucket],
    two_factor_price: int,
    three_factor_price: int,
    valid_codes: Sequence[str] = DEFAULT_VALID_CODES,
    success_code: str = SUCCESS_CODE,
    two_factor_mode: str = TWO_FACTOR_MODE,
    three_factor_mode: str = THREE_FACTOR_MODE
) -> BillingStatement:
    """Build a billing statement from undated buckets.

    Buckets whose auth mode is neither tier are not billed.

    Args:
        org: Organization being billed
        period_start: Inclusive start of the billing period
        period_end: Inclusive end of the billing period
        buckets: Aggregation buckets for the organization and period
        two_factor_price: Two-factor unit price in minor units
        three_factor_price: Three-factor unit price in minor units
        valid_codes: Result codes that count as billable
        success_code: Result code sorted first within each tier
        two_factor_mode: Auth mode value of the two-factor tier
        three_factor_mode: Auth mode value of the three-factor tier

    Returns:
        BillingStatement with per-tier items, totals and amounts
    """
    two_factor: List[AggregationBucket] = []
    three_factor: List[AggregationBucket] = []
    for bucket in buckets:
        if bucket.auth_mode == two_factor_mode:
            two_factor.append(bucket)
        elif bucket.auth_mode == three_factor_mode:
            three_factor.append(bucket)
        else:
            logger.debug(
                "Skipping %d events with unbilled auth mode %r for %s",
                bucket.count, bucket.auth_mode, org.org_id
            )

    two_items = _tier_items(two_factor, valid_codes, success_code)
    three_items = _tier_items(three_factor, valid_codes, success_code)

    two_valid = sum(item.valid_count for item in two_items)
    three_valid = sum(item.valid_count for item in three_items)
    two_minor = amount_minor_units(two_valid, two_factor_price)
    three_minor = amount_minor_units(three_valid, three_factor_price)

    return BillingStatement(
        org_id=org.org_id,
        org_name=org.org_name,
        period_start=period_start,
        period_end=period_end,
        two_factor_items=two_items,
        three_factor_items=three_items,
        two_factor_price=to_major_units(two_factor_price),
        three_factor_price=to_major_units(three_factor_price),
        two_factor_total=sum(item.count for item in two_items),
        two_factor_valid_total=two_valid,
        three_factor_total=sum(item.count for item in three_items),
        three_factor_valid_total=three_valid,
        two_factor_amount=to_major_units(two_minor),
        three_factor_amount=to_major_units(three_minor),
        total_amount=to_major_units(two_minor + three_minor),
        total_valid_count=two_valid + three_valid,
    )


def validate_pagination(page: int, page_size: int, max_page_size: int = MAX_PAGE_SIZE) -> None:
    """Reject out-of-range paging input instead of clamping it.

    Raises:
        InvalidArgument: If ``page < 1`` or ``page_size`` is outside
            ``[1, max_page_size]``
    """
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidArgument(f"Invalid page {page!r}: must be an integer >= 1")
    if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= max_page_size:
        raise InvalidArgument(
            f"Invalid page size {page_size!r}: must be between 1 and {max_page_size}"
        )


def paginate(items: Sequence[Any], page: int, page_size: int) -> Tuple[Tuple[Any, ...], int]:
    """Slice one page out of ``items``.

    Returns:
        The page's items and the total page count. A page past the end is
        empty.
    """
    total_pages = math.ceil(len(items) / page_size)
    offset = (page - 1) * page_size
    return tuple(items[offset:offset + page_size]), total_pages


def reconciliation_sort_key(bucket: AggregationBucket, success_code: str = SUCCESS_CODE) -> tuple:
    """Order buckets by day descending, mode, result code, then message."""
    day = bucket.date.toordinal() if bucket.date is not None else 0
    return (-day, bucket.auth_mode, result_code_sort_key(bucket.result_code, success_code), bucket.result_message)


def summarize_modes(
    buckets: Iterable[AggregationBucket],
    valid_codes: Sequence[str] = DEFAULT_VALID_CODES,
    success_code: str = SUCCESS_CODE
) -> Tuple[ModeSummary, ...]:
    """Per-mode totals with details merged across duplicate code/message pairs."""
    details: Dict[str, Dict[Tuple[str, str], int]] = {}
    success: Dict[str, int] = {}
    for bucket in buckets:
        mode_details = details.setdefault(bucket.auth_mode, {})
        pair = (bucket.result_code, bucket.result_message)
        mode_details[pair] = mode_details.get(pair, 0) + bucket.count
        if is_valid_result(bucket.result_code, valid_codes):
            success[bucket.auth_mode] = success.get(bucket.auth_mode, 0) + bucket.count

    summaries = []
    for mode in sorted(details):
        merged = sorted(
            details[mode].items(),
            key=lambda entry: (result_code_sort_key(entry[0][0], success_code), entry[0][1])
        )
        total = sum(count for _, count in merged)
        mode_success = success.get(mode, 0)
        summaries.append(ModeSummary(
            auth_mode=mode,
            total=total,
            success=mode_success,
            fail=total - mode_success,
            details=tuple(
                ResultDetail(result_code=code, result_message=message, count=count)
                for (code, message), count in merged
            ),
        ))
    return tuple(summaries)


def build_reconciliation_page(
    org: Organization,
    period_start: datetime,
    period_end: datetime,
    buckets: Iterable[AggregationBucket],
    page: int = 1,
    page_size: int = 20,
    valid_codes: Sequence[str] = DEFAULT_VALID_CODES,
    success_code: str = SUCCESS_CODE,
    max_page_size: int = MAX_PAGE_SIZE
) -> ReconciliationPage:
    """Build one page of the reconciliation view from dated buckets.

    The summary always covers the whole period, independent of the page.

    Raises:
        InvalidArgument: If the page or page size is out of range
    """
    validate_pagination(page, page_size, max_page_size)

    ordered = sorted(buckets, key=lambda bucket: reconciliation_sort_key(bucket, success_code))
    rows = [
        ReconciliationRow(
            org_name=bucket.org_name,
            auth_mode=bucket.auth_mode,
            date=bucket.date,
            result_code=bucket.result_code,
            result_message=bucket.result_message,
            count=bucket.count,
        )
        for bucket in ordered
    ]
    items, total_pages = paginate(rows, page, page_size)

    return ReconciliationPage(
        org_id=org.org_id,
        org_name=org.org_name,
        period_start=period_start,
        period_end=period_end,
        items=items,
        total_count=len(rows),
        total_pages=total_pages,
        current_page=page,
        page_size=page_size,
        summary=summarize_modes(ordered, valid_codes, success_code),
    )


def build_org_stats(
    buckets: Iterable[AggregationBucket],
    valid_codes: Sequence[str] = DEFAULT_VALID_CODES,
    two_factor_mode: str = TWO_FACTOR_MODE,
    three_factor_mode: str = THREE_FACTOR_MODE
) -> List[OrgStat]:
    """Per-organization totals, busiest organization first."""
    totals: Dict[Tuple[str, str], Dict[str, int]] = {}
    for bucket in buckets:
        org = totals.setdefault(
            (bucket.org_id, bucket.org_name),
            {"total": 0, "valid": 0, "two": 0, "three": 0}
        )
        org["total"] += bucket.count
        if is_valid_result(bucket.result_code, valid_codes):
            org["valid"] += bucket.count
        if bucket.auth_mode == two_factor_mode:
            org["two"] += bucket.count
        elif bucket.auth_mode == three_factor_mode:
            org["three"] += bucket.count

    stats = [
        OrgStat(
            org_id=org_id,
            org_name=org_name,
            total=t["total"],
            valid_total=t["valid"],
            invalid_total=t["total"] - t["valid"],
            valid_percentage=round(t["valid"] / t["total"] * 100, 1) if t["total"] else 0.0,
            two_factor_calls=t["two"],
            three_factor_calls=t["three"],
        )
        for (org_id, org_name), t in totals.items()
    ]
    stats.sort(key=lambda stat: (-stat.total, stat.org_id))
    return stats


def build_call_stats(
    events: Iterable[EventRecord],
    period: str,
    period_start: datetime,
    period_end: datetime,
    previous_total: int,
    valid_codes: Sequence[str] = DEFAULT_VALID_CODES,
    two_factor_mode: str = TWO_FACTOR_MODE,
    three_factor_mode: str = THREE_FACTOR_MODE,
    org: Optional[Organization] = None,
    top_n: int = TOP_RESULT_CODES
) -> CallStats:
    """Build the call-statistics view from one period's events.

    The series is bucketed by month for a year, by day for a month and by
    hour for a day; intervals without calls are omitted.

    Args:
        events: Events within ``period_start``..``period_end``
        period: One of ``year``, ``month`` or ``day``
        period_start: Inclusive start of the period
        period_end: Inclusive end of the period
        previous_total: Number of calls in the preceding period
        valid_codes: Result codes that count as valid
        two_factor_mode: Auth mode value of the two-factor tier
        three_factor_mode: Auth mode value of the three-factor tier
        org: Organization the events were filtered to, if any
        top_n: Number of most frequent result codes to report

    Returns:
        CallStats for the period

    Raises:
        InvalidArgument: If ``period`` is unknown
    """
    if period not in SERIES_FORMATS:
        raise InvalidArgument(f"Unknown period {period!r}; expected one of {list(SERIES_FORMATS)}")
    label_format = SERIES_FORMATS[period]

    intervals: Dict[str, Dict[str, int]] = {}
    outcomes: Counter = Counter()
    for event in events:
        label = event.exec_start_time.strftime(label_format)
        point = intervals.setdefault(label, {"valid": 0, "invalid": 0, "two": 0, "three": 0})
        if is_valid_result(event.result_code, valid_codes):
            point["valid"] += 1
        else:
            point["invalid"] += 1
        if event.auth_mode == two_factor_mode:
            point["two"] += 1
        elif event.auth_mode == three_factor_mode:
            point["three"] += 1
        outcomes[(normalize_code(event.result_code), event.result_message or "")] += 1

    series = tuple(
        CallStatPoint(
            label=label,
            valid_calls=p["valid"],
            invalid_calls=p["invalid"],
            two_factor_calls=p["two"],
            three_factor_calls=p["three"],
        )
        for label, p in sorted(intervals.items())
    )
    total = sum(outcomes.values())

    ranked = sorted(
        outcomes.items(),
        key=lambda entry: (-entry[1], result_code_sort_key(entry[0][0]), entry[0][1])
    )
    result_codes = tuple(
        ResultCodeShare(
            result_code=code,
            result_message=message,
            count=count,
            percentage=round(count / total * 100, 2),
        )
        for (code, message), count in ranked[:top_n]
    )

    if previous_total > 0:
        change = total - previous_total
        change_percentage = round(change / previous_total * 100, 2)
    else:
        change, change_percentage = 0, 0.0

    valid_total = sum(point.valid_calls for point in series)
    return CallStats(
        period=period,
        period_start=period_start,
        period_end=period_end,
        series=series,
        total=total,
        valid_total=valid_total,
        invalid_total=total - valid_total,
        two_factor_total=sum(point.two_factor_calls for point in series),
        three_factor_total=sum(point.three_factor_calls for point in series),
        previous_total=previous_total,
        change=change,
        change_percentage=change_percentage,
        result_codes=result_codes,
        org_id=org.org_id if org is not None else None,
        org_name=org.org_name if org is not None else None,
    )
