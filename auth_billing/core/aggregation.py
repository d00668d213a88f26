"""
Event aggregation and result-code utilities.

Groups authentication events into count buckets and provides the validity
test and result-code ordering shared by every statement view.
"""

import calendar
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple, Union

from auth_billing.storage.models import EventRecord

from .errors import InvalidArgument

SUCCESS_CODE = "0"
PERIODS = ("year", "month", "day")
_COMPACT_DATE = re.compile(r"^\d{8}$")


@dataclass(frozen=True)
class AggregationBucket:
    """Count of events sharing organization, mode, outcome and optionally day."""
    org_id: str
    org_name: str
    auth_mode: str
    result_code: str
    result_message: str
    count: int
    date: Optional[date] = None


def normalize_code(code: Union[str, int, None]) -> str:
    """Render a result code as a trimmed string so ``0`` and ``"0"`` agree."""
    if code is None:
        return ""
    return str(code).strip()


def is_valid_result(code: Union[str, int, None], valid_codes: Iterable[str]) -> bool:
    """Check a result code against the valid-outcome allow-list.

    This is the only validity test used for billing, reconciliation
    summaries and organization statistics.
    """
    normalized = normalize_code(code)
    return any(normalized == normalize_code(valid) for valid in valid_codes)


def result_code_sort_key(code: str, success_code: str = SUCCESS_CODE) -> Tuple[bool, bool, int, str]:
    """Sort key placing the success code first, then codes by numeric value.

    Non-numeric codes sort after numeric ones, lexicographically. The raw
    code is the final element so distinct codes never compare equal.
    """
    normalized = normalize_code(code)
    try:
        numeric = int(normalized)
        is_numeric = True
    except ValueError:
        numeric = 0
        is_numeric = False
    return (normalized != success_code, not is_numeric, numeric, normalized)


def aggregate_events(events: Iterable[EventRecord], by_date: bool = False) -> List[AggregationBucket]:
    """Group events into buckets and count each group.

    Every event lands in exactly one bucket, so the bucket counts sum to
    the number of events. An empty input yields an empty list.

    Args:
        events: Events already filtered to the requested range
        by_date: Also group by the calendar day of ``exec_start_time``

    Returns:
        Buckets in first-seen order; callers apply their own sort
    """
    counts: Counter = Counter()
    for event in events:
        key = (
            event.org_id,
            event.org_name,
            event.auth_mode,
            normalize_code(event.result_code),
            event.result_message or "",
            event.exec_start_time.date() if by_date else None,
        )
        counts[key] += 1

    return [
        AggregationBucket(
            org_id=org_id,
            org_name=org_name,
            auth_mode=auth_mode,
            result_code=result_code,
            result_message=result_message,
            count=count,
            date=day,
        )
        for (org_id, org_name, auth_mode, result_code, result_message, day), count in counts.items()
    ]


def _parse_date(text: str) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` or ``YYYYMMDD``, or return None for anything else."""
    if _COMPACT_DATE.match(text):
        return datetime.strptime(text, "%Y%m%d").date()
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _parse_bound(value: Union[str, date, datetime, None], name: str) -> Tuple[datetime, bool]:
    """Parse a period bound, reporting whether it carried a time of day.

    Bounds are compared against naive log-store timestamps, so a bound
    carrying a UTC offset is rejected rather than silently shifted.
    """
    if value is None or value == "":
        raise InvalidArgument(f"Missing {name}")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min), False
    else:
        text = str(value).strip()
        try:
            day = _parse_date(text)
            if day is not None:
                return datetime.combine(day, time.min), False
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidArgument(f"Unparseable {name}: {value!r}")
    if parsed.tzinfo is not None:
        raise InvalidArgument(
            f"Timezone offsets are not supported in {name}: {value!r}; use log store local time"
        )
    return parsed, True


def normalize_period(
    period_start: Union[str, date, datetime, None],
    period_end: Union[str, date, datetime, None]
) -> Tuple[datetime, datetime]:
    """Turn request bounds into an inclusive datetime range.

    Date-only bounds expand to the start of the first day and the end of
    the last day, so a same-day range covers the whole day.

    Raises:
        InvalidArgument: If a bound is missing, unparseable, or start > end
    """
    start, _ = _parse_bound(period_start, "period start")
    end, end_has_time = _parse_bound(period_end, "period end")
    if not end_has_time:
        end = datetime.combine(end.date(), time.max)
    if start > end:
        raise InvalidArgument(f"Period start {start} is after period end {end}")
    return start, end


def period_bounds(period: str, day: Union[str, date]) -> Tuple[datetime, datetime]:
    """Inclusive range of the year, month or day containing ``day``.

    Raises:
        InvalidArgument: If ``period`` is unknown or ``day`` is unparseable
    """
    if period not in PERIODS:
        raise InvalidArgument(f"Unknown period {period!r}; expected one of {list(PERIODS)}")
    if isinstance(day, datetime):
        day = day.date()
    elif isinstance(day, str):
        try:
            parsed = _parse_date(day.strip())
        except ValueError:
            parsed = None
        if parsed is None:
            raise InvalidArgument(f"Unparseable date: {day!r}")
        day = parsed

    if period == "year":
        first, last = date(day.year, 1, 1), date(day.year, 12, 31)
    elif period == "month":
        last_day = calendar.monthrange(day.year, day.month)[1]
        first, last = day.replace(day=1), day.replace(day=last_day)
    else:
        first = last = day
    return datetime.combine(first, time.min), datetime.combine(last, time.max)


def previous_period_bounds(period: str, day: Union[str, date]) -> Tuple[datetime, datetime]:
    """Inclusive range of the year, month or day before the one containing ``day``."""
    start, _ = period_bounds(period, day)
    return period_bounds(period, (start - timedelta(days=1)).date())
