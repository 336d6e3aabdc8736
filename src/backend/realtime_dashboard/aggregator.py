"""
Pure aggregation of request/client snapshots into the dashboard chart views.

Nothing in this module raises on record content: missing or malformed
timestamps fall into the ``UNKNOWN_LABEL`` month, and status/service type
values are grouped exactly as stored (``None`` included).
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import date, datetime, timezone as dt_timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import AggregateViews, ClientRecord, LabelCount, ServiceRequest

MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
UNKNOWN_LABEL = "Unknown"

_SHORT_OFFSET = re.compile(r"([+-]\d{2})$")
_FRACTION = re.compile(r"\.(\d+)")

RecordT = TypeVar("RecordT")


def coerce_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _normalize_datetime(dt: datetime, tz: ZoneInfo) -> Optional[datetime]:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    try:
        return dt.astimezone(tz)
    except (OverflowError, ValueError):
        # Shifting into tz would leave the supported year range.
        return None


def parse_timestamp(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    """
    Best-effort conversion of a stored creation timestamp into ``tz``.

    Accepts datetimes, dates, ISO-8601 strings (``Z`` suffix and ``+HH``
    offsets included) and epoch seconds. Returns ``None`` for anything else.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _normalize_datetime(value, tz)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=tz)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=dt_timezone.utc).astimezone(tz)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw[-1] in "Zz":
            raw = raw[:-1] + "+00:00"
        elif "T" in raw or " " in raw:
            raw = _SHORT_OFFSET.sub(r"\1:00", raw)
        # Older fromisoformat only takes 3 or 6 fractional digits.
        raw = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), raw, count=1)
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return _normalize_datetime(parsed, tz)
    return None


def format_month_label(moment: Optional[datetime]) -> str:
    if moment is None:
        return UNKNOWN_LABEL
    return f"{MONTH_ABBREVIATIONS[moment.month - 1]} {moment.year}"


def month_label(value: Any, timezone: str = "UTC") -> str:
    return format_month_label(parse_timestamp(value, coerce_timezone(timezone)))


def _group_key(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return str(value)
    return value


def _localized(
    records: Iterable[RecordT],
    tz: ZoneInfo,
    sort: bool,
) -> List[Tuple[RecordT, Optional[datetime]]]:
    localized = [(record, parse_timestamp(getattr(record, "created_at", None), tz)) for record in records]
    if sort:
        # Stable: equal timestamps and unparseable records keep their scan order.
        localized.sort(key=lambda item: (item[1] is None, item[1] or datetime.min.replace(tzinfo=tz)))
    return localized


def _to_label_counts(counter: Counter) -> Tuple[LabelCount, ...]:
    return tuple(LabelCount(label=label, count=count) for label, count in counter.items())


def aggregate_requests(
    requests: Sequence[ServiceRequest],
    timezone: str = "UTC",
    sort: bool = True,
) -> Tuple[Tuple[LabelCount, ...], Tuple[LabelCount, ...], Tuple[LabelCount, ...]]:
    """
    Return ``(monthly_counts, status_distribution, service_type_distribution)``.

    Every view keeps first-occurrence order of its labels over the (optionally
    sorted) scan, so with ``sort=True`` the monthly view is chronological.
    """

    tz = coerce_timezone(timezone)
    monthly: Counter = Counter()
    statuses: Counter = Counter()
    service_types: Counter = Counter()

    for request, created in _localized(requests, tz, sort):
        monthly[format_month_label(created)] += 1
        statuses[_group_key(getattr(request, "status", None))] += 1
        service_types[_group_key(getattr(request, "service_type", None))] += 1

    return _to_label_counts(monthly), _to_label_counts(statuses), _to_label_counts(service_types)


def aggregate_client_growth(
    clients: Sequence[ClientRecord],
    timezone: str = "UTC",
    sort: bool = True,
) -> Tuple[LabelCount, ...]:
    """
    Running total of clients per month label.
    """

    tz = coerce_timezone(timezone)
    per_month: Counter = Counter()
    for _, created in _localized(clients, tz, sort):
        per_month[format_month_label(created)] += 1

    series: List[LabelCount] = []
    running_total = 0
    for label, count in per_month.items():
        running_total += count
        series.append(LabelCount(label=label, count=running_total))
    return tuple(series)


def build_views(
    requests: Sequence[ServiceRequest],
    clients: Sequence[ClientRecord],
    timezone: str = "UTC",
    sort: bool = True,
) -> AggregateViews:
    monthly, statuses, service_types = aggregate_requests(requests, timezone=timezone, sort=sort)
    return AggregateViews(
        monthly_requests=monthly,
        status_distribution=statuses,
        service_type_distribution=service_types,
        client_growth=aggregate_client_growth(clients, timezone=timezone, sort=sort),
    )
