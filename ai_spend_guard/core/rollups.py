"""
Spend record merging, retention and aggregation.

Maintains the consolidated time series and builds reporting views over it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ai_spend_guard.storage.models import SpendRecord


# Effectively unbounded; deployments shorten it via retention_days.
DEFAULT_RETENTION_DAYS = 9000

GLOBAL_PROVIDER = "global"
UNKNOWN_MODEL = "unknown"


class GroupBy(Enum):
    """Grouping options for spend aggregation."""
    NONE = "none"
    PROVIDER = "provider"
    MODEL = "model"
    DAY = "day"


@dataclass
class SpendBucket:
    """Aggregated spend for one grouping key."""
    key: str
    cost_usd: Decimal = Decimal("0")
    provider: Optional[str] = None
    model: Optional[str] = None
    day: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    records: List[SpendRecord] = field(default_factory=list)

    def add(self, record: SpendRecord) -> None:
        """Accumulate a record into this bucket."""
        self.cost_usd += record.cost_usd
        # Token sums stay None until some record reports the field.
        if record.input_tokens is not None:
            self.input_tokens = (self.input_tokens or 0) + record.input_tokens
        if record.output_tokens is not None:
            self.output_tokens = (self.output_tokens or 0) + record.output_tokens
        self.records.append(record)


def as_utc(moment: datetime) -> datetime:
    """Aware UTC copy of a timestamp. Naive timestamps are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_date(moment: datetime) -> date:
    """Calendar date of a timestamp in UTC. Naive timestamps are taken as UTC."""
    return as_utc(moment).date()


def record_key(record: SpendRecord) -> str:
    """Canonical identity of a record: provider, day and model."""
    return f"{record.provider.value}|{record.day}|{record.model or ''}"


def prune_records(
    records: Iterable[SpendRecord],
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> List[SpendRecord]:
    """Drop records dated before the retention cutoff.

    A record dated exactly on the cutoff day is kept.
    """
    cutoff = (utc_date(now) - timedelta(days=retention_days)).isoformat()
    return [record for record in records if record.day >= cutoff]


def merge_records(
    existing: Iterable[SpendRecord],
    incoming: Iterable[SpendRecord],
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> List[SpendRecord]:
    """Merge incoming records into the existing series.

    Incoming records replace existing ones with the same key (last write
    wins, costs are never summed). The result is pruned to the retention
    horizon and sorted ascending by day. Merging the same batch twice with
    the same ``now`` yields the same output.

    Args:
        existing: Records already held
        incoming: Newly fetched records
        now: Reference time for retention
        retention_days: Days of history to keep before ``now``'s date

    Returns:
        Merged records sorted by day
    """
    merged: Dict[str, SpendRecord] = {}
    for record in existing:
        merged[record_key(record)] = record
    for record in incoming:
        merged[record_key(record)] = record

    retained = prune_records(merged.values(), now, retention_days)
    return sorted(retained, key=lambda r: r.day)


def filter_by_range(
    records: Iterable[SpendRecord],
    from_day: Optional[str] = None,
    to_day: Optional[str] = None,
) -> List[SpendRecord]:
    """Keep records whose day lies within the inclusive [from_day, to_day] range."""
    result = []
    for record in records:
        if from_day and record.day < from_day:
            continue
        if to_day and record.day > to_day:
            continue
        result.append(record)
    return result


def month_to_date(records: Iterable[SpendRecord], now: datetime) -> List[SpendRecord]:
    """Records from the first of ``now``'s UTC month through ``now``'s date."""
    today = utc_date(now)
    return filter_by_range(records, today.replace(day=1).isoformat(), today.isoformat())


def aggregate(
    records: Iterable[SpendRecord],
    group_by: Optional[GroupBy] = None,
) -> List[SpendBucket]:
    """Group records into spend buckets.

    Without grouping (``None`` or ``GroupBy.NONE``) each record becomes its
    own bucket in input order. Grouped buckets are sorted by key.

    Args:
        records: Records to aggregate
        group_by: Grouping dimension

    Returns:
        List of SpendBucket
    """
    if group_by is not None and not isinstance(group_by, GroupBy):
        raise ValueError(f"Unsupported grouping: {group_by!r}")

    if group_by is None or group_by == GroupBy.NONE:
        buckets = []
        for record in records:
            bucket = SpendBucket(
                key=record_key(record),
                provider=record.provider.value,
                model=record.model,
                day=record.day,
            )
            bucket.add(record)
            buckets.append(bucket)
        return buckets

    grouped: Dict[str, SpendBucket] = {}
    for record in records:
        if group_by == GroupBy.PROVIDER:
            key = record.provider.value
            template = SpendBucket(key=key, provider=record.provider.value)
        elif group_by == GroupBy.DAY:
            key = record.day
            template = SpendBucket(key=key, provider=GLOBAL_PROVIDER, day=record.day)
        elif group_by == GroupBy.MODEL:
            model = record.model or UNKNOWN_MODEL
            key = f"{record.provider.value}:{model}"
            template = SpendBucket(key=key, provider=record.provider.value, model=model)
        else:
            raise ValueError(f"Unsupported grouping: {group_by}")

        bucket = grouped.setdefault(key, template)
        bucket.add(record)

    return [grouped[key] for key in sorted(grouped)]
