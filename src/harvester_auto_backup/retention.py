"""Tiered retention for VM backups.

Backups newer than the weekly boundary are always kept. Between the weekly
and monthly boundaries one backup survives per ISO week, between the monthly
and delete boundaries one survives per calendar month, and anything older
than the delete boundary is removed.

Week and month bucket keys carry no year: every January backup in the monthly
window shares one bucket. With the default offsets the monthly window spans
less than a year.
"""

from __future__ import annotations

from calendar import monthrange
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from .models import BackupRecord, RetentionOffset, RetentionThresholds

K =TypeVar("K")


@dataclass(frozen=True)
class RetentionClassification:
    to_delete: set[BackupRecord] = field(default_factory=set)
    week_buckets: dict[int, set[BackupRecord]] = field(default_factory=dict)
    month_buckets: dict[int, set[BackupRecord]] = field(default_factory=dict)
    recent: set[BackupRecord] = field(default_factory=set)


def utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


def subtract_offset(moment: datetime, offset: RetentionOffset) -> datetime:
    if offset.unit == "days":
        return moment - timedelta(days=offset.amount)
    if offset.unit == "weeks":
        return moment - timedelta(weeks=offset.amount)
    if offset.unit == "months":
        return _subtract_months(moment, offset.amount)
    if offset.unit == "years":
        return _subtract_months(moment, offset.amount * 12)
    raise ValueError(f"unsupported offset unit: {offset.unit}")


def iso_week_of_year(moment: datetime) -> int:
    return moment.isocalendar().week


def calendar_month(moment: datetime) -> int:
    return moment.month


def compute_thresholds(
    *,
    weekly_offset: RetentionOffset,
    monthly_offset: RetentionOffset,
    delete_offset: RetentionOffset,
    now: datetime | None = None,
) -> RetentionThresholds:
    reference = now or utc_now()
    thresholds = RetentionThresholds(
        now=reference,
        weekly_boundary=subtract_offset(reference, weekly_offset),
        monthly_boundary=subtract_offset(reference, monthly_offset),
        delete_boundary=subtract_offset(reference, delete_offset),
    )
    validate_thresholds(thresholds)
    return thresholds


def validate_thresholds(thresholds: RetentionThresholds) -> None:
    if not (
        thresholds.delete_boundary
        < thresholds.monthly_boundary
        < thresholds.weekly_boundary
        <= thresholds.now
    ):
        raise ValueError(
            "retention boundaries must satisfy delete < monthly < weekly <= now "
            f"(delete={thresholds.delete_boundary.isoformat()}, "
            f"monthly={thresholds.monthly_boundary.isoformat()}, "
            f"weekly={thresholds.weekly_boundary.isoformat()}, "
            f"now={thresholds.now.isoformat()})"
        )


def classify_backups(
    records: Iterable[BackupRecord],
    thresholds: RetentionThresholds,
) -> RetentionClassification:
    classification = RetentionClassification()
    for record in records:
        if record.created_at < thresholds.delete_boundary:
            classification.to_delete.add(record)
        elif record.created_at < thresholds.monthly_boundary:
            classification.month_buckets.setdefault(calendar_month(record.created_at), set()).add(record)
        elif record.created_at < thresholds.weekly_boundary:
            classification.week_buckets.setdefault(iso_week_of_year(record.created_at), set()).add(record)
        else:
            classification.recent.add(record)
    return classification


def reduce_buckets(buckets: Mapping[K, Iterable[BackupRecord]]) -> set[BackupRecord]:
    to_delete: set[BackupRecord] = set()
    for members in buckets.values():
        ordered = sorted(members, key=retention_sort_key, reverse=True)
        to_delete.update(ordered[1:])
    return to_delete


def bucket_survivors(buckets: Mapping[K, Iterable[BackupRecord]]) -> dict[K, BackupRecord]:
    return {
        key: max(members, key=retention_sort_key)
        for key, members in buckets.items()
        if members
    }


def select_backups_to_delete(
    records: Iterable[BackupRecord],
    thresholds: RetentionThresholds,
) -> set[BackupRecord]:
    classification = classify_backups(records, thresholds)
    return deletions_for(classification)


def deletions_for(classification: RetentionClassification) -> set[BackupRecord]:
    return (
        set(classification.to_delete)
        | reduce_buckets(classification.week_buckets)
        | reduce_buckets(classification.month_buckets)
    )


def retention_sort_key(record: BackupRecord) -> tuple[datetime, str]:
    return record.created_at, record.name


def _subtract_months(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month_zero_based = divmod(month_index, 12)
    month = month_zero_based + 1
    day = min(moment.day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
