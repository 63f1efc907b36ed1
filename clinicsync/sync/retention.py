"""
Backup retention: which remote backups to delete.

Tiers are applied from newest to oldest:
  daily   : every backup in the ``max_daily`` most recent calendar days
  monthly : for older backups, the latest one in each of the next
            ``max_monthly`` calendar months
  yearly  : for backups older than the monthly window, the latest one in
            each of the next ``max_yearly`` calendar years

A backup not kept by any tier is deleted, and anything older than
``max_age`` is deleted regardless of tier. ``prune`` has no side effects.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Hashable, Iterable

from clinicsync.config.settings import Settings, settings
from clinicsync.sync.clock import ensure_utc
from clinicsync.sync.models import BackupDescriptor


@dataclass(frozen=True)
class RetentionPolicy:
    max_daily: int = 30
    max_monthly: int = 12
    max_yearly: int = 5
    max_age: timedelta = timedelta(days=730)

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "RetentionPolicy":
        return cls(
            max_daily=cfg.retention_max_daily,
            max_monthly=cfg.retention_max_monthly,
            max_yearly=cfg.retention_max_yearly,
            max_age=timedelta(days=cfg.retention_max_age_days),
        )

    @classmethod
    def conservative(cls) -> "RetentionPolicy":
        return cls(max_daily=60, max_monthly=24, max_yearly=10, max_age=timedelta(days=5 * 365))

    @classmethod
    def minimal(cls) -> "RetentionPolicy":
        return cls(max_daily=7, max_monthly=6, max_yearly=2, max_age=timedelta(days=365))


def _buckets(
    descriptors: list[BackupDescriptor],
    key: Callable[[BackupDescriptor], Hashable],
) -> list[tuple[Hashable, list[BackupDescriptor]]]:
    """Group newest-first descriptors by key, keeping recency order."""
    grouped: dict[Hashable, list[BackupDescriptor]] = {}
    for d in descriptors:
        grouped.setdefault(key(d), []).append(d)
    return list(grouped.items())


def prune(
    descriptors: Iterable[BackupDescriptor],
    policy: RetentionPolicy,
    now: datetime,
) -> set[str]:
    """Return the ids of descriptors to delete."""
    now = ensure_utc(now)
    ordered = sorted(descriptors, key=lambda d: ensure_utc(d.created_at), reverse=True)

    def day(d):
        return ensure_utc(d.created_at).date()

    def month(d):
        ts = ensure_utc(d.created_at)
        return ts.year, ts.month

    def year(d):
        return ensure_utc(d.created_at).year

    keep: set[str] = set()

    kept_days = {k for k, _ in _buckets(ordered, day)[:max(policy.max_daily, 0)]}
    keep.update(d.id for d in ordered if day(d) in kept_days)

    older = [d for d in ordered if d.id not in keep]
    month_buckets = _buckets(older, month)[:max(policy.max_monthly, 0)]
    keep.update(bucket[0].id for _, bucket in month_buckets)
    kept_months = {k for k, _ in month_buckets}

    oldest = [d for d in older if month(d) not in kept_months]
    year_buckets = _buckets(oldest, year)[:max(policy.max_yearly, 0)]
    keep.update(bucket[0].id for _, bucket in year_buckets)

    delete = {d.id for d in ordered if d.id not in keep}
    delete.update(d.id for d in ordered if now - ensure_utc(d.created_at) > policy.max_age)
    return delete
