"""
Retention policy engine.

Decides which backup records are eligible for deletion. Selection is a pure
function of the records, the policy and the current time; executing the
deletions is the manager's job.

Per (storage type, backup type) pair:
- every record younger than dailyRetentionDays is kept
- older records up to weeklyRetentionWeeks keep the newest record of each ISO week
- older records up to monthlyRetentionMonths (30-day months) keep the newest
  record of each calendar month
- anything older is deleted
- of what is kept, only the newest maxBackups survive

The newest successful record of each pair is never selected.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Set, Tuple

from .config import RetentionPolicy
from .models import BackupRecord


@dataclass
class RetentionReport:
    """Outcome of a cleanup pass."""
    candidates: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    executed: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            'candidates': list(self.candidates),
            'deleted': list(self.deleted),
            'errors': list(self.errors),
            'executed': self.executed,
        }


def _week_key(moment: datetime) -> Tuple[int, int]:
    year, week, _ = moment.isocalendar()
    return year, week


def _month_key(moment: datetime) -> Tuple[int, int]:
    return moment.year, moment.month


def _keep_one_per(records: List[BackupRecord], key) -> Set[str]:
    """Newest record of each bucket. ``records`` must be newest first."""
    seen = set()
    kept = set()
    for record in records:
        bucket = key(record.started_at)
        if bucket not in seen:
            seen.add(bucket)
            kept.add(record.id)
    return kept


def _select_for_pair(records: List[BackupRecord], policy: RetentionPolicy, now: datetime) -> List[str]:
    ordered = sorted(records, key=lambda r: (r.started_at, r.id), reverse=True)

    daily_cutoff = now - timedelta(days=policy.daily_retention_days)
    weekly_cutoff = now - timedelta(weeks=policy.weekly_retention_weeks)
    monthly_cutoff = now - timedelta(days=policy.monthly_retention_months * 30)

    daily = [r for r in ordered if r.started_at >= daily_cutoff]
    rest = [r for r in ordered if r.started_at < daily_cutoff]
    weekly = [r for r in rest if r.started_at >= weekly_cutoff]
    rest = [r for r in rest if r.started_at < weekly_cutoff]
    monthly = [r for r in rest if r.started_at >= monthly_cutoff]

    keep = {r.id for r in daily}
    keep |= _keep_one_per(weekly, _week_key)
    keep |= _keep_one_per(monthly, _month_key)

    # maxBackups caps what the buckets kept, newest first
    kept_ordered = [r.id for r in ordered if r.id in keep]
    keep = set(kept_ordered[:policy.max_backups])

    # Oldest first
    return [r.id for r in reversed(ordered) if r.id not in keep]


def latest_successful(records: Iterable[BackupRecord]) -> Dict[Tuple[str, str], str]:
    """Id of the newest successful record per (storage type, backup type)."""
    latest: Dict[Tuple[str, str], BackupRecord] = {}
    for record in records:
        if not record.success:
            continue
        pair = (record.storage_type, record.backup_type)
        current = latest.get(pair)
        if current is None or (record.started_at, record.id) > (current.started_at, current.id):
            latest[pair] = record
    return {pair: record.id for pair, record in latest.items()}


def select_for_deletion(records: Iterable[BackupRecord], policy: RetentionPolicy, now: datetime) -> List[str]:
    """
    Select record ids eligible for deletion, oldest first.

    Args:
        records: Catalogued backup records
        policy: Retention policy to apply
        now: Reference time (timezone-aware)

    Returns:
        Record ids to delete
    """
    records = list(records)
    by_pair: Dict[Tuple[str, str], List[BackupRecord]] = defaultdict(list)
    for record in records:
        by_pair[(record.storage_type, record.backup_type)].append(record)

    candidates = []
    for pair in sorted(by_pair):
        candidates.extend(_select_for_pair(by_pair[pair], policy, now))

    protected = set(latest_successful(records).values())
    started = {r.id: r.started_at for r in records}
    return sorted(
        (record_id for record_id in candidates if record_id not in protected),
        key=lambda record_id: (started[record_id], record_id),
    )
