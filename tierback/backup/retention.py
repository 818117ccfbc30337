"""
Retention policy evaluation and enforcement for backup tiers.

Two policies are supported:
- ThresholdPolicy: every object older than a fixed age (days or calendar
  months) is deleted. Used when each tier lives in its own prefix.
- CollapsingPolicy: all backups share one prefix; recent objects are kept,
  older ones are thinned to one survivor per ISO week, then one per month,
  and everything past the last window is deleted.

Evaluation is pure: it takes object names and an as-of instant and returns
one RetentionDecision per object. RetentionManager applies the decisions to
a storage gateway.
"""

import logging
import math
import posixpath
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import AbstractSet, Callable, Dict, Iterable, List, Optional, Union

from .storage import StorageError

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r'([0-9]{4})-([0-9]{2})-([0-9]{2})')
TIME_SUFFIX_PATTERN = re.compile(r'-([0-9]{2})-([0-9]{2})-([0-9]{2})')

# Markers inserted between the source id and the timestamp by the producers
ARCHIVE_KIND_MARKERS = ('-files', '-backup')

SECONDS_PER_DAY = 86400


class Action(str, Enum):
    """Outcome of evaluating a single backup object."""
    KEEP = 'keep'
    DELETE = 'delete'
    SKIP_UNPARSEABLE = 'skip_unparseable'


class AgeUnit(str, Enum):
    DAYS = 'days'
    MONTHS = 'months'


def extract_date(name: str) -> Optional[date]:
    """
    Extract the backup date embedded in an object name.

    The first ``YYYY-MM-DD`` substring of the basename is authoritative. If it
    does not form a valid calendar date the name is unparseable; later
    matches are not consulted.

    Args:
        name: Object key or filename

    Returns:
        The embedded date, or None when the name carries no usable date
    """
    match = DATE_PATTERN.search(posixpath.basename(name))
    if not match:
        return None

    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_timestamp(name: str) -> Optional[datetime]:
    """
    Extract the embedded date plus the optional ``-HH-MM-SS`` that follows it.

    Only used to order objects sharing a date. A missing or invalid time of
    day yields midnight.
    """
    basename = posixpath.basename(name)
    match = DATE_PATTERN.search(basename)
    if not match:
        return None

    backup_date = extract_date(basename)
    if backup_date is None:
        return None

    time_match = TIME_SUFFIX_PATTERN.match(basename, match.end())
    if time_match:
        hour, minute, second = (int(part) for part in time_match.groups())
        try:
            return datetime.combine(backup_date, time(hour, minute, second))
        except ValueError:
            pass

    return datetime.combine(backup_date, time())


def extract_source_id(name: str) -> Optional[str]:
    """
    Derive the source identifier from an object name.

    Everything in the basename before the embedded date, minus trailing
    separators and the producer's kind marker.
    """
    basename = posixpath.basename(name)
    match = DATE_PATTERN.search(basename)
    if not match:
        return None

    prefix = basename[:match.start()].rstrip('-_.')
    for marker in ARCHIVE_KIND_MARKERS:
        if prefix.endswith(marker):
            prefix = prefix[:-len(marker)]
            break

    return prefix or None


def age_days(backup_date: date, now: datetime) -> int:
    """
    Whole days elapsed between midnight of ``backup_date`` and ``now``.

    Midnight is taken in ``now``'s timezone (local time when ``now`` is
    naive). Future dates give a negative age.
    """
    midnight = datetime.combine(backup_date, time(), tzinfo=now.tzinfo)
    elapsed = now.timestamp() - midnight.timestamp()
    return math.floor(elapsed / SECONDS_PER_DAY)


def age_months(backup_date: date, now: datetime) -> int:
    """
    Calendar-month difference between ``backup_date`` and ``now``.

    Day of month is ignored: 2024-01-31 is one month old on 2024-02-01.
    """
    return (now.year * 12 + now.month) - (backup_date.year * 12 + backup_date.month)


def week_bucket(backup_date: date) -> str:
    """ISO week bucket key, e.g. ``2024-W01``."""
    iso_year, iso_week, _ = backup_date.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_bucket(backup_date: date) -> str:
    """Calendar month bucket key, e.g. ``2024-01``."""
    return f"{backup_date.year}-{backup_date.month:02d}"


@dataclass(frozen=True)
class BackupObject:
    """An immutable entry of a storage location."""
    name: str
    source_id: Optional[str]
    date: Optional[date]
    timestamp: Optional[datetime]

    @classmethod
    def from_name(cls, name: str) -> 'BackupObject':
        return cls(
            name=name,
            source_id=extract_source_id(name),
            date=extract_date(name),
            timestamp=extract_timestamp(name),
        )

    @property
    def parseable(self) -> bool:
        return self.date is not None


@dataclass(frozen=True)
class RetentionDecision:
    """What to do with one object, and why."""
    object: BackupObject
    action: Action
    age: Optional[int] = None
    unit: AgeUnit = AgeUnit.DAYS
    bucket: Optional[str] = None
    bucket_kind: Optional[str] = None  # 'week' or 'month'
    reason: str = ''

    @property
    def name(self) -> str:
        return self.object.name

    def describe(self) -> str:
        """Single log line for this decision."""
        basename = posixpath.basename(self.name)
        if self.action is Action.SKIP_UNPARSEABLE:
            return f"Skipping (no date found): {basename}"

        suffix = 'd' if self.unit is AgeUnit.DAYS else 'mo'
        verb = 'Keeping ' if self.action is Action.KEEP else 'Deleting'
        line = f"{verb} ({self.age}{suffix}): {basename}"
        if self.reason:
            line += f" [{self.reason}]"
        return line

    def to_dict(self) -> Dict[str, object]:
        return {
            'name': self.name,
            'source_id': self.object.source_id,
            'date': self.object.date.isoformat() if self.object.date else None,
            'action': self.action.value,
            'age': self.age,
            'unit': self.unit.value,
            'bucket': self.bucket,
            'reason': self.reason,
        }


def _skip(obj: BackupObject) -> RetentionDecision:
    return RetentionDecision(obj, Action.SKIP_UNPARSEABLE, reason='no date found')


@dataclass(frozen=True)
class ThresholdPolicy:
    """
    Delete every object whose age meets or exceeds ``threshold``.

    Age is measured in whole days or in calendar months depending on ``unit``.
    """
    threshold: int
    unit: AgeUnit = AgeUnit.DAYS

    def age_of(self, backup_date: date, now: datetime) -> int:
        if self.unit is AgeUnit.MONTHS:
            return age_months(backup_date, now)
        return age_days(backup_date, now)

    def decide(self, obj: BackupObject, now: datetime) -> RetentionDecision:
        if not obj.parseable:
            return _skip(obj)

        age = self.age_of(obj.date, now)
        if age >= self.threshold:
            return RetentionDecision(obj, Action.DELETE, age, self.unit,
                                     reason=f"age >= {self.threshold}")
        return RetentionDecision(obj, Action.KEEP, age, self.unit)

    def describe(self) -> str:
        return f"delete age >= {self.threshold} {self.unit.value}"


@dataclass(frozen=True)
class CollapsingPolicy:
    """
    Thin a shared prefix down to one survivor per calendar bucket.

    Objects up to ``daily_days`` old are all kept, up to ``weekly_days`` one
    per ISO week, up to ``monthly_days`` one per calendar month, anything
    older is deleted. Requires newest-first traversal so the first object
    seen in a bucket is the most recent one.
    """
    daily_days: int = 7
    weekly_days: int = 28
    monthly_days: int = 180

    def decide(
        self,
        obj: BackupObject,
        now: datetime,
        weekly_kept: AbstractSet[str],
        monthly_kept: AbstractSet[str]
    ) -> RetentionDecision:
        """
        Classify one object given the buckets already claimed.

        Does not claim anything itself: the caller records ``decision.bucket``
        in the matching set when the action is KEEP.
        """
        if not obj.parseable:
            return _skip(obj)

        age = age_days(obj.date, now)

        if age <= self.daily_days:
            return RetentionDecision(obj, Action.KEEP, age, reason='daily')

        if age <= self.weekly_days:
            bucket = week_bucket(obj.date)
            if bucket not in weekly_kept:
                return RetentionDecision(obj, Action.KEEP, age, bucket=bucket,
                                         bucket_kind='week', reason=f"weekly {bucket}")
            return RetentionDecision(obj, Action.DELETE, age, bucket=bucket, bucket_kind='week',
                                     reason=f"newer backup kept for week {bucket}")

        if age <= self.monthly_days:
            bucket = month_bucket(obj.date)
            if bucket not in monthly_kept:
                return RetentionDecision(obj, Action.KEEP, age, bucket=bucket,
                                         bucket_kind='month', reason=f"monthly {bucket}")
            return RetentionDecision(obj, Action.DELETE, age, bucket=bucket, bucket_kind='month',
                                     reason=f"newer backup kept for month {bucket}")

        return RetentionDecision(obj, Action.DELETE, age,
                                 reason=f"older than {self.monthly_days}d")

    def describe(self) -> str:
        return (
            f"keep all <= {self.daily_days}d, one per week <= {self.weekly_days}d, "
            f"one per month <= {self.monthly_days}d"
        )


RetentionPolicy = Union[ThresholdPolicy, CollapsingPolicy]


def sort_newest_first(objects: Iterable[BackupObject]) -> List[BackupObject]:
    """
    Order objects by embedded timestamp, then name, both descending.

    Unparseable objects go last in reverse name order.
    """
    objects = list(objects)
    parsed = [obj for obj in objects if obj.parseable]
    unparsed = [obj for obj in objects if not obj.parseable]
    parsed.sort(key=lambda obj: (obj.timestamp, obj.name), reverse=True)
    unparsed.sort(key=lambda obj: obj.name, reverse=True)
    return parsed + unparsed


def evaluate(names: Iterable[str], now: datetime, policy: RetentionPolicy) -> List[RetentionDecision]:
    """
    Decide KEEP, DELETE or SKIP for every object name of one location.

    Args:
        names: Object names of a single tier location
        now: As-of instant
        policy: ThresholdPolicy or CollapsingPolicy

    Returns:
        One decision per name, newest first
    """
    objects = sort_newest_first(BackupObject.from_name(name) for name in names)

    if isinstance(policy, ThresholdPolicy):
        return [policy.decide(obj, now) for obj in objects]

    weekly_kept = set()
    monthly_kept = set()
    decisions = []

    for obj in objects:
        decision = policy.decide(obj, now, weekly_kept, monthly_kept)
        if decision.action is Action.KEEP and decision.bucket_kind == 'week':
            weekly_kept.add(decision.bucket)
        elif decision.action is Action.KEEP and decision.bucket_kind == 'month':
            monthly_kept.add(decision.bucket)
        decisions.append(decision)

    return decisions


def summarize(decisions: Iterable[RetentionDecision]) -> Dict[str, int]:
    """Count decisions per action."""
    counts = {action.value: 0 for action in Action}
    for decision in decisions:
        counts[decision.action.value] += 1
    return counts


class RetentionManager:
    """
    Applies retention decisions to a storage gateway.

    One call to ``enforce`` covers one tier location. A listing failure
    aborts that location only; a failed delete is logged and the remaining
    objects are still processed.
    """

    def __init__(self, storage, clock: Optional[Callable[[], datetime]] = None, dry_run: bool = False):
        """
        Initialize retention manager.

        Args:
            storage: Storage gateway exposing list() and delete()
            clock: Callable returning the as-of instant (default: datetime.now)
            dry_run: Log decisions without deleting anything
        """
        self.storage = storage
        self.clock = clock or datetime.now
        self.dry_run = dry_run
        self.logs = []

    def plan(self, location: str, policy: RetentionPolicy, pattern: Optional[str] = None) -> List[RetentionDecision]:
        """
        Evaluate a location without touching it.

        Raises:
            ListError: If the location cannot be enumerated
        """
        names = self.storage.list(location, pattern)
        return evaluate(names, self.clock(), policy)

    def enforce(
        self,
        location: str,
        policy: RetentionPolicy,
        pattern: Optional[str] = None,
        label: Optional[str] = None
    ) -> Dict[str, object]:
        """
        Evaluate a location and delete what the policy rejects.

        Args:
            location: Storage prefix of one tier
            policy: Policy for that tier
            pattern: Optional glob restricting which objects belong to the tier
            label: Human-readable tier name for the log

        Returns:
            Dict with counts and errors:
            {
                'location': str,
                'listed': int,
                'kept': int,
                'deleted': int,
                'skipped': int,
                'errors': List[str]
            }

        Raises:
            ListError: If the location cannot be enumerated
        """
        label = label or location or '(root)'
        self._log(f"Cleanup: {label} in {location or '(root)'} ({policy.describe()})")

        decisions = self.plan(location, policy, pattern)
        counts = summarize(decisions)
        result = {
            'location': location,
            'listed': len(decisions),
            'kept': counts[Action.KEEP.value],
            'deleted': 0,
            'skipped': counts[Action.SKIP_UNPARSEABLE.value],
            'errors': []
        }

        for decision in decisions:
            self._log(decision.describe())
            if decision.action is not Action.DELETE or self.dry_run:
                continue

            try:
                self.storage.delete(decision.name)
                result['deleted'] += 1
            except StorageError as e:
                error_msg = f"Failed to delete {decision.name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                result['errors'].append(error_msg)

        if self.dry_run:
            self._log(f"Dry run: {counts[Action.DELETE.value]} object(s) would be deleted")

        self._log(f"Cleanup: {label} completed")
        return result

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
