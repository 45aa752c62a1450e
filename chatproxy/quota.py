"""Free tier quota policy: usage records, limits and the allow/deny decision."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict


@dataclass
class UsageRecord:
    """Usage for one fingerprint on one calendar day."""
    daily_count: int = 0
    hourly_count: Dict[int, int] = field(default_factory=dict)
    created_at: float = 0.0

    def copy(self) -> "UsageRecord":
        return UsageRecord(self.daily_count, dict(self.hourly_count), self.created_at)


@dataclass(frozen=True)
class QuotaLimits:
    daily_limit: int
    hourly_limit: int


@dataclass(frozen=True)
class QuotaDecision:
    daily_exceeded: bool
    hourly_exceeded: bool
    remaining_daily: int
    remaining_hourly: int
    daily_count: int

    @property
    def allowed(self) -> bool:
        return not (self.daily_exceeded or self.hourly_exceeded)


def day_key(now: datetime) -> str:
    """Calendar day bucket for a timestamp."""
    return now.date().isoformat()


def hour_of_day(now: datetime) -> int:
    return now.hour


def evaluate(record: UsageRecord, limits: QuotaLimits, now: datetime) -> QuotaDecision:
    """
    Decide whether a record snapshot still has quota at ``now``.

    Pure: the same snapshot, limits and hour always give the same decision.
    Called once before forwarding and once more on the post-increment
    snapshot to report what is left.
    """
    return evaluate_hour(record, limits, hour_of_day(now))


def evaluate_hour(record: UsageRecord, limits: QuotaLimits, hour: int) -> QuotaDecision:
    hourly_now = record.hourly_count.get(hour, 0)
    return QuotaDecision(
        daily_exceeded=record.daily_count >= limits.daily_limit,
        hourly_exceeded=hourly_now >= limits.hourly_limit,
        remaining_daily=max(0, limits.daily_limit - record.daily_count),
        remaining_hourly=max(0, limits.hourly_limit - hourly_now),
        daily_count=record.daily_count,
    )


def reset_time(now: datetime, hours: int) -> str:
    """ISO-8601 UTC timestamp ``hours`` from now, millisecond precision."""
    when = (now + timedelta(hours=hours)).astimezone(timezone.utc)
    return when.strftime("%Y-%m-%dT%H:%M:%S.") + f"{when.microsecond // 1000:03d}Z"
