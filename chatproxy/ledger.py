"""Usage ledger: per-fingerprint, per-day request counters."""
import logging
import threading
import time
from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import redis

from chatproxy.config import Settings
from chatproxy.constants import RECORD_TTL_SECONDS, REDIS_KEY_PREFIX
from chatproxy.errors import StoreUnavailable
from chatproxy.metrics import record_redis_operation
from chatproxy.quota import QuotaDecision, QuotaLimits, UsageRecord, evaluate_hour

logger = logging.getLogger("chatproxy.ledger")

T = TypeVar("T")


class UsageLedger(ABC):
    """
    Store interface for usage records keyed by (fingerprint, day).

    Readers always get snapshots; only ``record_hit``, ``try_reserve``,
    ``release`` and ``sweep_expired`` mutate stored state.
    """

    backend = "abstract"

    def __init__(self, ttl_seconds: int = RECORD_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    def get_or_create(self, fingerprint: str, day: str, now: Optional[float] = None) -> UsageRecord:
        """Return the record for the key, creating an empty one if needed."""

    @abstractmethod
    def record_hit(self, fingerprint: str, day: str, hour: int, now: Optional[float] = None) -> UsageRecord:
        """Charge one accepted request and return the post-increment snapshot."""

    @abstractmethod
    def try_reserve(
        self,
        fingerprint: str,
        day: str,
        hour: int,
        limits: QuotaLimits,
        now: Optional[float] = None
    ) -> Tuple[QuotaDecision, UsageRecord]:
        """
        Atomically check quota and, when allowed, charge one request.

        Returns the decision taken on the pre-increment state and the
        snapshot after the (possible) increment.
        """

    @abstractmethod
    def release(self, fingerprint: str, day: str, hour: int) -> None:
        """Roll back one reserved request. Counters never go below zero."""

    @abstractmethod
    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Remove records older than the retention window; return how many."""


class InMemoryUsageLedger(UsageLedger):
    """Process-local ledger. Each replica keeps its own counters."""

    backend = "memory"

    def __init__(self, ttl_seconds: int = RECORD_TTL_SECONDS) -> None:
        super().__init__(ttl_seconds)
        self._records: Dict[Tuple[str, str], UsageRecord] = {}
        self._lock = threading.Lock()

    def _get(self, fingerprint: str, day: str, now: Optional[float]) -> UsageRecord:
        # caller holds the lock
        key = (fingerprint, day)
        record = self._records.get(key)
        if record is None:
            record = UsageRecord(created_at=time.time() if now is None else now)
            self._records[key] = record
        return record

    def get_or_create(self, fingerprint: str, day: str, now: Optional[float] = None) -> UsageRecord:
        with self._lock:
            return self._get(fingerprint, day, now).copy()

    def record_hit(self, fingerprint: str, day: str, hour: int, now: Optional[float] = None) -> UsageRecord:
        with self._lock:
            record = self._get(fingerprint, day, now)
            record.daily_count += 1
            record.hourly_count[hour] = record.hourly_count.get(hour, 0) + 1
            return record.copy()

    def try_reserve(
        self,
        fingerprint: str,
        day: str,
        hour: int,
        limits: QuotaLimits,
        now: Optional[float] = None
    ) -> Tuple[QuotaDecision, UsageRecord]:
        with self._lock:
            record = self._get(fingerprint, day, now)
            decision = evaluate_hour(record, limits, hour)
            if decision.allowed:
                record.daily_count += 1
                record.hourly_count[hour] = record.hourly_count.get(hour, 0) + 1
            return decision, record.copy()

    def release(self, fingerprint: str, day: str, hour: int) -> None:
        with self._lock:
            record = self._records.get((fingerprint, day))
            if record is None:
                return
            record.daily_count = max(0, record.daily_count - 1)
            if record.hourly_count.get(hour, 0) > 0:
                record.hourly_count[hour] -= 1

    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                key for key, record in self._records.items()
                if now - record.created_at > self.ttl_seconds
            ]
            for key in expired:
                del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _redis_operation(operation: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Time a Redis-backed call and turn connection failures into StoreUnavailable."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.time()
            try:
                result = func(*args, **kwargs)
            except redis.RedisError as e:
                record_redis_operation(operation, "error", time.time() - start)
                logger.error(f"Redis {operation} failed: {e}")
                raise StoreUnavailable(str(e)) from e
            record_redis_operation(operation, "ok", time.time() - start)
            return result
        return wrapper
    return decorator


class RedisUsageLedger(UsageLedger):
    """
    Ledger shared across replicas through Redis.

    One hash per ``usage:{fingerprint}:{day}`` with fields ``daily``,
    ``h:{hour}`` and ``created_at``. The key carries a TTL equal to the
    retention window, so sweeping is only a backstop.
    """

    backend = "redis"

    # KEYS: [record]
    # ARGV: hour_field, daily_limit, hourly_limit, now, ttl
    # Returns {ok, daily_before, hourly_before}
    LUA_RESERVE = """
    local key = KEYS[1]
    local hour_field = ARGV[1]
    local daily_limit = tonumber(ARGV[2])
    local hourly_limit = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[5])

    if redis.call('HSETNX', key, 'created_at', ARGV[4]) == 1 then
      redis.call('EXPIRE', key, ttl)
    end

    local daily = tonumber(redis.call('HGET', key, 'daily') or '0')
    local hourly = tonumber(redis.call('HGET', key, hour_field) or '0')

    local ok = 1
    if daily >= daily_limit or hourly >= hourly_limit then ok = 0 end
    if ok == 1 then
      redis.call('HINCRBY', key, 'daily', 1)
      redis.call('HINCRBY', key, hour_field, 1)
    end

    return {ok, daily, hourly}
    """

    # KEYS: [record]
    # ARGV: hour_field
    LUA_RELEASE = """
    local key = KEYS[1]
    local hour_field = ARGV[1]
    if redis.call('EXISTS', key) == 0 then return 0 end

    local daily = tonumber(redis.call('HGET', key, 'daily') or '0')
    if daily > 0 then redis.call('HINCRBY', key, 'daily', -1) end

    local hourly = tonumber(redis.call('HGET', key, hour_field) or '0')
    if hourly > 0 then redis.call('HINCRBY', key, hour_field, -1) end

    return 1
    """

    def __init__(self, client: "redis.Redis", ttl_seconds: int = RECORD_TTL_SECONDS, prefix: str = REDIS_KEY_PREFIX) -> None:
        super().__init__(ttl_seconds)
        self.client = client
        self.prefix = prefix

    def _key(self, fingerprint: str, day: str) -> str:
        return f"{self.prefix}:{fingerprint}:{day}"

    @staticmethod
    def _hour_field(hour: int) -> str:
        return f"h:{hour}"

    @staticmethod
    def _parse(raw: Dict[str, str]) -> UsageRecord:
        hourly: Dict[int, int] = {}
        for name, value in raw.items():
            if name.startswith("h:"):
                hourly[int(name[2:])] = int(value)
        return UsageRecord(
            daily_count=int(raw.get("daily", 0)),
            hourly_count=hourly,
            created_at=float(raw.get("created_at", 0.0)),
        )

    @_redis_operation("get_or_create")
    def get_or_create(self, fingerprint: str, day: str, now: Optional[float] = None) -> UsageRecord:
        key = self._key(fingerprint, day)
        now = time.time() if now is None else now
        if self.client.hsetnx(key, "created_at", now):
            self.client.expire(key, self.ttl_seconds)
        return self._parse(self.client.hgetall(key))

    @_redis_operation("record_hit")
    def record_hit(self, fingerprint: str, day: str, hour: int, now: Optional[float] = None) -> UsageRecord:
        key = self._key(fingerprint, day)
        now = time.time() if now is None else now
        pipe = self.client.pipeline(transaction=True)
        pipe.hsetnx(key, "created_at", now)
        pipe.hincrby(key, "daily", 1)
        pipe.hincrby(key, self._hour_field(hour), 1)
        pipe.hgetall(key)
        created, _, _, raw = pipe.execute()
        if created:
            self.client.expire(key, self.ttl_seconds)
        return self._parse(raw)

    @_redis_operation("try_reserve")
    def try_reserve(
        self,
        fingerprint: str,
        day: str,
        hour: int,
        limits: QuotaLimits,
        now: Optional[float] = None
    ) -> Tuple[QuotaDecision, UsageRecord]:
        key = self._key(fingerprint, day)
        now = time.time() if now is None else now
        _, daily, hourly = self.client.eval(
            self.LUA_RESERVE, 1, key,
            self._hour_field(hour), limits.daily_limit, limits.hourly_limit, now, self.ttl_seconds
        )
        before = UsageRecord(daily_count=int(daily), hourly_count={hour: int(hourly)}, created_at=now)
        decision = evaluate_hour(before, limits, hour)
        return decision, self._parse(self.client.hgetall(key))

    @_redis_operation("release")
    def release(self, fingerprint: str, day: str, hour: int) -> None:
        self.client.eval(self.LUA_RELEASE, 1, self._key(fingerprint, day), self._hour_field(hour))

    @_redis_operation("sweep")
    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        removed = 0
        for key in self.client.scan_iter(match=f"{self.prefix}:*"):
            created_at = self.client.hget(key, "created_at")
            if created_at is not None and now - float(created_at) > self.ttl_seconds:
                removed += self.client.delete(key)
        return removed


def build_ledger(settings: Settings) -> UsageLedger:
    """Redis if configured, else in-memory."""
    if settings.redis_url:
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
        )
        return RedisUsageLedger(client, ttl_seconds=settings.record_ttl_seconds)
    return InMemoryUsageLedger(ttl_seconds=settings.record_ttl_seconds)
