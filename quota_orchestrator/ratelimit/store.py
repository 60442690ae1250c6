"""
Counter Store Backends

Durable per-subject, per-service, per-window usage counters with pluggable
backends:
- SQL backend (default): row-locked read-modify-write on api_usage_tracking
- Redis backend (optional): one Lua script per increment, atomic server-side

Both backends only count; admission decisions live in the quota tracker.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quota_orchestrator.errors import PersistenceFailure
from quota_orchestrator.models.usage import ServiceUsage
from quota_orchestrator.ratelimit.buckets import (
    HOUR,
    MINUTE,
    BucketRing,
    bucket_key,
    day_key,
    hour_bucket_key,
    minute_bucket_key,
)

logger = logging.getLogger(__name__)


@dataclass
class UsageCounts:
    """Counts for the current day, hour bucket and minute bucket."""

    daily: int = 0
    hourly: int = 0
    minute: int = 0
    updated_at: Optional[datetime] = None


class CounterStore(ABC):
    """Abstract base class for counter store backends."""

    @abstractmethod
    def read(self, subject: str, service: str, now: datetime) -> UsageCounts:
        """
        Read the counters that apply at `now` without changing them.

        Returns zero counts when no record exists yet.
        """
        pass

    @abstractmethod
    def increment(self, subject: str, service: str, now: datetime, operation: str) -> UsageCounts:
        """
        Atomically add one call to the day, hour and minute counters.

        Creates the day's record on first use and returns the counts after
        the increment.
        """
        pass


class SqlCounterStore(CounterStore):
    """SQLAlchemy-backed counter store."""

    def __init__(self, session_factory: Callable[[], Session], hour_buckets: int = 24, minute_buckets: int = 60):
        self.session_factory = session_factory
        self.hour_buckets = hour_buckets
        self.minute_buckets = minute_buckets

    def _query(self, db: Session, subject: str, service: str, now: datetime):
        return db.query(ServiceUsage).filter(
            ServiceUsage.user_id == subject,
            ServiceUsage.api_name == service,
            ServiceUsage.date == day_key(now),
        )

    def read(self, subject: str, service: str, now: datetime) -> UsageCounts:
        db = self.session_factory()
        try:
            record = self._query(db, subject, service, now).first()
            if record is None:
                return UsageCounts()

            return UsageCounts(
                daily=record.daily_count,
                hourly=int((record.hourly_counts or {}).get(hour_bucket_key(now), 0)),
                minute=int((record.minute_counts or {}).get(minute_bucket_key(now), 0)),
                updated_at=record.updated_at,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to read usage for {subject}/{service}: {e}")
            raise PersistenceFailure(f"Failed to read usage: {e}") from e
        finally:
            db.close()

    def increment(self, subject: str, service: str, now: datetime, operation: str) -> UsageCounts:
        # A concurrent first-of-day insert loses the unique constraint race;
        # the second pass then finds and locks the winner's row.
        for attempt in range(2):
            db = self.session_factory()
            try:
                return self._increment(db, subject, service, now, operation)
            except IntegrityError as e:
                db.rollback()
                if attempt == 1:
                    raise PersistenceFailure(f"Failed to create usage record: {e}") from e
                logger.debug(f"Usage record for {subject}/{service} created concurrently, retrying")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to increment usage for {subject}/{service}: {e}")
                raise PersistenceFailure(f"Failed to increment usage: {e}") from e
            finally:
                db.close()

    def _increment(self, db: Session, subject: str, service: str, now: datetime, operation: str) -> UsageCounts:
        record = self._query(db, subject, service, now).with_for_update().first()

        if record is None:
            record = ServiceUsage(
                user_id=subject,
                api_name=service,
                date=day_key(now),
                daily_count=0,
                hourly_counts={},
                minute_counts={},
            )
            db.add(record)

        hours = BucketRing(self.hour_buckets, HOUR, record.hourly_counts)
        minutes = BucketRing(self.minute_buckets, MINUTE, record.minute_counts)
        hourly = hours.increment(hour_bucket_key(now), now)
        minute = minutes.increment(minute_bucket_key(now), now)

        # Reassign (not mutate) the JSON columns so the change is flushed
        record.daily_count = (record.daily_count or 0) + 1
        record.hourly_counts = hours.to_dict()
        record.minute_counts = minutes.to_dict()
        record.last_operation = operation
        record.updated_at = now
        db.commit()

        return UsageCounts(daily=record.daily_count, hourly=hourly, minute=minute, updated_at=now)


INCREMENT_SCRIPT = """
local key = KEYS[1]
local hour_field = ARGV[1]
local minute_field = ARGV[2]
local hour_horizon = ARGV[3]
local minute_horizon = ARGV[4]

local daily = redis.call('HINCRBY', key, 'daily_count', 1)
local hourly = redis.call('HINCRBY', key, hour_field, 1)
local minute = redis.call('HINCRBY', key, minute_field, 1)
redis.call('HSET', key, 'last_operation', ARGV[5], 'updated_at', ARGV[6])

-- Evict buckets that fell out of the retained ring
for _, field in ipairs(redis.call('HKEYS', key)) do
    local prefix = string.sub(field, 1, 2)
    if (prefix == 'h:' and field <= hour_horizon) or (prefix == 'm:' and field <= minute_horizon) then
        redis.call('HDEL', key, field)
    end
end

return {daily, hourly, minute}
"""


class RedisCounterStore(CounterStore):
    """Redis-backed counter store (multi-process, atomic increments)."""

    def __init__(self, redis_url: Optional[str] = None, hour_buckets: int = 24, minute_buckets: int = 60, client=None):
        if client is None:
            import redis
            client = redis.from_url(redis_url, decode_responses=True)
            logger.info(f"Redis counter store initialized: {redis_url}")
        self.redis_client = client
        self.hour_buckets = hour_buckets
        self.minute_buckets = minute_buckets

    @staticmethod
    def _get_key(subject: str, service: str, now: datetime) -> str:
        return f"quota:usage:{subject}:{service}:{day_key(now).isoformat()}"

    def read(self, subject: str, service: str, now: datetime) -> UsageCounts:
        from redis.exceptions import RedisError

        key = self._get_key(subject, service, now)
        try:
            daily, hourly, minute, updated_at = self.redis_client.hmget(
                key,
                "daily_count",
                f"h:{hour_bucket_key(now)}",
                f"m:{minute_bucket_key(now)}",
                "updated_at",
            )
        except RedisError as e:
            logger.error(f"Failed to read usage for {subject}/{service}: {e}")
            raise PersistenceFailure(f"Failed to read usage: {e}") from e

        return UsageCounts(
            daily=int(daily or 0),
            hourly=int(hourly or 0),
            minute=int(minute or 0),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )

    def increment(self, subject: str, service: str, now: datetime, operation: str) -> UsageCounts:
        from redis.exceptions import RedisError

        key = self._get_key(subject, service, now)
        hour_horizon = "h:" + bucket_key(now - HOUR * self.hour_buckets)
        minute_horizon = "m:" + bucket_key(now - MINUTE * self.minute_buckets)

        try:
            daily, hourly, minute = self.redis_client.eval(
                INCREMENT_SCRIPT,
                1,  # Number of keys
                key,
                f"h:{hour_bucket_key(now)}",
                f"m:{minute_bucket_key(now)}",
                hour_horizon,
                minute_horizon,
                operation,
                now.isoformat(),
            )
        except RedisError as e:
            logger.error(f"Failed to increment usage for {subject}/{service}: {e}")
            raise PersistenceFailure(f"Failed to increment usage: {e}") from e

        return UsageCounts(daily=int(daily), hourly=int(hourly), minute=int(minute), updated_at=now)


def create_counter_store(config, session_factory: Optional[Callable[[], Session]] = None) -> CounterStore:
    """
    Select a backend based on configuration:
    - Redis backend if redis_url is provided
    - SQL backend otherwise
    """
    if config.redis_url:
        logger.info("Using Redis counter store backend")
        return RedisCounterStore(
            config.redis_url,
            hour_buckets=config.hour_buckets_retained,
            minute_buckets=config.minute_buckets_retained,
        )

    if session_factory is None:
        from quota_orchestrator.database import SessionLocal
        session_factory = SessionLocal

    logger.info("Using SQL counter store backend")
    return SqlCounterStore(
        session_factory,
        hour_buckets=config.hour_buckets_retained,
        minute_buckets=config.minute_buckets_retained,
    )
