"""
Calendar windows and bounded bucket rings.

A bucket is the counter slot for one window instance, keyed by the ISO
timestamp of the window start (e.g. "2024-05-01T14:00:00" for the
14:00-14:59 hour). Bucket rings keep only the N most recent buckets so a
usage record cannot grow without bound over a day.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Optional

HOUR = timedelta(hours=1)
MINUTE = timedelta(minutes=1)


def day_key(now: datetime) -> date:
    return now.date()


def hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def minute_start(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


def bucket_key(start: datetime) -> str:
    return start.isoformat(timespec="seconds")


def hour_bucket_key(now: datetime) -> str:
    return bucket_key(hour_start(now))


def minute_bucket_key(now: datetime) -> str:
    return bucket_key(minute_start(now))


def next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), datetime.min.time())


def next_hour(now: datetime) -> datetime:
    return hour_start(now) + HOUR


def next_minute(now: datetime) -> datetime:
    return minute_start(now) + MINUTE


class BucketRing:
    """
    Fixed-size ring of the most recent window buckets.

    Writes evict buckets that started more than `capacity` windows ago and,
    if more than `capacity` buckets remain, the oldest ones. Reads never
    mutate the ring.
    """

    def __init__(self, capacity: int, window: timedelta, counts: Optional[Dict[str, int]] = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.window = window
        self._counts: Dict[str, int] = dict(counts or {})

    def get(self, key: str) -> int:
        return int(self._counts.get(key, 0))

    def increment(self, key: str, now: datetime, amount: int = 1) -> int:
        self._counts[key] = self.get(key) + amount
        self.evict(now)
        return self._counts[key]

    def evict(self, now: datetime) -> None:
        horizon = bucket_key(now - self.window * self.capacity)
        # ISO keys of identical shape sort chronologically
        kept = sorted(k for k in self._counts if k > horizon)
        kept = kept[-self.capacity:]
        self._counts = {k: self._counts[k] for k in kept}

    def to_dict(self) -> Dict[str, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)
