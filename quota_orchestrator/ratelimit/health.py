"""
Service health scoring and batch sizing from caller-side usage snapshots.

The UsageCache is owned by the calling context (one per request, job or
worker) and passed down explicitly. It is refreshed from the quota tracker
and never accumulates counts on its own.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from quota_orchestrator.models.base import utcnow
from .buckets import next_minute
from .config import RateLimitPolicy
from .quota import Decision, QuotaTracker, UsageSnapshot

logger = logging.getLogger(__name__)

CRITICAL_PERCENT = 90
WARNING_PERCENT = 70

DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 10


class HealthLevel(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


def usage_percentages(snapshot: UsageSnapshot, policy: RateLimitPolicy) -> Dict[str, float]:
    return {
        "daily": snapshot.daily_count / policy.daily * 100,
        "hourly": snapshot.hourly_count / policy.hourly * 100,
        "minute": snapshot.minute_count / policy.per_minute * 100,
    }


def health_of(snapshot: Optional[UsageSnapshot], policy: Optional[RateLimitPolicy]) -> HealthLevel:
    """Classify utilization; any single window at or above a threshold dominates."""
    if snapshot is None or policy is None:
        return HealthLevel.UNKNOWN

    peak = max(usage_percentages(snapshot, policy).values())
    if peak >= CRITICAL_PERCENT:
        return HealthLevel.CRITICAL
    if peak >= WARNING_PERCENT:
        return HealthLevel.WARNING
    return HealthLevel.GOOD


def predict_batch_size(snapshot: Optional[UsageSnapshot], policy: Optional[RateLimitPolicy]) -> int:
    """
    Propose how many calls to issue before re-checking quota.

    Spends at most half of the remaining per-minute quota and a tenth of the
    remaining hourly quota, never fewer than 1 nor more than 10 calls.
    """
    if snapshot is None or policy is None:
        return DEFAULT_BATCH_SIZE

    minute_remaining = policy.per_minute - snapshot.minute_count
    hourly_remaining = policy.hourly - snapshot.hourly_count

    return min(
        max(1, minute_remaining // 2),
        max(1, hourly_remaining // 10),
        MAX_BATCH_SIZE,
    )


class UsageCache:
    """Caller-owned cache of last-observed usage and limits per service."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.snapshots: Dict[str, UsageSnapshot] = {}
        self.limits: Dict[str, RateLimitPolicy] = {}

    def record(self, decision: Decision) -> None:
        """Update from a tracker decision, which carries authoritative limits and counts."""
        self.limits[decision.service] = decision.limits
        if decision.usage is not None:
            self.snapshots[decision.service] = decision.usage

    def refresh(self, tracker: QuotaTracker, subject: str, service: str) -> UsageSnapshot:
        """Re-read the subject's usage from the tracker without consuming quota."""
        service = service.lower()
        snapshot = tracker.get_usage(subject, service)
        self.snapshots[service] = snapshot
        self.limits[service] = tracker.config.get_policy(service)
        return snapshot

    def health(self, service: str) -> HealthLevel:
        service = service.lower()
        return health_of(self.snapshots.get(service), self.limits.get(service))

    def batch_size(self, service: str) -> int:
        service = service.lower()
        return predict_batch_size(self.snapshots.get(service), self.limits.get(service))

    def seconds_until_minute_reset(self, service: str) -> float:
        """Seconds to wait before the next call fits the per-minute window, 0 if it fits now."""
        service = service.lower()
        snapshot = self.snapshots.get(service)
        policy = self.limits.get(service)
        if snapshot is None or policy is None or snapshot.last_call_time is None:
            return 0.0
        if snapshot.minute_count < policy.per_minute:
            return 0.0

        wait = (next_minute(snapshot.last_call_time) - self.clock()).total_seconds()
        return max(0.0, wait)

    async def wait_for_rate_limit(self, service: str) -> float:
        """
        Sleep until the per-minute window that was full at the last call has rolled over.

        Advisory only: the tracker still makes the authoritative decision.
        Returns the number of seconds waited.
        """
        wait = self.seconds_until_minute_reset(service)
        if wait > 0:
            logger.info(f"Rate limit reached for {service}, waiting {wait:.1f}s")
            await asyncio.sleep(wait)
        return wait
