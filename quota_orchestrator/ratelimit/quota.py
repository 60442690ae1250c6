"""
Quota Tracker

Decides admit/deny for a prospective call to a rate-limited external
service, charging the calling subject's daily, hourly and per-minute
counters on admission.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from quota_orchestrator.errors import QuotaExceededError
from quota_orchestrator.models.base import utcnow
from quota_orchestrator.observability.tracing import get_tracer, trace_span, add_span_attributes
from .buckets import next_hour, next_midnight, next_minute
from .config import RateLimitConfig, RateLimitPolicy
from .metrics import record_quota_check, update_quota_remaining
from .store import CounterStore, UsageCounts, create_counter_store

logger = logging.getLogger(__name__)
tracer = get_tracer("ratelimit.quota")

TIER_DAILY = "daily"
TIER_HOURLY = "hourly"
TIER_MINUTE = "minute"

DENIAL_REASONS = {
    TIER_DAILY: "Daily limit exceeded",
    TIER_HOURLY: "Hourly limit exceeded",
    TIER_MINUTE: "Per-minute limit exceeded",
}


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat(timespec="milliseconds") + "Z" if ts else None


@dataclass
class UsageSnapshot:
    """Last-observed counts for one service, as seen by a caller."""

    daily_count: int = 0
    hourly_count: int = 0
    minute_count: int = 0
    last_call_time: Optional[datetime] = None

    @classmethod
    def from_counts(cls, counts: UsageCounts) -> "UsageSnapshot":
        return cls(
            daily_count=counts.daily,
            hourly_count=counts.hourly,
            minute_count=counts.minute,
            last_call_time=counts.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily_count": self.daily_count,
            "hourly_count": self.hourly_count,
            "minute_count": self.minute_count,
            "last_call_time": _iso(self.last_call_time),
        }


@dataclass
class Decision:
    """Outcome of an admission check. Denials always carry reason, limits and reset time."""

    allowed: bool
    service: str
    limits: RateLimitPolicy
    reason: Optional[str] = None
    tier: Optional[str] = None
    current_usage: Optional[int] = None
    reset_time: Optional[datetime] = None
    remaining: Optional[Dict[str, int]] = None
    usage: Optional[UsageSnapshot] = None
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"allowed": self.allowed, "limits": self.limits.to_dict()}
        if not self.enabled:
            body["enabled"] = False
        if self.reason is not None:
            body["reason"] = self.reason
        if self.current_usage is not None:
            body["current_usage"] = self.current_usage
        if self.reset_time is not None:
            body["reset_time"] = _iso(self.reset_time)
        if self.remaining is not None:
            body["remaining"] = self.remaining
        if self.usage is not None:
            body["usage"] = self.usage.to_dict()
        return body

    def raise_for_denial(self) -> "Decision":
        """Raise QuotaExceededError for a denial, otherwise return self."""
        if not self.allowed:
            raise QuotaExceededError(self.tier, self.to_dict())
        return self


class QuotaTracker:
    """
    Multi-window quota tracker.

    Every check re-reads the counter store; no admission decision is cached
    across calls. Increments are delegated to the store, which is
    responsible for their atomicity. Two callers racing for the last unit
    of quota may both be admitted: overshoot is bounded by the number of
    concurrently racing callers.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: Optional[CounterStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            config: RateLimitConfig instance
            store: Counter store backend; selected from config when omitted
            clock: Returns the current naive-UTC time
        """
        self.config = config
        self.store = store or create_counter_store(config)
        self.clock = clock

    def policies(self) -> Dict[str, Dict[str, int]]:
        return {name: policy.to_dict() for name, policy in sorted(self.config.policies.items())}

    def check_and_consume(self, subject: str, service: str, operation: str) -> Decision:
        """
        Check the subject's quota for `service` and consume one call if admitted.

        Tiers are evaluated daily, then hourly, then per-minute; the first
        exceeded tier decides the denial and its reset time.

        Raises:
            UnknownServiceError: If service has no policy
            PersistenceFailure: If the counter store fails
        """
        service = service.lower()
        limits = self.config.get_policy(service)

        if not self.config.enabled:
            return Decision(allowed=True, service=service, limits=limits, enabled=False)

        with trace_span(tracer, "quota.check_and_consume", attributes={
            "quota.service": service,
            "quota.subject": subject,
            "quota.operation": operation,
        }) as span:
            now = self.clock()
            counts = self.store.read(subject, service, now)

            tiers = (
                (TIER_DAILY, counts.daily, limits.daily, next_midnight),
                (TIER_HOURLY, counts.hourly, limits.hourly, next_hour),
                (TIER_MINUTE, counts.minute, limits.per_minute, next_minute),
            )
            for tier, used, ceiling, reset_at in tiers:
                if used >= ceiling:
                    decision = Decision(
                        allowed=False,
                        service=service,
                        limits=limits,
                        reason=DENIAL_REASONS[tier],
                        tier=tier,
                        current_usage=used,
                        reset_time=reset_at(now),
                        usage=UsageSnapshot.from_counts(counts),
                    )
                    logger.warning(
                        f"Quota denied for subject={subject} service={service} operation={operation}: "
                        f"{decision.reason} ({used}/{ceiling}), resets at {_iso(decision.reset_time)}"
                    )
                    record_quota_check(service, allowed=False, tier=tier)
                    add_span_attributes(span, {"quota.allowed": False, "quota.tier": tier})
                    return decision

            counts = self.store.increment(subject, service, now, operation)
            remaining = {
                "daily": limits.daily - counts.daily,
                "hourly": limits.hourly - counts.hourly,
                "per_minute": limits.per_minute - counts.minute,
            }

            record_quota_check(service, allowed=True)
            for tier, value in remaining.items():
                update_quota_remaining(service, tier, value)
            add_span_attributes(span, {
                "quota.allowed": True,
                "quota.remaining.daily": remaining["daily"],
                "quota.remaining.hourly": remaining["hourly"],
                "quota.remaining.per_minute": remaining["per_minute"],
            })
            logger.debug(f"Quota admitted for subject={subject} service={service}: remaining={remaining}")

            return Decision(
                allowed=True,
                service=service,
                limits=limits,
                remaining=remaining,
                usage=UsageSnapshot.from_counts(counts),
            )

    def get_usage(self, subject: str, service: str) -> UsageSnapshot:
        """Read the subject's current counts for `service` without consuming quota."""
        service = service.lower()
        self.config.get_policy(service)
        return UsageSnapshot.from_counts(self.store.read(subject, service, self.clock()))


# Global quota tracker instance
_quota_tracker: Optional[QuotaTracker] = None


def get_quota_tracker() -> QuotaTracker:
    """
    Get the global quota tracker instance.

    Returns:
        QuotaTracker instance
    """
    global _quota_tracker

    if _quota_tracker is None:
        from .config import load_rate_limit_config
        _quota_tracker = QuotaTracker(load_rate_limit_config())

    return _quota_tracker
