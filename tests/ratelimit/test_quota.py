"""
Unit tests for the quota tracker.

Tests tier ordering, reset times, window rotation and the bounded
overshoot under concurrent admission.
"""

import threading
from datetime import datetime, timedelta

import pytest

from quota_orchestrator.errors import PersistenceFailure, QuotaExceededError, UnknownServiceError
from quota_orchestrator.models.usage import ServiceUsage
from quota_orchestrator.ratelimit.config import RateLimitConfig, RateLimitPolicy
from quota_orchestrator.ratelimit.metrics import get_metrics_collector
from quota_orchestrator.ratelimit.quota import QuotaTracker
from quota_orchestrator.ratelimit.store import CounterStore, SqlCounterStore, UsageCounts


@pytest.fixture
def config():
    """Create test configuration."""
    return RateLimitConfig(
        enabled=True,
        policies={
            "apollo": RateLimitPolicy(daily=5, hourly=4, per_minute=3),
            "serper": RateLimitPolicy(daily=100, hourly=50, per_minute=5),
        },
    )


@pytest.fixture
def store(session_factory):
    return SqlCounterStore(session_factory)


@pytest.fixture
def tracker(config, store, clock):
    return QuotaTracker(config, store=store, clock=clock)


def test_first_call_is_admitted_with_remaining(tracker):
    decision = tracker.check_and_consume("user-1", "apollo", "search")

    assert decision.allowed is True
    assert decision.remaining == {"daily": 4, "hourly": 3, "per_minute": 2}
    assert decision.usage.daily_count == 1
    assert decision.reason is None


def test_service_name_is_case_insensitive(tracker):
    tracker.check_and_consume("user-1", "Apollo", "search")

    assert tracker.get_usage("user-1", "APOLLO").daily_count == 1


def test_unknown_service_raises(tracker):
    with pytest.raises(UnknownServiceError):
        tracker.check_and_consume("user-1", "nonexistent", "search")


def test_minute_limit_denies_with_next_minute_reset(tracker):
    for _ in range(3):
        assert tracker.check_and_consume("user-1", "apollo", "search").allowed

    decision = tracker.check_and_consume("user-1", "apollo", "search")

    assert decision.allowed is False
    assert decision.tier == "minute"
    assert decision.reason == "Per-minute limit exceeded"
    assert decision.current_usage == 3
    assert decision.reset_time == datetime(2024, 5, 1, 14, 31, 0)
    assert decision.limits.per_minute == 3


def test_denial_does_not_consume(tracker):
    for _ in range(4):
        tracker.check_and_consume("user-1", "apollo", "search")

    assert tracker.get_usage("user-1", "apollo").minute_count == 3


def test_minute_window_rotation_readmits(tracker, clock):
    for _ in range(3):
        tracker.check_and_consume("user-1", "apollo", "search")
    assert not tracker.check_and_consume("user-1", "apollo", "search").allowed

    clock.advance(seconds=45)

    assert tracker.check_and_consume("user-1", "apollo", "search").allowed


def test_hourly_limit_checked_before_minute(tracker, clock):
    for _ in range(3):
        tracker.check_and_consume("user-1", "apollo", "search")
    clock.advance(minutes=1)
    tracker.check_and_consume("user-1", "apollo", "search")

    # Hour bucket is full (4/4) while the minute bucket has room
    decision = tracker.check_and_consume("user-1", "apollo", "search")

    assert decision.allowed is False
    assert decision.tier == "hourly"
    assert decision.reason == "Hourly limit exceeded"
    assert decision.reset_time == datetime(2024, 5, 1, 15, 0, 0)


def test_daily_limit_is_never_exceeded(tracker, clock):
    admitted = 0
    calls = 0
    # Every half hour until 23:30, staying within the same calendar day
    while clock.now.date() == datetime(2024, 5, 1).date():
        if tracker.check_and_consume("user-1", "apollo", "search").allowed:
            admitted += 1
        calls += 1
        if (clock.now + timedelta(minutes=30)).date() != clock.now.date():
            break
        clock.advance(minutes=30)

    assert calls == 19
    assert admitted == 5
    assert tracker.get_usage("user-1", "apollo").daily_count == 5


def test_daily_denial_resets_at_next_midnight(tracker, clock):
    for _ in range(5):
        tracker.check_and_consume("user-1", "apollo", "search")
        clock.advance(hours=1)

    decision = tracker.check_and_consume("user-1", "apollo", "search")

    assert decision.tier == "daily"
    assert decision.reason == "Daily limit exceeded"
    assert decision.reset_time == datetime(2024, 5, 2, 0, 0, 0)


def test_new_day_starts_fresh(tracker, clock):
    for _ in range(5):
        tracker.check_and_consume("user-1", "apollo", "search")
        clock.advance(hours=1)

    clock.now = datetime(2024, 5, 2, 0, 0, 1)

    decision = tracker.check_and_consume("user-1", "apollo", "search")
    assert decision.allowed is True
    assert decision.remaining["daily"] == 4


def test_subjects_and_services_are_independent(tracker):
    for _ in range(3):
        tracker.check_and_consume("user-1", "apollo", "search")

    assert tracker.check_and_consume("user-2", "apollo", "search").allowed
    assert tracker.check_and_consume("user-1", "serper", "search").allowed


def test_usage_record_keeps_bounded_buckets(config, session_factory, clock):
    store = SqlCounterStore(session_factory, hour_buckets=2, minute_buckets=2)
    config.policies["apollo"] = RateLimitPolicy(daily=100, hourly=100, per_minute=100)
    tracker = QuotaTracker(config, store=store, clock=clock)

    for _ in range(5):
        tracker.check_and_consume("user-1", "apollo", "enrich")
        clock.advance(minutes=1)

    db = session_factory()
    try:
        record = db.query(ServiceUsage).one()
        assert record.daily_count == 5
        assert len(record.minute_counts) == 2
        assert record.last_operation == "enrich"
    finally:
        db.close()


def test_disabled_tracker_admits_without_counting(config, store, clock):
    config.enabled = False
    tracker = QuotaTracker(config, store=store, clock=clock)

    decision = tracker.check_and_consume("user-1", "apollo", "search")

    assert decision.allowed is True
    assert decision.to_dict()["enabled"] is False
    assert tracker.get_usage("user-1", "apollo").daily_count == 0


def test_decision_to_dict_denial_shape(tracker):
    for _ in range(3):
        tracker.check_and_consume("user-1", "apollo", "search")

    body = tracker.check_and_consume("user-1", "apollo", "search").to_dict()

    assert body["allowed"] is False
    assert body["limits"] == {"daily": 5, "hourly": 4, "per_minute": 3}
    assert body["reset_time"] == "2024-05-01T14:31:00.000Z"
    assert body["current_usage"] == 3


def test_raise_for_denial(tracker):
    for _ in range(3):
        tracker.check_and_consume("user-1", "apollo", "search")

    with pytest.raises(QuotaExceededError) as exc_info:
        tracker.check_and_consume("user-1", "apollo", "search").raise_for_denial()

    assert exc_info.value.tier == "minute"


def test_decisions_are_counted_in_metrics(tracker):
    for _ in range(4):
        tracker.check_and_consume("user-1", "apollo", "search")

    metrics = get_metrics_collector()
    assert metrics.get_counter("quota_checks_total", {"service": "apollo", "outcome": "allowed"}) == 3
    assert metrics.get_counter(
        "quota_checks_total", {"service": "apollo", "outcome": "denied", "tier": "minute"}
    ) == 1


def test_admission_updates_remaining_gauges(tracker):
    tracker.check_and_consume("user-1", "apollo", "search")

    metrics = get_metrics_collector()
    assert metrics.get_gauge("quota_remaining", {"service": "apollo", "tier": "daily"}) == 4
    assert metrics.get_gauge("quota_remaining", {"service": "apollo", "tier": "per_minute"}) == 2
    assert metrics.get_gauge("quota_remaining", {"service": "serper", "tier": "daily"}) is None


def test_store_failure_propagates(config, clock):
    class BrokenStore(CounterStore):
        def read(self, subject, service, now):
            raise PersistenceFailure("store unavailable")

        def increment(self, subject, service, now, operation):
            raise AssertionError("must not increment after a failed read")

    tracker = QuotaTracker(config, store=BrokenStore(), clock=clock)

    with pytest.raises(PersistenceFailure):
        tracker.check_and_consume("user-1", "apollo", "search")


class RacingStore(CounterStore):
    """In-memory store whose readers all see the same count before anyone writes."""

    def __init__(self, initial_minute: int, callers: int):
        self.counts = UsageCounts(minute=initial_minute)
        self.lock = threading.Lock()
        self.barrier = threading.Barrier(callers)

    def read(self, subject, service, now):
        with self.lock:
            snapshot = UsageCounts(self.counts.daily, self.counts.hourly, self.counts.minute)
        self.barrier.wait(timeout=5)
        return snapshot

    def increment(self, subject, service, now, operation):
        with self.lock:
            self.counts.daily += 1
            self.counts.hourly += 1
            self.counts.minute += 1
            return UsageCounts(self.counts.daily, self.counts.hourly, self.counts.minute, now)


def test_concurrent_overshoot_is_bounded_by_racing_callers(config, clock):
    callers = 4
    store = RacingStore(initial_minute=2, callers=callers)  # one unit of minute quota left
    tracker = QuotaTracker(config, store=store, clock=clock)
    results = []

    def call():
        results.append(tracker.check_and_consume("user-1", "apollo", "search").allowed)

    threads = [threading.Thread(target=call) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    admitted = sum(results)
    assert 1 <= admitted <= callers
    # Every admission was counted exactly once
    assert store.counts.minute == 2 + admitted
