"""
Rate Limiting & Quota Management

This module coordinates bounded access to independently rate-limited
external services, with support for:
- Per-subject daily/hourly/per-minute quotas (Quota Tracker)
- Health scoring and batch sizing from caller-owned usage caches
- Ordered fallback endpoint selection
- In-process metrics
"""

from .config import RateLimitConfig, RateLimitPolicy, load_rate_limit_config
from .quota import Decision, QuotaTracker, UsageSnapshot, get_quota_tracker
from .health import HealthLevel, UsageCache, health_of, predict_batch_size
from .router import FallbackSelector, get_fallback_selector
from .store import CounterStore, RedisCounterStore, SqlCounterStore

__all__ = [
    "RateLimitConfig",
    "RateLimitPolicy",
    "load_rate_limit_config",
    "Decision",
    "QuotaTracker",
    "UsageSnapshot",
    "get_quota_tracker",
    "HealthLevel",
    "UsageCache",
    "health_of",
    "predict_batch_size",
    "FallbackSelector",
    "get_fallback_selector",
    "CounterStore",
    "RedisCounterStore",
    "SqlCounterStore",
]
