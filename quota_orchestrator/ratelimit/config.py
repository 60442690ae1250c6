"""
Rate Limiting Configuration Module

Holds the authoritative per-service rate limit policy table and the knobs
for the quota tracker, loaded from application settings with sensible
defaults.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from quota_orchestrator.errors import UnknownServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Static ceilings for one external service."""

    daily: int
    hourly: int
    per_minute: int

    def to_dict(self) -> Dict[str, int]:
        return {"daily": self.daily, "hourly": self.hourly, "per_minute": self.per_minute}


# Server-enforced ceilings. Caller-side caches must read these through the
# tracker (or GET /rate-limit/policies) instead of keeping their own copy.
DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    "apollo": RateLimitPolicy(daily=1000, hourly=100, per_minute=10),
    "serper": RateLimitPolicy(daily=500, hourly=50, per_minute=5),
    "openai": RateLimitPolicy(daily=2000, hourly=200, per_minute=20),
}


def parse_policies(raw: Optional[str]) -> Dict[str, RateLimitPolicy]:
    """
    Parse a JSON policy override.

    Accepts {"service": {"daily": int, "hourly": int, "per_minute": int}};
    "perMinute" is accepted as an alias. Services not mentioned keep their
    defaults.
    """
    policies = dict(DEFAULT_POLICIES)
    if not raw:
        return policies

    for name, limits in json.loads(raw).items():
        policies[name.lower()] = RateLimitPolicy(
            daily=int(limits["daily"]),
            hourly=int(limits["hourly"]),
            per_minute=int(limits.get("per_minute", limits.get("perMinute"))),
        )
    return policies


@dataclass
class RateLimitConfig:
    """Configuration for quota tracking."""

    enabled: bool = True
    redis_url: Optional[str] = None
    policies: Dict[str, RateLimitPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))

    # Ring sizes for hour/minute buckets kept on the usage record
    hour_buckets_retained: int = 24
    minute_buckets_retained: int = 60

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Load configuration from environment-backed settings."""
        from quota_orchestrator.config import settings

        return cls(
            enabled=settings.RATE_LIMIT_ENABLED,
            redis_url=settings.REDIS_URL,
            policies=parse_policies(settings.RATE_LIMIT_POLICIES),
            hour_buckets_retained=settings.HOUR_BUCKETS_RETAINED,
            minute_buckets_retained=settings.MINUTE_BUCKETS_RETAINED,
        )

    def get_policy(self, service: str) -> RateLimitPolicy:
        """Get the policy for a known service name."""
        policy = self.policies.get(service.lower())
        if policy is None:
            raise UnknownServiceError(service)
        return policy

    def validate(self) -> None:
        """Validate configuration values."""
        for name, policy in self.policies.items():
            if min(policy.daily, policy.hourly, policy.per_minute) <= 0:
                raise ValueError(f"Rate limits for {name} must be positive: {policy}")
            if not policy.per_minute <= policy.hourly <= policy.daily:
                raise ValueError(f"Rate limits for {name} must satisfy per_minute <= hourly <= daily: {policy}")

        if self.hour_buckets_retained < 1:
            raise ValueError("hour_buckets_retained must be >= 1")
        if self.minute_buckets_retained < 1:
            raise ValueError("minute_buckets_retained must be >= 1")


_config: Optional[RateLimitConfig] = None


def load_rate_limit_config() -> RateLimitConfig:
    """
    Load and validate the global rate limit configuration.

    Returns:
        RateLimitConfig instance
    """
    global _config

    if _config is None:
        config = RateLimitConfig.from_env()
        config.validate()
        logger.info(
            f"Rate limit config loaded: enabled={config.enabled}, "
            f"backend={'redis' if config.redis_url else 'sql'}, "
            f"services={sorted(config.policies)}"
        )
        _config = config

    return _config
