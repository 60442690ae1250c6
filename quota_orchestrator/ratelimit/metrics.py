"""
Metrics Collection for Quota Orchestration

Tracks counters and gauges for quota decisions, retries, fallback selection
and session housekeeping. In-memory implementation with thread-safe updates.
"""

import logging
import threading
from typing import Dict, Any, Optional
from collections import defaultdict

from quota_orchestrator.models.base import utcnow

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Tracks:
    - Quota checks by service and outcome
    - Remaining quota per service/tier
    - Retry attempts and exhaustion
    - Fallback selection and probe latency
    - Stale session cleanup
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.counters = defaultdict(int)
        self.gauges = {}
        self.histograms = defaultdict(list)
        self.start_time = utcnow()

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        key = self._make_key(name, labels)

        with self.lock:
            self.counters[key] += value

    def set_gauge(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0):
        key = self._make_key(name, labels)

        with self.lock:
            self.gauges[key] = value

    def observe_histogram(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 0):
        key = self._make_key(name, labels)

        with self.lock:
            self.histograms[key].append(value)

            # Keep only last 1000 observations to prevent memory bloat
            if len(self.histograms[key]) > 1000:
                self.histograms[key] = self.histograms[key][-1000:]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._make_key(name, labels)

        with self.lock:
            return self.counters.get(key, 0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        key = self._make_key(name, labels)

        with self.lock:
            return self.gauges.get(key)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics (min, max, avg, p50, p95)."""
        key = self._make_key(name, labels)

        with self.lock:
            return self._stats(self.histograms.get(key, []))

    def get_all_metrics(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histograms": {
                    key: self._stats(values) for key, values in self.histograms.items()
                },
                "metadata": {
                    "start_time": self.start_time.isoformat(),
                    "uptime_seconds": (utcnow() - self.start_time).total_seconds(),
                },
            }

    def reset_metrics(self):
        """Reset all metrics (useful for testing)."""
        with self.lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
            self.start_time = utcnow()

    @staticmethod
    def _stats(values) -> Dict[str, float]:
        if not values:
            return {}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[int(count * 0.95)],
        }

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a unique key from metric name and labels."""
        if not labels:
            return name

        # Sort labels for consistent keys
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}:{label_str}"


# Global metrics collector
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()

    return _metrics_collector


# Convenience functions for common metrics

def record_quota_check(service: str, allowed: bool, tier: Optional[str] = None):
    """Record a quota decision; denials are labelled with the exceeded tier."""
    labels = {"service": service, "outcome": "allowed" if allowed else "denied"}
    if tier:
        labels["tier"] = tier
    get_metrics_collector().increment_counter("quota_checks_total", labels)


def update_quota_remaining(service: str, tier: str, remaining: int):
    get_metrics_collector().set_gauge("quota_remaining", {"service": service, "tier": tier}, remaining)


def record_retry_attempt(operation: str):
    get_metrics_collector().increment_counter("retry_attempts_total", {"operation": operation})


def record_retries_exhausted(operation: str):
    get_metrics_collector().increment_counter("retries_exhausted_total", {"operation": operation})


def record_fallback_selected(endpoint: str):
    get_metrics_collector().increment_counter("fallback_selected_total", {"endpoint": endpoint})


def record_fallback_exhausted():
    get_metrics_collector().increment_counter("fallback_exhausted_total")


def record_probe_latency(endpoint: str, latency_ms: float):
    get_metrics_collector().observe_histogram("fallback_probe_latency_ms", {"endpoint": endpoint}, latency_ms)


def record_sessions_cleaned(count: int):
    get_metrics_collector().increment_counter("sessions_cleaned_total", value=count)


def get_metrics_summary() -> Dict[str, Any]:
    return get_metrics_collector().get_all_metrics()
