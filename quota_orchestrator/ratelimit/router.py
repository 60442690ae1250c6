"""
Fallback Endpoint Selection

Picks the first healthy endpoint from a caller-ordered candidate list.
Candidates are probed strictly in the given priority order and never
reordered by observed latency.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as ProbeTimeout
from typing import Callable, Optional, Sequence

import requests

from quota_orchestrator.observability.tracing import get_tracer, trace_span, add_span_attributes
from .metrics import record_fallback_exhausted, record_fallback_selected, record_probe_latency

logger = logging.getLogger(__name__)
tracer = get_tracer("ratelimit.router")

DEFAULT_PROBE_TIMEOUT_SEC = 5.0


def http_head_probe(endpoint: str, timeout: float) -> bool:
    """
    Read-only liveness check: HEAD request, healthy on any 2xx/3xx.

    Redirects are not followed; a redirecting endpoint is alive.
    """
    try:
        response = requests.head(endpoint, timeout=timeout, allow_redirects=False)
        return response.ok
    except requests.RequestException as e:
        logger.error(f"Health check failed for {endpoint}: {e}")
        return False


class FallbackSelector:
    """
    Probes candidate endpoints and returns the first one that answers.

    Probing stops at the first success, so later candidates are never
    contacted once an earlier one is healthy.
    """

    def __init__(
        self,
        probe: Callable[[str, float], bool] = http_head_probe,
        timeout: float = DEFAULT_PROBE_TIMEOUT_SEC,
    ):
        """
        Args:
            probe: Callable(endpoint, timeout) -> bool; must not mutate remote state
            timeout: Total seconds allowed per candidate, enforced even if the
                probe ignores it
        """
        self.probe = probe
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="fallback-probe")

    def check_health(self, endpoint: str) -> bool:
        start = time.time()
        future = self._executor.submit(self.probe, endpoint, self.timeout)
        try:
            healthy = bool(future.result(timeout=self.timeout))
        except ProbeTimeout:
            # The worker is left to finish on its own; its answer is discarded
            future.cancel()
            logger.warning(f"Health check timed out for {endpoint} after {self.timeout}s")
            healthy = False
        except Exception as e:
            logger.error(f"Health check failed for {endpoint}: {e}")
            healthy = False
        record_probe_latency(endpoint, (time.time() - start) * 1000)
        return healthy

    def select_fallback(self, candidates: Sequence[str]) -> Optional[str]:
        """
        Return the first candidate whose probe succeeds, or None if all fail.

        Args:
            candidates: Endpoints in priority order
        """
        with trace_span(tracer, "fallback.select", attributes={"fallback.candidates": len(candidates)}) as span:
            for position, endpoint in enumerate(candidates):
                if self.check_health(endpoint):
                    logger.info(f"Selected fallback API: {endpoint}")
                    record_fallback_selected(endpoint)
                    add_span_attributes(span, {
                        "fallback.selected": endpoint,
                        "fallback.probed": position + 1,
                    })
                    return endpoint

            logger.warning(f"No healthy fallback APIs available (tried {len(candidates)})")
            record_fallback_exhausted()
            add_span_attributes(span, {"fallback.selected": "none"})
            return None


# Global selector instance
_fallback_selector: Optional[FallbackSelector] = None


def get_fallback_selector() -> FallbackSelector:
    """
    Get the global fallback selector instance.

    Returns:
        FallbackSelector instance
    """
    global _fallback_selector

    if _fallback_selector is None:
        from quota_orchestrator.config import settings
        _fallback_selector = FallbackSelector(timeout=settings.FALLBACK_PROBE_TIMEOUT_SEC)

    return _fallback_selector
