"""
Error taxonomy for the orchestrator.

Quota denials are normally returned as values (see ratelimit.quota.Decision);
the exception forms exist for callers that prefer exception flow.
"""

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    pass


class QuotaExceededError(OrchestratorError):
    """Raised when a caller opts into exception flow for a quota denial."""

    def __init__(self, tier: str, quota_info: Dict[str, Any]):
        super().__init__(f"Quota exceeded ({tier}): {quota_info.get('reason')}")
        self.tier = tier
        self.quota_info = quota_info


class RetriesExhaustedError(OrchestratorError):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"Retries exhausted for {operation} after {attempts} attempt(s): {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class OperationTimeoutError(OrchestratorError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"Operation {operation} timed out after {timeout}s")
        self.operation = operation
        self.timeout = timeout


class SessionNotFoundError(OrchestratorError):
    def __init__(self, session_id: str):
        super().__init__("Mining session not found or already completed")
        self.session_id = session_id


class PersistenceFailure(OrchestratorError):
    """The counter or session store failed to read or write."""
    pass


class UnknownServiceError(OrchestratorError):
    def __init__(self, service: str):
        super().__init__(f"Unknown service: {service}")
        self.service = service


class SessionClosedError(OrchestratorError):
    """Progress was reported for a session that is no longer running."""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Mining session {session_id} is {status}")
        self.session_id = session_id
        self.status = status
