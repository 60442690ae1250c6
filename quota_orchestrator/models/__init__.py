"""Database models for the quota-aware call orchestrator."""

from .base import Base
from .usage import ServiceUsage
from .mining import MiningSession, SessionStatus

__all__ = ["Base", "ServiceUsage", "MiningSession", "SessionStatus"]
