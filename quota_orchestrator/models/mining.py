from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from quota_orchestrator.models.base import Base, UUIDMixin, utcnow


class SessionStatus(str, Enum):
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class MiningSession(Base, UUIDMixin):
    """Progress record for a long-running multi-step mining job."""

    __tablename__ = "mining_progress"

    session_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    operation_type: Mapped[str] = mapped_column(String, default="enhanced_mining", nullable=False)
    status: Mapped[str] = mapped_column(String, default=SessionStatus.RUNNING.value, nullable=False)
    current_step: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    results_so_far: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

