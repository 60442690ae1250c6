from datetime import date as calendar_date, datetime
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quota_orchestrator.models.base import Base, utcnow


class ServiceUsage(Base):
    """
    Service quota record: one row per (subject, service, calendar day).

    Hourly and per-minute counts are bucket rings serialized as
    {bucket_start_iso: count}; see quota_orchestrator.ratelimit.buckets.
    """

    __tablename__ = "api_usage_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    api_name: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[calendar_date] = mapped_column(Date, nullable=False)
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    hourly_counts: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    minute_counts: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_operation: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "api_name", "date", name="uq_usage_subject_service_day"),
    )
