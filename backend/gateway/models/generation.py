from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from gateway.core.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationStatus(str, Enum):
    generating = "generating"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = {GenerationStatus.completed.value, GenerationStatus.failed.value}


class BillingStatus(str, Enum):
    pending = "pending"
    billed = "billed"
    # generation succeeded but the charge could not be computed or written
    unresolved = "unresolved"
    not_billable = "not_billable"


class GenerationRecord(Base):
    __tablename__ = "generation_records"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, server_default=GenerationStatus.generating.value)
    provider = Column(String(50), nullable=False)
    provider_task_id = Column(String(255), nullable=True)
    provider_status = Column(String(50), nullable=True)
    model = Column(String(255), nullable=False)
    generation_type = Column(String(50), nullable=True)
    prompt = Column(Text, nullable=True)
    # Billing-relevant params as normalized at submit time (duration, resolution, ...).
    params = Column(JSON, nullable=False, default=dict)
    images = Column(JSON, nullable=False, default=list)
    videos = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)
    billing_status = Column(String(20), nullable=False, server_default=BillingStatus.pending.value)
    credits_charged = Column(Integer, nullable=True)
    pricing_version = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False, index=True)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_generation_records_provider_task", "user_id", "provider", "provider_task_id"),
        Index("ix_generation_records_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
