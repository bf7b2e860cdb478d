from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from gateway.core.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryType(str, Enum):
    GRANT = "GRANT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    HOLD = "HOLD"


class LedgerEntryStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERSED = "REVERSED"


CREDIT_ENTRY_TYPES = {LedgerEntryType.GRANT.value, LedgerEntryType.REFUND.value}
DEBIT_ENTRY_TYPES = {LedgerEntryType.DEBIT.value, LedgerEntryType.HOLD.value}


class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    user_id = Column(String(128), primary_key=True)
    # Live balance, maintained incrementally by the ledger engine. May run negative.
    credit_balance = Column(Integer, nullable=False, server_default="0", default=0)
    plan_code = Column(String(50), nullable=False, server_default="FREE")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class CreditLedger(Base):
    __tablename__ = "credit_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=False)
    entry_type = Column(String(20), nullable=False)
    # Signed: positive for GRANT/REFUND, negative for DEBIT/HOLD.
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, server_default=LedgerEntryStatus.CONFIRMED.value)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False, index=True)
    reversed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_ledger_user_idempotency"),
    )
