from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from gateway.core.base import Base
from gateway.models.credit import utcnow


class RedeemCodeType(str, Enum):
    STUDENT = "STUDENT"
    BUSINESS = "BUSINESS"


class RedeemCodeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    DISABLED = "DISABLED"


class RedeemCode(Base):
    __tablename__ = "redeem_codes"

    code = Column(String(32), primary_key=True)
    code_type = Column(String(20), nullable=False)
    plan_code = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, server_default=RedeemCodeStatus.ACTIVE.value)
    max_uses = Column(Integer, nullable=False, server_default="1", default=1)
    current_uses = Column(Integer, nullable=False, server_default="0", default=0)
    # None means the code never expires.
    valid_until = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class RedeemCodeUsage(Base):
    __tablename__ = "redeem_code_usages"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    plan_code = Column(String(50), nullable=False)
    credits_granted = Column(Integer, nullable=False)
    used_at = Column(DateTime(timezone=True), server_default=func.now(), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("code", "user_id", name="uq_redeem_code_usages_code_user"),
    )
