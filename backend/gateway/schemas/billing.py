from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AccountOut(BaseModel):
    user_id: str
    credit_balance: int
    plan_code: str


class CreditLedgerEntryOut(BaseModel):
    idempotency_key: str
    entry_type: str
    amount: int
    reason: str
    status: str
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    reversed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ReconciliationOut(BaseModel):
    live_balance: int
    calculated_balance: int
    total_grants: int
    total_debits: int
    ledger_count: int
    drift: int


class RedeemCodeIn(BaseModel):
    code: str

    @field_validator("code")
    @staticmethod
    def _validate_code(value: str) -> str:
        normalized = (value or "").strip().upper()
        if not normalized:
            raise ValueError("code is required")
        return normalized


class RedeemCodeInfoOut(BaseModel):
    valid: bool
    error: str | None = None
    plan_code: str | None = None
    credits_to_grant: int | None = None
    remaining_time: str | None = None
    expires_at: datetime | None = None


class RedeemOut(BaseModel):
    code: str
    plan_code: str
    credits_granted: int
    outcome: str
    credit_balance: int
