from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from gateway.dependencies.auth import get_current_user_id
from gateway.dependencies.services import get_credits_service, get_plans_service, get_redeem_codes_service
from gateway.schemas.billing import (
    AccountOut,
    CreditLedgerEntryOut,
    ReconciliationOut,
    RedeemCodeIn,
    RedeemCodeInfoOut,
    RedeemOut,
)
from gateway.services.credits import CreditsService
from gateway.services.plans import PlansService
from gateway.services.redeem_codes import RedeemCodesService

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/account", response_model=AccountOut)
def get_account(
    user_id: str = Depends(get_current_user_id),
    plans: PlansService = Depends(get_plans_service),
) -> AccountOut:
    # Not a pure read: the first call in a billing cycle writes the plan reset
    # grant to the ledger. Later calls in the same cycle replay as no-ops.
    plans.ensure_monthly_reset(user_id)
    account = plans.credits.get_account(user_id)
    return AccountOut(
        user_id=account.user_id,
        credit_balance=account.credit_balance,
        plan_code=account.plan_code,
    )


@router.get("/ledger", response_model=list[CreditLedgerEntryOut])
def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: CreditsService = Depends(get_credits_service),
) -> list[CreditLedgerEntryOut]:
    entries = service.list_ledger(user_id, limit=limit, offset=offset)
    return [CreditLedgerEntryOut.model_validate(entry) for entry in entries]


@router.get("/reconcile", response_model=ReconciliationOut)
def reconcile_account(
    user_id: str = Depends(get_current_user_id),
    service: CreditsService = Depends(get_credits_service),
) -> ReconciliationOut:
    account = service.get_account(user_id)
    summary = service.reconcile_balance(user_id)
    return ReconciliationOut(
        live_balance=account.credit_balance,
        calculated_balance=summary.calculated_balance,
        total_grants=summary.total_grants,
        total_debits=summary.total_debits,
        ledger_count=summary.ledger_count,
        drift=account.credit_balance - summary.calculated_balance,
    )


@router.post("/redeem-codes/validate", response_model=RedeemCodeInfoOut)
def validate_redeem_code(
    payload: RedeemCodeIn,
    service: RedeemCodesService = Depends(get_redeem_codes_service),
) -> RedeemCodeInfoOut:
    info = service.get_code_info(payload.code)
    return RedeemCodeInfoOut(
        valid=info.valid,
        error=info.error,
        plan_code=info.plan_code,
        credits_to_grant=info.credits_to_grant,
        remaining_time=info.remaining_time,
        expires_at=info.expires_at,
    )


@router.post("/redeem-codes/redeem", response_model=RedeemOut)
def redeem_code(
    payload: RedeemCodeIn,
    user_id: str = Depends(get_current_user_id),
    service: RedeemCodesService = Depends(get_redeem_codes_service),
) -> RedeemOut:
    result = service.redeem(payload.code, user_id)
    account = service.plans.credits.get_account(user_id)
    return RedeemOut(
        code=result.code,
        plan_code=result.plan_code,
        credits_granted=result.credits_granted,
        outcome=result.outcome.value,
        credit_balance=account.credit_balance,
    )
