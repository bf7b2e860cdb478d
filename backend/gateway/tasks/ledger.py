from __future__ import annotations

import logging

from gateway.celery_app import celery_app
from gateway.core.database import Transactor, get_transactor
from gateway.services.credits import CreditsService


logger = logging.getLogger(__name__)


def _transactor() -> Transactor:
    return get_transactor()


@celery_app.task(name="ledger.audit_account")
def audit_account(user_id: str) -> dict:
    """Compare the live balance with the ledger-derived one. Never writes."""
    service = CreditsService(_transactor())
    account = service.get_account(user_id)
    summary = service.reconcile_balance(user_id)
    drift = account.credit_balance - summary.calculated_balance
    if drift:
        logger.warning(
            "Balance drift user=%s live=%s ledger=%s drift=%s entries=%s",
            user_id,
            account.credit_balance,
            summary.calculated_balance,
            drift,
            summary.ledger_count,
        )
    else:
        logger.info("Balance audit clean user=%s balance=%s", user_id, account.credit_balance)
    return {
        "user_id": user_id,
        "live_balance": account.credit_balance,
        "calculated_balance": summary.calculated_balance,
        "total_grants": summary.total_grants,
        "total_debits": summary.total_debits,
        "ledger_count": summary.ledger_count,
        "drift": drift,
    }
