from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from gateway.core.config import settings
from gateway.services.credits import CreditsService, LedgerOutcome

logger = logging.getLogger(__name__)

LAUNCH_PLAN_CODE = "LAUNCH_4000_FIXED"
# Fixed-allotment plans never roll over monthly.
FIXED_PLAN_CODES = {LAUNCH_PLAN_CODE}


@dataclass(frozen=True)
class MonthlyResetResult:
    cycle: str
    plan_code: str
    outcome: LedgerOutcome | None


def billing_cycle(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return f"{current.year:04d}-{current.month:02d}"


class PlansService:
    def __init__(self, credits: CreditsService, plan_credits: dict[str, int] | None = None):
        self.credits = credits
        self.plan_credits = dict(plan_credits if plan_credits is not None else settings.PLAN_CREDITS)

    def get_plan_credits(self, plan_code: str) -> int:
        normalized = (plan_code or "").strip().upper()
        if normalized not in self.plan_credits:
            raise ValueError(f"Unknown plan code: {plan_code}")
        return self.plan_credits[normalized]

    def switch_plan(
        self,
        user_id: str,
        plan_code: str,
        *,
        idempotency_key: str | None = None,
        reason: str = "plan.switch",
    ) -> LedgerOutcome:
        normalized = (plan_code or "").strip().upper()
        credits = self.get_plan_credits(normalized)
        before = self.credits.get_account(user_id)
        key = idempotency_key or f"PLAN_SWITCH_{normalized}_{uuid.uuid4().hex}"
        outcome = self.credits.grant_and_set_plan(
            user_id,
            key,
            credits,
            normalized,
            reason,
            meta={
                "previous_plan": before.plan_code,
                "previous_balance": before.credit_balance,
            },
        )
        logger.info(
            "Plan switch user=%s %s -> %s credits=%s outcome=%s",
            user_id,
            before.plan_code,
            normalized,
            credits,
            outcome.value,
        )
        return outcome

    def ensure_monthly_reset(self, user_id: str, now: datetime | None = None) -> MonthlyResetResult:
        account = self.credits.get_account(user_id)
        cycle = billing_cycle(now)
        if account.plan_code in FIXED_PLAN_CODES:
            return MonthlyResetResult(cycle=cycle, plan_code=account.plan_code, outcome=None)

        if account.plan_code not in self.plan_credits:
            logger.warning("No monthly reset for user=%s: plan %s is not in the catalog", user_id, account.plan_code)
            return MonthlyResetResult(cycle=cycle, plan_code=account.plan_code, outcome=None)

        outcome = self.credits.grant_and_set_plan(
            user_id,
            f"PLAN_RESET_{cycle}",
            self.plan_credits[account.plan_code],
            account.plan_code,
            "plan.monthly_reset",
            meta={"cycle": cycle},
        )
        return MonthlyResetResult(cycle=cycle, plan_code=account.plan_code, outcome=outcome)
