"""
Redeem codes: pre-issued vouchers that move a user onto a paid plan.

Redemption is two steps. The code row is locked, checked and its usage
recorded in one transaction; the plan grant then goes through the ledger
under a key derived from (code, user). A retried redeem finds the usage
row, skips the checks, and replays the grant as a no-op, so a user is
never granted twice for one code.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from gateway.core.database import Transactor
from gateway.models.redeem_code import RedeemCode, RedeemCodeStatus, RedeemCodeType, RedeemCodeUsage
from gateway.services.credits import LedgerOutcome
from gateway.services.plans import PlansService

logger = logging.getLogger(__name__)

CODE_PREFIXES = {
    RedeemCodeType.STUDENT.value: "STU",
    RedeemCodeType.BUSINESS.value: "BUS",
}
CODE_PLANS = {
    RedeemCodeType.STUDENT.value: "PLAN_A",
    RedeemCodeType.BUSINESS.value: "PLAN_B",
}

MAX_CODES_PER_BATCH = 1000
MAX_EXPIRY_HOURS = 24 * 365
MAX_USES_PER_CODE = 100
DEFAULT_EXPIRY_HOURS = 48

_RANDOM_ALPHABET = string.ascii_uppercase + string.digits


class RedeemCodeError(ValueError):
    """The code cannot be created or applied; the message is user-facing."""


@dataclass(frozen=True)
class RedeemCodeInfo:
    valid: bool
    error: str | None = None
    plan_code: str | None = None
    credits_to_grant: int | None = None
    remaining_time: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class RedeemResult:
    code: str
    plan_code: str
    credits_granted: int
    outcome: LedgerOutcome


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def redeem_idempotency_key(code: str, user_id: str) -> str:
    return f"REDEEM_{normalize_code(code)}_{user_id}"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def format_expired(valid_until: datetime, now: datetime) -> str:
    hours = int((now - valid_until).total_seconds() // 3600)
    ago = _plural(hours, "hour") if hours < 24 else _plural(hours // 24, "day")
    return f"Redeem code expired {ago} ago ({valid_until.isoformat()})"


def format_remaining(valid_until: datetime, now: datetime) -> str | None:
    remaining = int((valid_until - now).total_seconds())
    if remaining <= 0:
        return None
    hours, minutes = remaining // 3600, (remaining % 3600) // 60
    if hours > 24:
        return f"{_plural(hours // 24, 'day')} {_plural(hours % 24, 'hour')}"
    if hours > 0:
        return f"{_plural(hours, 'hour')} {_plural(minutes, 'minute')}"
    return _plural(minutes, "minute")


class RedeemCodesService:
    def __init__(self, plans: PlansService, transactor: Transactor | None = None):
        self.plans = plans
        self.transactor = transactor or plans.credits.transactor

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------
    def create_codes(
        self,
        code_type: str,
        count: int,
        *,
        expires_in_hours: int | None = DEFAULT_EXPIRY_HOURS,
        max_uses: int = 1,
        created_by: str | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        normalized_type = (code_type or "").strip().upper()
        if normalized_type not in CODE_PLANS:
            raise RedeemCodeError(f"Unknown redeem code type: {code_type}")
        if not 1 <= count <= MAX_CODES_PER_BATCH:
            raise RedeemCodeError(f"Count must be between 1 and {MAX_CODES_PER_BATCH}")
        if expires_in_hours is not None and not 1 <= expires_in_hours <= MAX_EXPIRY_HOURS:
            raise RedeemCodeError(f"Expiry must be between 1 and {MAX_EXPIRY_HOURS} hours")
        if not 1 <= max_uses <= MAX_USES_PER_CODE:
            raise RedeemCodeError(f"Max uses must be between 1 and {MAX_USES_PER_CODE}")

        current = now or datetime.now(timezone.utc)
        valid_until = current + timedelta(hours=expires_in_hours) if expires_in_hours is not None else None
        plan_code = CODE_PLANS[normalized_type]

        def _tx(session: Session) -> list[str]:
            codes: list[str] = []
            while len(codes) < count:
                code = self._generate(normalized_type, current)
                if code in codes or session.get(RedeemCode, code) is not None:
                    continue
                session.add(
                    RedeemCode(
                        code=code,
                        code_type=normalized_type,
                        plan_code=plan_code,
                        status=RedeemCodeStatus.ACTIVE.value,
                        max_uses=max_uses,
                        current_uses=0,
                        valid_until=valid_until,
                        created_by=created_by,
                        created_at=current,
                        updated_at=current,
                    )
                )
                codes.append(code)
            session.flush()
            return codes

        codes = self.transactor.run(_tx)
        logger.info(
            "Issued %s %s redeem codes plan=%s max_uses=%s valid_until=%s",
            len(codes),
            normalized_type,
            plan_code,
            max_uses,
            valid_until.isoformat() if valid_until else "never",
        )
        return codes

    def list_codes(
        self,
        *,
        code_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[RedeemCode]:
        def _read(session: Session) -> list[RedeemCode]:
            stmt = select(RedeemCode)
            if code_type:
                stmt = stmt.where(RedeemCode.code_type == code_type.strip().upper())
            if status:
                stmt = stmt.where(RedeemCode.status == status.strip().upper())
            stmt = stmt.order_by(RedeemCode.created_at.desc(), RedeemCode.code).limit(max(1, limit))
            return list(session.execute(stmt).scalars())

        return self.transactor.run(_read)

    # ------------------------------------------------------------------
    # Checking and applying
    # ------------------------------------------------------------------
    def get_code_info(self, code: str, now: datetime | None = None) -> RedeemCodeInfo:
        normalized = normalize_code(code)
        current = now or datetime.now(timezone.utc)
        row = self.transactor.run(lambda session: session.get(RedeemCode, normalized)) if normalized else None
        error = self._rejection(row, current)
        if error is not None:
            return RedeemCodeInfo(valid=False, error=error)

        valid_until = _as_utc(row.valid_until) if row.valid_until is not None else None
        return RedeemCodeInfo(
            valid=True,
            plan_code=row.plan_code,
            credits_to_grant=self.plans.plan_credits.get(row.plan_code),
            remaining_time=format_remaining(valid_until, current) if valid_until else None,
            expires_at=valid_until,
        )

    def redeem(self, code: str, user_id: str, now: datetime | None = None) -> RedeemResult:
        normalized = normalize_code(code)
        if not normalized:
            raise RedeemCodeError("Redeem code is required")
        current = now or datetime.now(timezone.utc)

        def _tx(session: Session) -> tuple[str, int, bool]:
            row = (
                session.execute(select(RedeemCode).where(RedeemCode.code == normalized).with_for_update())
                .scalars()
                .first()
            )
            if row is None:
                raise RedeemCodeError("Invalid redeem code")

            usage = (
                session.execute(
                    select(RedeemCodeUsage).where(
                        RedeemCodeUsage.code == normalized,
                        RedeemCodeUsage.user_id == user_id,
                    )
                )
                .scalars()
                .first()
            )
            if usage is not None:
                return usage.plan_code, usage.credits_granted, True

            error = self._rejection(row, current)
            if error is not None:
                raise RedeemCodeError(error)

            credits = self.plans.get_plan_credits(row.plan_code)
            row.current_uses += 1
            row.updated_at = current
            session.add(
                RedeemCodeUsage(
                    code=normalized,
                    user_id=user_id,
                    plan_code=row.plan_code,
                    credits_granted=credits,
                    used_at=current,
                )
            )
            session.flush()
            return row.plan_code, credits, False

        plan_code, credits, replay = self.transactor.run(_tx)
        key = redeem_idempotency_key(normalized, user_id)
        if replay and self.plans.credits.get_entry(user_id, key) is not None:
            # Granted on an earlier attempt.
            outcome = LedgerOutcome.SKIPPED
        else:
            outcome = self.plans.switch_plan(user_id, plan_code, idempotency_key=key, reason="redeem_code")

        logger.info(
            "Redeem code=%s user=%s plan=%s credits=%s outcome=%s",
            normalized,
            user_id,
            plan_code,
            credits,
            outcome.value,
        )
        return RedeemResult(code=normalized, plan_code=plan_code, credits_granted=credits, outcome=outcome)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _generate(code_type: str, now: datetime) -> str:
        stamp = str(int(now.timestamp() * 1000))[-6:]
        suffix = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(6))
        return f"{CODE_PREFIXES[code_type]}-{stamp}-{suffix}"

    @staticmethod
    def _rejection(row: RedeemCode | None, now: datetime) -> str | None:
        if row is None:
            return "Invalid redeem code"
        if row.status != RedeemCodeStatus.ACTIVE.value:
            return "Redeem code is not active"
        if row.current_uses >= row.max_uses:
            return "Redeem code has reached maximum uses"
        if row.valid_until is not None:
            valid_until = _as_utc(row.valid_until)
            if now > valid_until:
                return format_expired(valid_until, now)
        return None
