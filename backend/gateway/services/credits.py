from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gateway.core.config import settings
from gateway.core.database import TransactionConflictError, Transactor, get_transactor
from gateway.models.credit import (
    CREDIT_ENTRY_TYPES,
    DEBIT_ENTRY_TYPES,
    CreditAccount,
    CreditLedger,
    LedgerEntryStatus,
    LedgerEntryType,
)

logger = logging.getLogger(__name__)


class IdempotencyKeyConflictError(Exception):
    """The key is already bound to a confirmed entry of a different type."""


class LedgerEntryNotFoundError(Exception):
    pass


class LedgerOutcome(str, Enum):
    WRITTEN = "WRITTEN"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class AccountSnapshot:
    user_id: str
    credit_balance: int
    plan_code: str
    exists: bool = True


@dataclass(frozen=True)
class ReconciliationSummary:
    calculated_balance: int
    total_grants: int
    total_debits: int
    ledger_count: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_meta(meta: Any) -> dict[str, Any]:
    """
    Normalize ledger metadata to a JSON-safe dict. Typed metadata objects
    expose to_dict(); None values are dropped at every depth.
    """
    if meta is None:
        return {}
    if hasattr(meta, "to_dict"):
        meta = meta.to_dict()
    return _strip_none(dict(meta))


def _strip_none(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(v) for v in value if v is not None]
    return value


class CreditsService:
    """
    Credit ledger engine. Every balance-affecting operation runs as one
    transaction that (a) locks the account row, (b) checks the ledger entry
    stored under the caller's idempotency key and (c) writes the entry and
    the balance change together, or neither.

    No operation checks for sufficient balance: charges are applied after the
    generation already happened, so the live balance may go negative.
    """

    MAX_PAGE_SIZE = 200

    def __init__(self, transactor: Transactor | None = None, *, default_plan_code: str | None = None):
        self.transactor = transactor or get_transactor()
        self.default_plan_code = default_plan_code or settings.DEFAULT_PLAN_CODE

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_account(self, user_id: str) -> AccountSnapshot:
        def _read(session: Session) -> AccountSnapshot:
            account = session.get(CreditAccount, user_id)
            if account is None:
                return AccountSnapshot(
                    user_id=user_id,
                    credit_balance=0,
                    plan_code=self.default_plan_code,
                    exists=False,
                )
            return AccountSnapshot(
                user_id=account.user_id,
                credit_balance=int(account.credit_balance or 0),
                plan_code=account.plan_code,
            )

        return self.transactor.run(_read)

    def list_ledger(self, user_id: str, *, limit: int = 50, offset: int = 0) -> list[CreditLedger]:
        normalized_limit = max(1, min(int(limit or 50), self.MAX_PAGE_SIZE))
        normalized_offset = max(0, int(offset or 0))

        def _read(session: Session) -> list[CreditLedger]:
            return list(
                session.execute(
                    select(CreditLedger)
                    .where(CreditLedger.user_id == user_id)
                    .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
                    .offset(normalized_offset)
                    .limit(normalized_limit)
                ).scalars()
            )

        return self.transactor.run(_read)

    def get_entry(self, user_id: str, idempotency_key: str) -> CreditLedger | None:
        key = self._normalize_key(idempotency_key)
        return self.transactor.run(lambda session: self._find_entry(session, user_id, key))

    def has_confirmed_debit(self, user_id: str, idempotency_key: str) -> bool:
        entry = self.get_entry(user_id, idempotency_key)
        return (
            entry is not None
            and entry.entry_type == LedgerEntryType.DEBIT.value
            and entry.status == LedgerEntryStatus.CONFIRMED.value
        )

    def reconcile_balance(self, user_id: str) -> ReconciliationSummary:
        """
        Derive the balance from CONFIRMED ledger history. Read-only: the live
        balance is left alone so callers can compare the two and decide.
        """

        def _read(session: Session) -> ReconciliationSummary:
            rows = session.execute(
                select(
                    CreditLedger.entry_type,
                    func.coalesce(func.sum(func.abs(CreditLedger.amount)), 0),
                    func.count(CreditLedger.id),
                )
                .where(
                    CreditLedger.user_id == user_id,
                    CreditLedger.status == LedgerEntryStatus.CONFIRMED.value,
                )
                .group_by(CreditLedger.entry_type)
            ).all()
            total_grants = 0
            total_debits = 0
            count = 0
            for entry_type, magnitude, entries in rows:
                count += int(entries or 0)
                if entry_type in CREDIT_ENTRY_TYPES:
                    total_grants += int(magnitude or 0)
                elif entry_type in DEBIT_ENTRY_TYPES:
                    total_debits += int(magnitude or 0)
            return ReconciliationSummary(
                calculated_balance=max(0, total_grants - total_debits),
                total_grants=total_grants,
                total_debits=total_debits,
                ledger_count=count,
            )

        return self.transactor.run(_read)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def debit_if_absent(
        self,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Any = None,
    ) -> LedgerOutcome:
        magnitude = self._normalize_amount(amount)

        def _apply(account: CreditAccount) -> None:
            account.credit_balance = int(account.credit_balance or 0) - magnitude

        return self._write_once(
            user_id,
            idempotency_key,
            entry_type=LedgerEntryType.DEBIT,
            signed_amount=-magnitude,
            reason=reason,
            meta=meta,
            apply=_apply,
        )

    def grant_increment(
        self,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Any = None,
    ) -> LedgerOutcome:
        magnitude = self._normalize_amount(amount)

        def _apply(account: CreditAccount) -> None:
            account.credit_balance = int(account.credit_balance or 0) + magnitude

        return self._write_once(
            user_id,
            idempotency_key,
            entry_type=LedgerEntryType.GRANT,
            signed_amount=magnitude,
            reason=reason,
            meta=meta,
            apply=_apply,
        )

    def refund_if_absent(
        self,
        user_id: str,
        idempotency_key: str,
        amount: int,
        reason: str,
        meta: Any = None,
    ) -> LedgerOutcome:
        magnitude = self._normalize_amount(amount)

        def _apply(account: CreditAccount) -> None:
            account.credit_balance = int(account.credit_balance or 0) + magnitude

        return self._write_once(
            user_id,
            idempotency_key,
            entry_type=LedgerEntryType.REFUND,
            signed_amount=magnitude,
            reason=reason,
            meta=meta,
            apply=_apply,
        )

    def grant_and_set_plan(
        self,
        user_id: str,
        idempotency_key: str,
        credits: int,
        new_plan_code: str,
        reason: str,
        meta: Any = None,
    ) -> LedgerOutcome:
        """
        Plan switch: the first application overwrites the balance with the
        plan allotment. A replay never touches the balance again (debits may
        have landed since) and only re-asserts the plan code.
        """
        magnitude = self._normalize_amount(credits)
        plan_code = (new_plan_code or "").strip().upper()
        if not plan_code:
            raise ValueError("new_plan_code is required")
        entry_meta = clean_meta(meta)
        entry_meta["plan_code"] = plan_code

        def _apply(account: CreditAccount) -> None:
            account.credit_balance = magnitude
            account.plan_code = plan_code

        def _on_replay(account: CreditAccount | None) -> None:
            if account is not None and account.plan_code != plan_code:
                logger.info(
                    "Plan grant replay refreshed plan user=%s %s -> %s",
                    user_id,
                    account.plan_code,
                    plan_code,
                )
                account.plan_code = plan_code

        return self._write_once(
            user_id,
            idempotency_key,
            entry_type=LedgerEntryType.GRANT,
            signed_amount=magnitude,
            reason=reason,
            meta=entry_meta,
            apply=_apply,
            on_replay=_on_replay,
            new_account_plan=plan_code,
        )

    def reverse_entry(self, user_id: str, idempotency_key: str, reason: str) -> LedgerOutcome:
        """Manual correction: mark a CONFIRMED entry REVERSED and undo its balance effect."""
        key = self._normalize_key(idempotency_key)

        def _tx(session: Session) -> LedgerOutcome:
            account = self._lock_account(session, user_id)
            entry = self._find_entry(session, user_id, key)
            if entry is None:
                raise LedgerEntryNotFoundError(f"No ledger entry {key} for user {user_id}")
            if entry.status == LedgerEntryStatus.REVERSED.value:
                return LedgerOutcome.SKIPPED
            was_confirmed = entry.status == LedgerEntryStatus.CONFIRMED.value
            entry.status = LedgerEntryStatus.REVERSED.value
            entry.reversed_at = _utcnow()
            entry.meta = {**(entry.meta or {}), "reversal_reason": reason}
            if was_confirmed and account is not None:
                account.credit_balance = int(account.credit_balance or 0) - int(entry.amount)
            return LedgerOutcome.WRITTEN

        outcome = self.transactor.run(_tx)
        logger.info("Ledger reversal user=%s key=%s outcome=%s", user_id, key, outcome.value)
        return outcome

    def clear_ledger(self, user_id: str) -> int:
        """
        Migration-only: delete every ledger entry for the user and zero the
        live balance. The account row itself is kept.
        """

        def _tx(session: Session) -> int:
            account = self._lock_account(session, user_id)
            result = session.execute(delete(CreditLedger).where(CreditLedger.user_id == user_id))
            if account is not None:
                account.credit_balance = 0
            return int(result.rowcount or 0)

        deleted = self.transactor.run(_tx)
        logger.warning("Cleared %s ledger entries for user=%s", deleted, user_id)
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _write_once(
        self,
        user_id: str,
        idempotency_key: str,
        *,
        entry_type: LedgerEntryType,
        signed_amount: int,
        reason: str,
        meta: Any,
        apply: Callable[[CreditAccount], None],
        on_replay: Callable[[CreditAccount | None], None] | None = None,
        new_account_plan: str | None = None,
    ) -> LedgerOutcome:
        if not user_id:
            raise ValueError("user_id is required")
        key = self._normalize_key(idempotency_key)
        normalized_reason = (reason or "").strip()
        if not normalized_reason:
            raise ValueError("reason is required")
        entry_meta = clean_meta(meta)

        def _tx(session: Session) -> LedgerOutcome:
            account = self._lock_account(session, user_id)
            existing = self._find_entry(session, user_id, key)
            if existing is not None:
                if existing.entry_type == entry_type.value and existing.status != LedgerEntryStatus.PENDING.value:
                    logger.info("Ledger entry already exists (idempotent) user=%s key=%s", user_id, key)
                    if on_replay is not None:
                        on_replay(account)
                    return LedgerOutcome.SKIPPED
                if existing.status != LedgerEntryStatus.PENDING.value:
                    raise IdempotencyKeyConflictError(
                        f"Idempotency key {key} already holds a {existing.status} {existing.entry_type} entry"
                    )
                entry = existing
            else:
                entry = CreditLedger(user_id=user_id, idempotency_key=key)
                session.add(entry)

            entry.entry_type = entry_type.value
            entry.amount = signed_amount
            entry.reason = normalized_reason
            entry.status = LedgerEntryStatus.CONFIRMED.value
            entry.meta = entry_meta
            entry.created_at = _utcnow()
            entry.reversed_at = None

            if account is None:
                account = CreditAccount(
                    user_id=user_id,
                    credit_balance=0,
                    plan_code=new_account_plan or self.default_plan_code,
                )
                session.add(account)
            apply(account)
            session.flush()
            return LedgerOutcome.WRITTEN

        logger.info(
            "Ledger transaction start type=%s user=%s key=%s amount=%s reason=%s",
            entry_type.value,
            user_id,
            key,
            signed_amount,
            normalized_reason,
        )
        try:
            outcome = self.transactor.run(_tx)
        except IntegrityError:
            # Lost a first-write race on the (user_id, idempotency_key) or account
            # primary key. Whatever the winner wrote decides the outcome.
            outcome = self._resolve_lost_race(user_id, key, entry_type)
        except Exception:
            logger.exception("Ledger transaction error user=%s key=%s", user_id, key)
            raise
        logger.info(
            "Ledger transaction complete type=%s user=%s key=%s outcome=%s",
            entry_type.value,
            user_id,
            key,
            outcome.value,
        )
        return outcome

    def _resolve_lost_race(self, user_id: str, key: str, entry_type: LedgerEntryType) -> LedgerOutcome:
        existing = self.transactor.run(lambda session: self._find_entry(session, user_id, key))
        if (
            existing is not None
            and existing.entry_type == entry_type.value
            and existing.status == LedgerEntryStatus.CONFIRMED.value
        ):
            logger.info("Concurrent writer won ledger race user=%s key=%s", user_id, key)
            return LedgerOutcome.SKIPPED
        logger.error("Ledger write conflict not resolvable user=%s key=%s", user_id, key)
        raise TransactionConflictError(f"Concurrent ledger write for key {key}; retry")

    def _lock_account(self, session: Session, user_id: str) -> CreditAccount | None:
        return (
            session.execute(select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update())
            .scalars()
            .first()
        )

    def _find_entry(self, session: Session, user_id: str, key: str) -> CreditLedger | None:
        return (
            session.execute(
                select(CreditLedger).where(
                    CreditLedger.user_id == user_id,
                    CreditLedger.idempotency_key == key,
                )
            )
            .scalars()
            .first()
        )

    @staticmethod
    def _normalize_key(idempotency_key: str) -> str:
        normalized = (idempotency_key or "").strip()
        if not normalized:
            raise ValueError("idempotency_key is required")
        return normalized

    @staticmethod
    def _normalize_amount(amount: int) -> int:
        value = int(amount)
        if value < 0:
            raise ValueError("amount must be non-negative")
        return value
