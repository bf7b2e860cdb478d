"""
Operator tooling for the credit ledger.

Subcommands:
- reconcile <uid>            print the live balance next to the ledger-derived one
- switch-plan <uid> <plan>   move a user to a plan and reset the balance to its allotment
- reset-ledger <uid>         clear the ledger, zero the balance, re-grant the plan credits
- settle <uid> <generation>  charge a generation whose billing was left unresolved
- sweep                      reconcile stale generations now (queued when a broker is configured)
- audit <uid>                run the drift audit task for one user
- create-codes <type>        issue STUDENT or BUSINESS redeem codes
- list-codes                 show recently issued redeem codes

Balance changes always go through the ledger engine, never by direct writes.
"""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
import sys


# Allow `import gateway.*` from backend/
REPO_ROOT = Path(__file__).resolve().parents[1]
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


from gateway.celery_app import BROKER_CONFIGURED, enqueue  # noqa: E402
from gateway.core.database import Transactor, get_transactor  # noqa: E402
from gateway.dependencies.services import build_provider_registry  # noqa: E402
from gateway.services.credits import CreditsService  # noqa: E402
from gateway.services.generations import GenerationsService  # noqa: E402
from gateway.services.plans import PlansService  # noqa: E402
from gateway.services.reconciliation import GenerationReconciliationService  # noqa: E402
from gateway.services.redeem_codes import RedeemCodeError, RedeemCodesService  # noqa: E402
from gateway.services.storage import StorageUploader  # noqa: E402
from gateway.tasks.generations import reconcile_stale  # noqa: E402
from gateway.tasks.ledger import audit_account  # noqa: E402


def utc_now_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def _transactor() -> Transactor:
    return get_transactor()


def cmd_reconcile(credits: CreditsService, user_id: str) -> int:
    account = credits.get_account(user_id)
    summary = credits.reconcile_balance(user_id)
    print(f"User:               {user_id}")
    print(f"Plan:               {account.plan_code}")
    print(f"Live balance:       {account.credit_balance}")
    print(f"Ledger balance:     {summary.calculated_balance}")
    print(f"Total grants:       {summary.total_grants}")
    print(f"Total debits:       {summary.total_debits}")
    print(f"Ledger entries:     {summary.ledger_count}")
    drift = account.credit_balance - summary.calculated_balance
    if drift:
        print(f"WARNING: drift of {drift} credits between live and ledger balance")
        return 1
    return 0


def cmd_switch_plan(plans: PlansService, user_id: str, plan_code: str) -> int:
    try:
        outcome = plans.switch_plan(user_id, plan_code, reason="admin.plan_switch")
    except ValueError as exc:
        print(f"Refusing to switch plan: {exc}")
        return 2
    account = plans.credits.get_account(user_id)
    print(f"Plan switch {outcome.value}: {user_id} -> {account.plan_code}, balance {account.credit_balance}")
    return 0


def cmd_reset_ledger(plans: PlansService, user_id: str, *, dry_run: bool, assume_yes: bool) -> int:
    credits = plans.credits
    account = credits.get_account(user_id)
    try:
        plan_credits = plans.get_plan_credits(account.plan_code)
    except ValueError as exc:
        print(f"Refusing to reset: {exc}")
        return 2
    entries = credits.reconcile_balance(user_id).ledger_count

    print(f"User {user_id} on {account.plan_code}: {entries} ledger entries, live balance {account.credit_balance}")
    print(f"Reset would clear the ledger and grant {plan_credits} credits.")
    if dry_run:
        print("Dry run: nothing changed.")
        return 0

    if not assume_yes:
        resp = input("Type RESET to continue: ").strip()
        if resp != "RESET":
            print("Cancelled.")
            return 1

    deleted = credits.clear_ledger(user_id)
    outcome = credits.grant_increment(
        user_id,
        f"LEDGER_RESET_{utc_now_stamp()}",
        plan_credits,
        "admin.ledger_reset",
        meta={"plan_code": account.plan_code, "deleted_entries": deleted},
    )
    after = credits.get_account(user_id)
    summary = credits.reconcile_balance(user_id)
    print(f"Deleted {deleted} entries; grant {outcome.value}.")
    print(f"Live balance {after.credit_balance}, ledger balance {summary.calculated_balance}")
    if after.credit_balance != plan_credits or summary.calculated_balance != plan_credits:
        print("WARNING: balance mismatch after reset")
        return 3
    return 0


def cmd_settle(reconciliation: GenerationReconciliationService, user_id: str, generation_id: str) -> int:
    try:
        outcome = reconciliation.settle_unresolved(user_id, generation_id)
    except ValueError as exc:
        print(f"Refusing to settle: {exc}")
        return 2
    print(f"Settled {generation_id}: {outcome.value}")
    return 0


def cmd_create_codes(
    redeem_codes: RedeemCodesService,
    code_type: str,
    count: int,
    *,
    expires_in_hours: int | None,
    max_uses: int,
) -> int:
    try:
        codes = redeem_codes.create_codes(
            code_type,
            count,
            expires_in_hours=expires_in_hours,
            max_uses=max_uses,
            created_by="ledger_admin",
        )
    except RedeemCodeError as exc:
        print(f"Refusing to create codes: {exc}")
        return 2
    for code in codes:
        print(code)
    print(f"Created {len(codes)} {code_type.upper()} codes.")
    return 0


def cmd_list_codes(redeem_codes: RedeemCodesService, code_type: str | None, limit: int) -> int:
    rows = redeem_codes.list_codes(code_type=code_type, limit=limit)
    for row in rows:
        expires = row.valid_until.isoformat() if row.valid_until else "never"
        print(f"{row.code}  {row.plan_code}  {row.status}  uses {row.current_uses}/{row.max_uses}  expires {expires}")
    print(f"{len(rows)} codes.")
    return 0


def cmd_sweep(older_than_seconds: int | None, limit: int | None) -> int:
    result = enqueue(reconcile_stale, older_than_seconds=older_than_seconds, limit=limit)
    if BROKER_CONFIGURED:
        print(f"Sweep queued: task {result.id}")
        return 0
    summary = result.get()
    print(
        "Sweep finished: scanned={scanned} completed={completed} failed={failed} "
        "pending={pending} errors={errors}".format(**summary)
    )
    return 1 if summary["errors"] else 0


def cmd_audit(user_id: str) -> int:
    result = enqueue(audit_account, user_id)
    if BROKER_CONFIGURED:
        print(f"Audit queued: task {result.id}")
        return 0
    report = result.get()
    print(f"Audit {user_id}: live={report['live_balance']} ledger={report['calculated_balance']} drift={report['drift']}")
    return 1 if report["drift"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Credit ledger operator tools.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_reconcile = sub.add_parser("reconcile", help="Compare live and ledger-derived balances.")
    p_reconcile.add_argument("user_id")

    p_switch = sub.add_parser("switch-plan", help="Switch a user's plan and reset the balance.")
    p_switch.add_argument("user_id")
    p_switch.add_argument("plan_code")

    p_reset = sub.add_parser("reset-ledger", help="Clear a user's ledger and re-grant plan credits.")
    p_reset.add_argument("user_id")
    p_reset.add_argument("--dry-run", action="store_true", help="Report what would change.")
    p_reset.add_argument("--yes", action="store_true", help="Skip confirmation prompt.")

    p_settle = sub.add_parser("settle", help="Charge a generation with unresolved billing.")
    p_settle.add_argument("user_id")
    p_settle.add_argument("generation_id")

    p_sweep = sub.add_parser("sweep", help="Reconcile stale generations.")
    p_sweep.add_argument("--older-than", type=int, default=None, help="Age in seconds (default: SWEEP_STALE_AFTER_SECONDS).")
    p_sweep.add_argument("--limit", type=int, default=None)

    p_audit = sub.add_parser("audit", help="Run the balance drift audit task.")
    p_audit.add_argument("user_id")

    p_create = sub.add_parser("create-codes", help="Issue redeem codes.")
    p_create.add_argument("code_type", type=str.upper, choices=["STUDENT", "BUSINESS"])
    p_create.add_argument("--count", type=int, default=1)
    p_create.add_argument("--expires-in", type=int, default=48, help="Hours until the codes expire.")
    p_create.add_argument("--no-expiry", action="store_true", help="Issue codes that never expire.")
    p_create.add_argument("--max-uses", type=int, default=1, help="Redemptions allowed per code.")

    p_list = sub.add_parser("list-codes", help="List recently issued redeem codes.")
    p_list.add_argument("--type", dest="code_type", default=None)
    p_list.add_argument("--limit", type=int, default=50)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "sweep":
        return cmd_sweep(args.older_than, args.limit)
    if args.command == "audit":
        return cmd_audit(args.user_id)

    transactor = _transactor()
    credits = CreditsService(transactor)
    plans = PlansService(credits)

    if args.command == "reconcile":
        return cmd_reconcile(credits, args.user_id)
    if args.command == "switch-plan":
        return cmd_switch_plan(plans, args.user_id, args.plan_code)
    if args.command == "reset-ledger":
        return cmd_reset_ledger(plans, args.user_id, dry_run=args.dry_run, assume_yes=args.yes)
    if args.command == "settle":
        reconciliation = GenerationReconciliationService(
            GenerationsService(transactor),
            credits,
            build_provider_registry(),
            StorageUploader(),
        )
        return cmd_settle(reconciliation, args.user_id, args.generation_id)
    if args.command == "create-codes":
        return cmd_create_codes(
            RedeemCodesService(plans),
            args.code_type,
            args.count,
            expires_in_hours=None if args.no_expiry else args.expires_in,
            max_uses=args.max_uses,
        )
    if args.command == "list-codes":
        return cmd_list_codes(RedeemCodesService(plans), args.code_type, args.limit)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
