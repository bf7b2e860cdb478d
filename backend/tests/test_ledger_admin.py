from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

from gateway.models.credit import CreditAccount
from gateway.services.plans import PlansService
from gateway.services.pricing import PricingError
from gateway.services.reconciliation import GenerationReconciliationService
from gateway.tasks import generations as generation_tasks

SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "ledger_admin.py"


@pytest.fixture()
def admin(monkeypatch, transactor):
    spec = importlib.util.spec_from_file_location("ledger_admin", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    monkeypatch.setattr(module, "_transactor", lambda: transactor)
    return module


def test_reconcile_command_is_clean(admin, credits, capsys):
    credits.grant_increment("user-a", "seed", 100, "admin.seed")

    assert admin.main(["reconcile", "user-a"]) == 0
    out = capsys.readouterr().out
    assert "Live balance:       100" in out
    assert "WARNING" not in out


def test_reconcile_command_flags_drift(admin, credits, session_factory, capsys):
    credits.grant_increment("user-a", "seed", 100, "admin.seed")
    with session_factory() as db:
        db.get(CreditAccount, "user-a").credit_balance = 90
        db.commit()

    assert admin.main(["reconcile", "user-a"]) == 1
    assert "drift of -10" in capsys.readouterr().out


def test_switch_plan_command(admin, credits):
    assert admin.main(["switch-plan", "user-a", "launch_4000_fixed"]) == 0

    account = credits.get_account("user-a")
    assert account.plan_code == "LAUNCH_4000_FIXED"
    assert account.credit_balance == 4000
    assert credits.list_ledger("user-a")[0].reason == "admin.plan_switch"


def test_switch_plan_rejects_unknown_plan(admin, credits):
    assert admin.main(["switch-plan", "user-a", "gold"]) == 2
    assert credits.get_account("user-a").exists is False


def test_reset_ledger_dry_run_changes_nothing(admin, credits):
    credits.grant_increment("user-a", "seed", 100, "admin.seed")

    assert admin.main(["reset-ledger", "user-a", "--dry-run"]) == 0
    assert credits.get_account("user-a").credit_balance == 100
    assert credits.reconcile_balance("user-a").ledger_count == 1


def test_reset_ledger_requires_confirmation(admin, credits, monkeypatch):
    credits.grant_increment("user-a", "seed", 100, "admin.seed")
    monkeypatch.setattr("builtins.input", lambda prompt: "no")

    assert admin.main(["reset-ledger", "user-a"]) == 1
    assert credits.reconcile_balance("user-a").ledger_count == 1


def test_reset_ledger_regrants_plan_credits(admin, credits):
    credits.grant_increment("user-a", "seed", 100, "admin.seed")
    credits.debit_if_absent("user-a", "gen-1", 31, "replicate.queue.kling")

    assert admin.main(["reset-ledger", "user-a", "--yes"]) == 0

    (entry,) = credits.list_ledger("user-a")
    assert entry.reason == "admin.ledger_reset"
    assert entry.meta == {"plan_code": "FREE", "deleted_entries": 2}
    assert credits.get_account("user-a").credit_balance == 2000
    assert credits.reconcile_balance("user-a").calculated_balance == 2000


def test_settle_command(admin, generations, credits, registry, fake_storage, fake_provider, submitted, reconciliation):
    def broken_pricing(provider, model, params):
        raise PricingError("catalog missing")

    fake_provider.complete_with_video()
    unpriced = GenerationReconciliationService(generations, credits, registry, fake_storage, pricing=broken_pricing)
    unpriced.fetch_result("user-a", generation_id=submitted.generation_id)

    assert admin.cmd_settle(reconciliation, "user-a", submitted.generation_id) == 0
    assert credits.has_confirmed_debit("user-a", submitted.generation_id) is True


def test_settle_command_refuses_non_billable(admin, fake_provider, submitted, reconciliation):
    fake_provider.fail_with("boom")
    reconciliation.fetch_result("user-a", generation_id=submitted.generation_id)

    assert admin.cmd_settle(reconciliation, "user-a", submitted.generation_id) == 2


def test_sweep_command_runs_inline(admin, monkeypatch, reconciliation, submitted, fake_provider, capsys):
    monkeypatch.setattr(generation_tasks, "_reconciliation_service", lambda: reconciliation)
    fake_provider.complete_with_video()

    assert admin.main(["sweep", "--older-than", "0"]) == 0
    assert "completed=1" in capsys.readouterr().out


def test_audit_command_runs_inline(admin, monkeypatch, transactor, credits, capsys):
    from gateway.tasks import ledger as ledger_tasks

    monkeypatch.setattr(ledger_tasks, "_transactor", lambda: transactor)
    PlansService(credits).switch_plan("user-a", "FREE")

    assert admin.main(["audit", "user-a"]) == 0
    assert "drift=0" in capsys.readouterr().out


def test_create_codes_command(admin, capsys):
    assert admin.main(["create-codes", "business", "--count", "2", "--max-uses", "3"]) == 0
    out = capsys.readouterr().out
    assert len([line for line in out.splitlines() if line.startswith("BUS-")]) == 2
    assert "Created 2 BUSINESS codes." in out

    assert admin.main(["list-codes", "--type", "business"]) == 0
    listed = capsys.readouterr().out
    assert "PLAN_B  ACTIVE  uses 0/3" in listed
    assert "2 codes." in listed


def test_create_codes_command_rejects_bad_count(admin, capsys):
    assert admin.main(["create-codes", "student", "--count", "0"]) == 2
    assert "Count must be between 1 and 1000" in capsys.readouterr().out
