from __future__ import annotations

from gateway.services.plans import PlansService
from gateway.services.redeem_codes import RedeemCodesService


def test_account_read_applies_monthly_plan_grant_once(client):
    first = client.get("/billing/account")
    second = client.get("/billing/account")

    assert first.status_code == 200
    assert first.json() == {"user_id": "user-a", "credit_balance": 2000, "plan_code": "FREE"}
    assert second.json() == first.json()
    assert len(client.get("/billing/ledger").json()) == 1



def test_account_read_survives_plan_missing_from_catalog(client, credits):
    credits.grant_and_set_plan("user-a", "promo-1", 500, "PROMO_RETIRED", "promo")

    res = client.get("/billing/account")

    assert res.status_code == 200
    assert res.json() == {"user_id": "user-a", "credit_balance": 500, "plan_code": "PROMO_RETIRED"}
    assert len(client.get("/billing/ledger").json()) == 1


def test_ledger_lists_newest_first(client, credits):
    credits.grant_and_set_plan("user-a", "init", 4000, "LAUNCH_4000_FIXED", "launch.upgrade")
    credits.debit_if_absent("user-a", "gen-1", 31, "replicate.queue.kling", {"sku": "Kling 2.5 Turbo Pro T2V 5s"})
    credits.debit_if_absent("user-a", "gen-2", 62, "replicate.queue.kling")

    res = client.get("/billing/ledger", params={"limit": 2})

    assert res.status_code == 200
    entries = res.json()
    assert [e["idempotency_key"] for e in entries] == ["gen-2", "gen-1"]
    assert entries[1]["amount"] == -31
    assert entries[1]["entry_type"] == "DEBIT"
    assert entries[1]["status"] == "CONFIRMED"
    assert entries[1]["meta"] == {"sku": "Kling 2.5 Turbo Pro T2V 5s"}


def test_ledger_limit_is_validated(client):
    res = client.get("/billing/ledger", params={"limit": 0})

    assert res.status_code == 422
    assert res.json()["error"] == "VALIDATION_ERROR"


def test_reconcile_reports_floored_balance_and_drift(client, credits):
    credits.grant_increment("user-a", "seed", 10, "admin.seed")
    credits.debit_if_absent("user-a", "gen-1", 31, "replicate.queue.kling")

    body = client.get("/billing/reconcile").json()

    assert body == {
        "live_balance": -21,
        "calculated_balance": 0,
        "total_grants": 10,
        "total_debits": 31,
        "ledger_count": 2,
        "drift": -21,
    }


def test_reconcile_is_clean_after_plan_grant_and_debit(client, credits):
    credits.grant_and_set_plan("user-a", "init", 4000, "LAUNCH_4000_FIXED", "launch.upgrade")
    credits.debit_if_absent("user-a", "gen-1", 31, "replicate.queue.kling")

    body = client.get("/billing/reconcile").json()

    assert body["live_balance"] == 3969
    assert body["calculated_balance"] == 3969
    assert body["drift"] == 0


def test_launch_plan_account_read_does_not_reset(client, credits):
    credits.grant_and_set_plan("user-a", "init", 4000, "LAUNCH_4000_FIXED", "launch.upgrade")
    credits.debit_if_absent("user-a", "gen-1", 500, "fal.queue.veo")

    assert client.get("/billing/account").json()["credit_balance"] == 3500


def _issue_code(credits, **kwargs) -> str:
    (code,) = RedeemCodesService(PlansService(credits)).create_codes("STUDENT", 1, **kwargs)
    return code


def test_validate_redeem_code(client, credits):
    code = _issue_code(credits)

    res = client.post("/billing/redeem-codes/validate", json={"code": code.lower()})

    assert res.status_code == 200
    body = res.json()
    assert body["valid"] is True
    assert body["plan_code"] == "PLAN_A"
    assert body["credits_to_grant"] == 12360
    assert body["expires_at"] is not None


def test_redeem_code_switches_plan_once(client, credits):
    code = _issue_code(credits)

    first = client.post("/billing/redeem-codes/redeem", json={"code": code})
    again = client.post("/billing/redeem-codes/redeem", json={"code": code})

    assert first.status_code == 200
    assert first.json() == {
        "code": code,
        "plan_code": "PLAN_A",
        "credits_granted": 12360,
        "outcome": "WRITTEN",
        "credit_balance": 12360,
    }
    assert again.json()["outcome"] == "SKIPPED"
    assert client.get("/billing/account").json()["plan_code"] == "PLAN_A"


def test_redeem_code_errors_use_error_shape(client, anonymous_client):
    unknown = client.post("/billing/redeem-codes/redeem", json={"code": "STU-000000-NOPE00"})
    blank = client.post("/billing/redeem-codes/redeem", json={"code": "  "})
    anonymous = anonymous_client.post("/billing/redeem-codes/redeem", json={"code": "STU-000000-NOPE00"})

    assert unknown.status_code == 400
    assert unknown.json() == {"error": "REDEEM_CODE_REJECTED", "message": "Invalid redeem code"}
    assert blank.status_code == 422
    assert anonymous.status_code == 401
