from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gateway.models.generation import BillingStatus, GenerationStatus
from gateway.services.generations import GenerationNotFoundError


def _create(generations, user_id="user-a", **kwargs):
    kwargs.setdefault("prompt", "a lighthouse at dusk")
    return generations.create(user_id, "replicate", "kling-v2.5-turbo-pro", {"kind": "t2v"}, **kwargs)


def test_create_starts_generating_with_pending_billing(generations):
    record = _create(generations, generation_type="video")

    assert record.status == GenerationStatus.generating.value
    assert record.billing_status == BillingStatus.pending.value
    assert record.provider_task_id is None
    assert record.params == {"kind": "t2v"}
    assert generations.get("user-a", record.id).generation_type == "video"


def test_get_is_scoped_to_owner(generations):
    record = _create(generations)

    with pytest.raises(GenerationNotFoundError):
        generations.get("user-b", record.id)


def test_locate_by_provider_task_id(generations):
    record = _create(generations)
    generations.attach_provider_task(record.id, "pred-77")

    assert generations.locate("user-a", provider_task_id="pred-77").id == record.id
    assert generations.locate("user-a", provider_task_id="pred-77", provider="replicate").id == record.id
    with pytest.raises(GenerationNotFoundError):
        generations.locate("user-a", provider_task_id="pred-77", provider="fal")
    with pytest.raises(GenerationNotFoundError):
        generations.locate("user-b", provider_task_id="pred-77")
    with pytest.raises(ValueError):
        generations.locate("user-a")


def test_terminal_record_ignores_later_transitions(generations):
    record = _create(generations)
    generations.mark_completed(record.id, billing_status="billed", credits_charged=31, pricing_version="kling-v1")

    after_fail = generations.mark_failed(record.id, "late failure")
    after_status = generations.record_provider_status(record.id, "in_progress")
    after_save = generations.save_artifacts(record.id, videos=[{"url": "https://other"}])

    for current in (after_fail, after_status, after_save):
        assert current.status == GenerationStatus.completed.value
        assert current.credits_charged == 31
        assert current.error is None
        assert current.videos == []


def test_failed_record_is_never_completed(generations):
    record = _create(generations)
    generations.mark_failed(record.id, "provider exploded")

    current = generations.mark_completed(record.id, billing_status="billed", credits_charged=31)

    assert current.status == GenerationStatus.failed.value
    assert current.billing_status == BillingStatus.not_billable.value
    assert current.credits_charged is None


def test_backfill_updates_terminal_artifacts_only(generations):
    record = _create(generations)
    generations.mark_completed(record.id, billing_status="billed", credits_charged=31, pricing_version="kling-v1")

    current = generations.backfill_artifacts(record.id, videos=[{"url": "https://cdn/new.mp4"}])

    assert current.videos == [{"url": "https://cdn/new.mp4"}]
    assert current.status == GenerationStatus.completed.value
    assert current.billing_status == "billed"
    assert current.credits_charged == 31


def test_list_filters_by_status_newest_first(generations):
    first = _create(generations)
    second = _create(generations)
    third = _create(generations)
    _create(generations, user_id="user-b")
    generations.mark_failed(second.id, "boom")

    all_records = generations.list("user-a")
    generating = generations.list("user-a", status="generating")

    assert [r.id for r in all_records] == [third.id, second.id, first.id]
    assert [r.id for r in generating] == [third.id, first.id]
    assert len(generations.list("user-a", limit=1)) == 1


def test_list_stale_returns_only_old_generating_records_with_task(generations):
    stale = _create(generations)
    generations.attach_provider_task(stale.id, "task-stale")
    no_task = _create(generations)
    done = _create(generations)
    generations.attach_provider_task(done.id, "task-done")
    generations.mark_failed(done.id, "boom")

    future = datetime.now(timezone.utc) + timedelta(minutes=5)
    past = datetime.now(timezone.utc) - timedelta(minutes=5)

    assert [r.id for r in generations.list_stale(future)] == [stale.id]
    assert generations.list_stale(past) == []
    assert no_task.id not in [r.id for r in generations.list_stale(future)]


def test_update_missing_record_raises(generations):
    with pytest.raises(GenerationNotFoundError):
        generations.attach_provider_task("does-not-exist", "task-x")


def test_settlement_completes_a_record_failed_only_for_billing(generations):
    billing_failed = _create(generations)
    generations.mark_failed(billing_failed.id, "billing unresolved (ledger): timeout", billing_status="unresolved")
    provider_failed = _create(generations)
    generations.mark_failed(provider_failed.id, "provider exploded")

    settled = generations.complete_settlement(billing_failed.id, credits_charged=31, pricing_version="kling-v1")
    untouched = generations.complete_settlement(provider_failed.id, credits_charged=31)

    assert settled.status == GenerationStatus.completed.value
    assert settled.error is None
    assert settled.billing_status == BillingStatus.billed.value
    assert settled.credits_charged == 31
    assert settled.pricing_version == "kling-v1"
    assert untouched.status == GenerationStatus.failed.value
    assert untouched.error == "provider exploded"
