from __future__ import annotations

from gateway.services.providers import ProviderError, ProviderUnavailableError


SUBMIT_BODY = {
    "provider": "replicate",
    "model": "kling-v2.5-turbo-pro",
    "prompt": "a red fox running through snow",
    "generation_type": "video",
    "params": {"kind": "t2v", "duration": "5s"},
}


def _submit(client, **overrides):
    res = client.post("/generations", json={**SUBMIT_BODY, **overrides})
    assert res.status_code == 202, res.text
    return res.json()


def test_submit_returns_expected_debit(client):
    body = _submit(client)

    assert body["provider_task_id"] == "task-1"
    assert body["expected_debit"] == 31
    assert body["sku"] == "Kling 2.5 Turbo Pro T2V 5s"
    assert body["pricing_version"] == "kling-v1"


def test_status_then_result_flow_charges_once(client, fake_provider):
    assert client.get("/billing/account").json()["credit_balance"] == 2000
    generation_id = _submit(client)["generation_id"]

    status_res = client.get(f"/generations/{generation_id}/status")
    assert status_res.status_code == 200
    assert status_res.json() == {"generation_id": generation_id, "status": "generating", "provider_status": "in_progress"}

    not_ready = client.post(f"/generations/{generation_id}/result")
    assert not_ready.status_code == 409
    assert not_ready.json()["error"] == "NOT_READY"
    assert not_ready.json()["details"]["provider_status"] == "in_progress"

    fake_provider.complete_with_video()
    first = client.post(f"/generations/{generation_id}/result")
    second = client.post("/generations/result", params={"providerTaskId": "task-1", "provider": "replicate"})

    assert first.status_code == 200
    assert first.json()["billed"] is True
    assert first.json()["cost"] == 31
    assert first.json()["videos"][0]["source_url"] == "https://provider.test/out/video.mp4"
    assert second.json() == first.json()
    assert client.get("/billing/account").json()["credit_balance"] == 1969


def test_status_by_provider_task_id(client):
    generation_id = _submit(client)["generation_id"]

    res = client.get("/generations/status", params={"providerTaskId": "task-1"})

    assert res.status_code == 200
    assert res.json()["generation_id"] == generation_id


def test_provider_task_id_is_required(client):
    res = client.get("/generations/status")

    assert res.status_code == 400
    assert res.json()["error"] == "VALIDATION_ERROR"
    assert res.json()["message"] == "providerTaskId is required"


def test_failed_generation_result_is_not_billed(client, fake_provider):
    generation_id = _submit(client)["generation_id"]
    fake_provider.fail_with("NSFW content detected")

    body = client.post(f"/generations/{generation_id}/result").json()

    assert body["status"] == "failed"
    assert body["billed"] is False
    assert body["billing_status"] == "not_billable"
    assert body["error"] == "NSFW content detected"


def test_list_and_get_generations(client):
    first = _submit(client)["generation_id"]
    second = _submit(client)["generation_id"]

    listed = client.get("/generations").json()
    detail = client.get(f"/generations/{first}").json()

    assert [g["id"] for g in listed] == [second, first]
    assert detail["model"] == "kling-v2.5-turbo-pro"
    assert detail["params"] == {"kind": "t2v", "duration": "5s"}
    assert detail["billing_status"] == "pending"
    assert client.get("/generations", params={"status": "failed"}).json() == []


def test_generations_are_scoped_to_caller(client, app):
    from fastapi.testclient import TestClient

    generation_id = _submit(client)["generation_id"]

    with TestClient(app) as other:
        other.headers.update({"X-User-Id": "user-b"})
        res = other.get(f"/generations/{generation_id}")
        result = other.post(f"/generations/{generation_id}/result")

    assert res.status_code == 404
    assert res.json()["error"] == "NOT_FOUND"
    assert result.status_code == 404


def test_provider_rejection_maps_to_502(client, fake_provider):
    fake_provider.submit_error = ProviderError("replicate rejected the request: bad input")

    res = client.post("/generations", json=SUBMIT_BODY)

    assert res.status_code == 502
    assert res.json()["error"] == "PROVIDER_ERROR"
    (record,) = client.get("/generations").json()
    assert record["status"] == "failed"


def test_provider_outage_is_marked_retryable(client, fake_provider):
    fake_provider.submit_error = ProviderUnavailableError("Unable to reach replicate")

    res = client.post("/generations", json=SUBMIT_BODY)

    assert res.status_code == 502
    assert res.json()["error"] == "PROVIDER_UNAVAILABLE"
    assert res.json()["details"] == {"retryable": True}


def test_unknown_provider_is_not_configured(client):
    res = client.post("/generations", json={**SUBMIT_BODY, "provider": "fal", "model": "fal-ai/veo3"})

    assert res.status_code == 500
    assert res.json()["error"] == "PROVIDER_NOT_CONFIGURED"
    assert client.get("/generations").json() == []


def test_unpriced_request_is_rejected(client):
    res = client.post("/generations", json={**SUBMIT_BODY, "model": "kling-v9-hyper"})

    assert res.status_code == 422
    assert res.json()["error"] == "PRICING_ERROR"
