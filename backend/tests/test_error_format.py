from __future__ import annotations

from gateway.core.database import TransactionConflictError, get_transactor


def _assert_error_shape(res, *, error: str | None = None):
    data = res.json()
    assert isinstance(data, dict)
    assert isinstance(data.get("error"), str) and data["error"]
    assert isinstance(data.get("message"), str) and data["message"]
    if error is not None:
        assert data["error"] == error


def test_error_shape_401_missing_identity(anonymous_client):
    res = anonymous_client.get("/billing/account")
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_error_shape_401_oversized_identity(anonymous_client):
    res = anonymous_client.get("/billing/account", headers={"X-User-Id": "u" * 200})
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_error_shape_404_generation_not_found(client):
    res = client.get("/generations/does-not-exist")
    assert res.status_code == 404
    _assert_error_shape(res, error="NOT_FOUND")


def test_error_shape_422_request_validation_error(client):
    res = client.post("/generations", json={"provider": "  ", "model": "kling-v2.5-turbo-pro"})
    assert res.status_code == 422
    _assert_error_shape(res, error="VALIDATION_ERROR")
    body = res.json()
    assert isinstance(body.get("details"), dict)
    assert isinstance(body["details"].get("errors"), list)


def test_error_shape_503_store_conflict(client, app):
    class LockedTransactor:
        def run(self, fn):
            raise TransactionConflictError("database is locked")

    app.dependency_overrides[get_transactor] = lambda: LockedTransactor()

    res = client.get("/billing/reconcile")

    assert res.status_code == 503
    _assert_error_shape(res, error="RETRYABLE_CONFLICT")


def test_health(anonymous_client):
    res = anonymous_client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}
