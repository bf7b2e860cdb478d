import os

# The module-level engine is built at import time; keep it off disk. Tests build
# their own file-backed engine per test below.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("S3_BUCKET_NAME", "test-bucket")

import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from gateway.core.base import Base
from gateway.core import config as app_config
from gateway.core.database import Transactor, build_engine, get_transactor

# Import models so they register with SQLAlchemy metadata.
from gateway.models.credit import CreditAccount, CreditLedger  # noqa: F401
from gateway.models.generation import GenerationRecord  # noqa: F401
from gateway.models.redeem_code import RedeemCode, RedeemCodeUsage  # noqa: F401

from gateway.dependencies.services import get_provider_registry, get_storage_uploader
from gateway.services.credits import CreditsService
from gateway.services.generations import GenerationsService
from gateway.services.providers import (
    ProviderArtifact,
    ProviderRegistry,
    ProviderResult,
    ProviderStatus,
)
from gateway.services.reconciliation import GenerationReconciliationService
from gateway.services.storage import StorageError, StoredArtifact
from gateway.services.submission import GenerationSubmissionService


@pytest.fixture()
def db_engine(tmp_path):
    # File-backed SQLite so worker threads get their own connections and
    # serialize on the database write lock, as they would against Postgres.
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'gateway.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


@pytest.fixture()
def transactor(session_factory):
    return Transactor(session_factory)


@pytest.fixture()
def credits(transactor):
    return CreditsService(transactor)


@pytest.fixture()
def generations(transactor):
    return GenerationsService(transactor)


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """Tests tweak the process-global settings object; restore it afterwards."""
    keys = [
        "S3_BUCKET_NAME",
        "S3_PREFIX",
        "STORAGE_PUBLIC_BASE_URL",
        "FAL_KEY",
        "REPLICATE_API_TOKEN",
        "RUNWAY_API_KEY",
        "SWEEP_STALE_AFTER_SECONDS",
        "SWEEP_BATCH_SIZE",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


class FakeProvider:
    """In-memory provider adapter. Tests set `next_result` / `submit_error` directly."""

    def __init__(self, name: str = "replicate", task_id: str = "task-1"):
        self.name = name
        self.task_id = task_id
        self.submit_error: Exception | None = None
        self.status_value = ProviderStatus.in_progress
        self.next_result = ProviderResult(status=ProviderStatus.in_progress)
        self.submitted: list[tuple[str, dict]] = []
        self.result_calls = 0
        self._lock = threading.Lock()

    def submit(self, model, payload):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((model, dict(payload)))
        return self.task_id

    def status(self, model, task_id):
        return self.status_value

    def result(self, model, task_id):
        with self._lock:
            self.result_calls += 1
        return self.next_result

    def complete_with_video(self, url: str = "https://provider.test/out/video.mp4", echoed: dict | None = None):
        self.status_value = ProviderStatus.completed
        self.next_result = ProviderResult(
            status=ProviderStatus.completed,
            artifacts=[ProviderArtifact(kind="video", url=url)],
            echoed=echoed or {},
        )

    def fail_with(self, error: str):
        self.status_value = ProviderStatus.failed
        self.next_result = ProviderResult(status=ProviderStatus.failed, error=error)


class FakeStorage:
    def __init__(self):
        self.persisted: list[tuple[str, str, str]] = []
        self.fail = False
        self._lock = threading.Lock()

    def persist(self, source_url, key_prefix, file_name):
        if self.fail:
            raise StorageError("bucket unavailable")
        with self._lock:
            self.persisted.append((source_url, key_prefix, file_name))
        key = f"generations/{key_prefix}/{file_name}"
        return StoredArtifact(public_url=f"https://cdn.test/{key}", storage_key=key)


@pytest.fixture()
def fake_provider():
    return FakeProvider()


@pytest.fixture()
def fake_storage():
    return FakeStorage()


@pytest.fixture()
def registry(fake_provider):
    return ProviderRegistry({"replicate": lambda: fake_provider})


@pytest.fixture()
def submission(generations, registry):
    return GenerationSubmissionService(generations, registry)


@pytest.fixture()
def reconciliation(generations, credits, registry, fake_storage):
    return GenerationReconciliationService(generations, credits, registry, fake_storage)


KLING_PARAMS = {"kind": "t2v", "duration": "5s"}


@pytest.fixture()
def submitted(submission):
    """A Kling 2.5 Turbo Pro T2V 5s generation for user-a, accepted by the provider."""
    return submission.submit(
        "user-a",
        "replicate",
        "kling-v2.5-turbo-pro",
        KLING_PARAMS,
        prompt="a red fox running through snow",
    )


@pytest.fixture()
def app(transactor, registry, fake_storage):
    import gateway.main as main

    fastapi_app = main.app
    fastapi_app.dependency_overrides[get_transactor] = lambda: transactor
    fastapi_app.dependency_overrides[get_provider_registry] = lambda: registry
    fastapi_app.dependency_overrides[get_storage_uploader] = lambda: fake_storage
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        c.headers.update({"X-User-Id": "user-a"})
        yield c


@pytest.fixture()
def anonymous_client(app):
    with TestClient(app) as c:
        yield c

