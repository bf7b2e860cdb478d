from __future__ import annotations

import logging

from gateway.celery_app import celery_app
from gateway.core.database import Transactor, get_transactor
from gateway.dependencies.services import get_provider_registry, get_storage_uploader
from gateway.services.credits import CreditsService
from gateway.services.generations import GenerationsService
from gateway.services.reconciliation import GenerationReconciliationService


logger = logging.getLogger(__name__)


def _transactor() -> Transactor:
    return get_transactor()


def _reconciliation_service() -> GenerationReconciliationService:
    transactor = _transactor()
    return GenerationReconciliationService(
        GenerationsService(transactor),
        CreditsService(transactor),
        get_provider_registry(),
        get_storage_uploader(),
    )


@celery_app.task(name="generations.reconcile_stale")
def reconcile_stale(older_than_seconds: int | None = None, limit: int | None = None) -> dict:
    service = _reconciliation_service()
    summary = service.sweep_stale(older_than_seconds=older_than_seconds, limit=limit)
    return {
        "scanned": summary.scanned,
        "completed": summary.completed,
        "failed": summary.failed,
        "pending": summary.pending,
        "errors": summary.errors,
    }

