from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gateway.dependencies.auth import get_current_user_id
from gateway.dependencies.services import (
    get_generations_service,
    get_reconciliation_service,
    get_submission_service,
)
from gateway.schemas.generation import (
    GenerationCreate,
    GenerationOut,
    GenerationResultOut,
    GenerationStatusOut,
    GenerationSubmitOut,
)
from gateway.services.generations import GenerationsService
from gateway.services.reconciliation import FetchResult, GenerationReconciliationService, StatusSnapshot
from gateway.services.submission import GenerationSubmissionService

router = APIRouter(prefix="/generations", tags=["generations"])


def _status_out(snapshot: StatusSnapshot) -> GenerationStatusOut:
    return GenerationStatusOut(
        generation_id=snapshot.generation_id,
        status=snapshot.status,
        provider_status=snapshot.provider_status,
    )


def _result_out(result: FetchResult) -> GenerationResultOut:
    return GenerationResultOut(
        generation_id=result.generation_id,
        status=result.status,
        images=result.images,
        videos=result.videos,
        billed=result.billed,
        billing_status=result.billing_status,
        cost=result.cost,
        error=result.error,
    )


def _require_task_id(provider_task_id: str | None) -> str:
    task_id = (provider_task_id or "").strip()
    if not task_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="providerTaskId is required")
    return task_id


@router.post("", response_model=GenerationSubmitOut, status_code=status.HTTP_202_ACCEPTED)
def submit_generation(
    payload: GenerationCreate,
    user_id: str = Depends(get_current_user_id),
    service: GenerationSubmissionService = Depends(get_submission_service),
) -> GenerationSubmitOut:
    result = service.submit(
        user_id,
        payload.provider,
        payload.model,
        payload.params,
        prompt=payload.prompt,
        generation_type=payload.generation_type,
    )
    return GenerationSubmitOut(
        generation_id=result.generation_id,
        provider_task_id=result.provider_task_id,
        expected_debit=result.expected_debit,
        sku=result.sku,
        pricing_version=result.pricing_version,
    )


@router.get("", response_model=list[GenerationOut])
def list_generations(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    service: GenerationsService = Depends(get_generations_service),
) -> list[GenerationOut]:
    records = service.list(user_id, status=status_filter, limit=limit, offset=offset)
    return [GenerationOut.model_validate(r) for r in records]


@router.get("/status", response_model=GenerationStatusOut)
def get_status_by_task(
    provider_task_id: str | None = Query(None, alias="providerTaskId"),
    provider: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: GenerationReconciliationService = Depends(get_reconciliation_service),
) -> GenerationStatusOut:
    snapshot = service.poll_status(user_id, provider_task_id=_require_task_id(provider_task_id), provider=provider)
    return _status_out(snapshot)


@router.post("/result", response_model=GenerationResultOut)
def fetch_result_by_task(
    provider_task_id: str | None = Query(None, alias="providerTaskId"),
    provider: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: GenerationReconciliationService = Depends(get_reconciliation_service),
) -> GenerationResultOut:
    result = service.fetch_result(user_id, provider_task_id=_require_task_id(provider_task_id), provider=provider)
    return _result_out(result)


@router.get("/{generation_id}", response_model=GenerationOut)
def get_generation(
    generation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationsService = Depends(get_generations_service),
) -> GenerationOut:
    return GenerationOut.model_validate(service.get(user_id, generation_id))


@router.get("/{generation_id}/status", response_model=GenerationStatusOut)
def get_status(
    generation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationReconciliationService = Depends(get_reconciliation_service),
) -> GenerationStatusOut:
    return _status_out(service.poll_status(user_id, generation_id=generation_id))


@router.post("/{generation_id}/result", response_model=GenerationResultOut)
def fetch_result(
    generation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: GenerationReconciliationService = Depends(get_reconciliation_service),
) -> GenerationResultOut:
    return _result_out(service.fetch_result(user_id, generation_id=generation_id))
