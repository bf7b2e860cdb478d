import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gateway.core.config import settings
from gateway.core.database import TransactionConflictError
from gateway.routes.billing import router as billing_router
from gateway.routes.generations import router as generations_router
from gateway.services.credits import IdempotencyKeyConflictError, LedgerEntryNotFoundError
from gateway.services.generations import GenerationNotFoundError
from gateway.services.pricing import PricingError
from gateway.services.providers import ProviderConfigurationError, ProviderError, ProviderUnavailableError
from gateway.services.reconciliation import GenerationNotReadyError
from gateway.services.redeem_codes import RedeemCodeError

logger = logging.getLogger(__name__)

app = FastAPI(title="Generation Gateway")
logger.info(
    "Startup config: ENV=%s broker=%s bucket=%s",
    settings.ENV,
    "configured" if settings.TASK_BROKER_URL else "memory",
    settings.S3_BUCKET_NAME or "(unset)",
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    payload: dict = {"error": code, "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    return _error_response(exc.status_code, _error_code(exc.status_code), message, details)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return _error_response(
        422,
        "VALIDATION_ERROR",
        "Invalid request payload",
        {"errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(TransactionConflictError)
def transaction_conflict_handler(request: Request, exc: TransactionConflictError):  # noqa: ARG001
    return _error_response(503, "RETRYABLE_CONFLICT", "The request could not be completed; retry it.")


@app.exception_handler(IdempotencyKeyConflictError)
def idempotency_conflict_handler(request: Request, exc: IdempotencyKeyConflictError):  # noqa: ARG001
    return _error_response(409, "IDEMPOTENCY_CONFLICT", str(exc))


@app.exception_handler(LedgerEntryNotFoundError)
@app.exception_handler(GenerationNotFoundError)
def not_found_handler(request: Request, exc: Exception):  # noqa: ARG001
    return _error_response(404, "NOT_FOUND", str(exc))


@app.exception_handler(GenerationNotReadyError)
def not_ready_handler(request: Request, exc: GenerationNotReadyError):  # noqa: ARG001
    return _error_response(
        409,
        "NOT_READY",
        str(exc),
        {"generation_id": exc.generation_id, "provider_status": exc.provider_status},
    )


@app.exception_handler(RedeemCodeError)
def redeem_code_error_handler(request: Request, exc: RedeemCodeError):  # noqa: ARG001
    return _error_response(400, "REDEEM_CODE_REJECTED", str(exc))


@app.exception_handler(PricingError)
def pricing_error_handler(request: Request, exc: PricingError):  # noqa: ARG001
    return _error_response(422, "PRICING_ERROR", str(exc))


@app.exception_handler(ProviderError)
def provider_error_handler(request: Request, exc: ProviderError):  # noqa: ARG001
    if isinstance(exc, ProviderConfigurationError):
        logger.error("Provider misconfigured: %s", exc)
        return _error_response(500, "PROVIDER_NOT_CONFIGURED", str(exc))
    if isinstance(exc, ProviderUnavailableError):
        return _error_response(502, "PROVIDER_UNAVAILABLE", str(exc), {"retryable": True})
    return _error_response(502, "PROVIDER_ERROR", str(exc))


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(generations_router)
app.include_router(billing_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
