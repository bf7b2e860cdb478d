from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from gateway.core.config import settings
from gateway.services.providers import (
    HttpProviderClient,
    ProviderArtifact,
    ProviderError,
    ProviderResult,
    ProviderStatus,
    build_input,
    collect_urls,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "IN_QUEUE": ProviderStatus.queued,
    "IN_PROGRESS": ProviderStatus.in_progress,
    "COMPLETED": ProviderStatus.completed,
    "FAILED": ProviderStatus.failed,
    "ERROR": ProviderStatus.failed,
}

_ECHO_FIELDS = ("duration", "resolution", "aspect_ratio", "generate_audio")


def app_id(model: str) -> str:
    """Queue status/result live under the app id: the first two path segments."""
    parts = [p for p in model.strip("/").split("/") if p]
    return "/".join(parts[:2])


class FalClient(HttpProviderClient):
    """FAL queue API: submit to /{model}, poll /{app}/requests/{id}[/status]."""

    name = "fal"

    def __init__(self, api_key: str | None = None, base_url: str | None = None, *, http_client: httpx.Client | None = None):
        super().__init__(
            settings.FAL_KEY if api_key is None else api_key,
            base_url or settings.FAL_QUEUE_BASE_URL,
            http_client=http_client,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.api_key}"}

    def submit(self, model: str, payload: Mapping[str, Any]) -> str:
        _, body = self._request("POST", model, json=build_input(payload))
        request_id = body.get("request_id") if isinstance(body, Mapping) else None
        if not request_id:
            raise ProviderError("fal submit response is missing request_id")
        logger.info("fal queued model=%s request_id=%s", model, request_id)
        return str(request_id)

    def status(self, model: str, task_id: str) -> ProviderStatus:
        _, body = self._request("GET", f"{app_id(model)}/requests/{task_id}/status")
        raw = str(body.get("status") or "").upper() if isinstance(body, Mapping) else ""
        status = _STATUS_MAP.get(raw)
        if status is None:
            raise ProviderError(f"fal returned an unknown status: {raw or body!r}")
        return status

    def result(self, model: str, task_id: str) -> ProviderResult:
        status = self.status(model, task_id)
        if status in (ProviderStatus.queued, ProviderStatus.in_progress):
            return ProviderResult(status=status)

        code, body = self._request("GET", f"{app_id(model)}/requests/{task_id}", allow_error=True)
        if code >= 400 or status == ProviderStatus.failed:
            detail = body.get("detail") if isinstance(body, Mapping) else None
            return ProviderResult(status=ProviderStatus.failed, error=str(detail or "fal job failed"))
        if not isinstance(body, Mapping):
            raise ProviderError("fal result payload is not an object")

        artifacts = [ProviderArtifact(kind="video", url=u) for u in collect_urls(body.get("video"))]
        artifacts += [ProviderArtifact(kind="video", url=u) for u in collect_urls(body.get("videos"))]
        artifacts += [ProviderArtifact(kind="image", url=u) for u in collect_urls(body.get("images"))]
        artifacts += [ProviderArtifact(kind="image", url=u) for u in collect_urls(body.get("image"))]
        echoed = {k: body[k] for k in _ECHO_FIELDS if body.get(k) is not None}
        return ProviderResult(status=ProviderStatus.completed, artifacts=artifacts, echoed=echoed)
