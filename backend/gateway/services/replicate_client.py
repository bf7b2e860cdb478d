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
    artifact_kind_from_url,
    build_input,
    collect_urls,
)

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "kwaivgi"

_STATUS_MAP = {
    "starting": ProviderStatus.queued,
    "processing": ProviderStatus.in_progress,
    "succeeded": ProviderStatus.completed,
    "failed": ProviderStatus.failed,
    "canceled": ProviderStatus.failed,
}


def model_path(model: str) -> str:
    """Bare model names ("kling-v2.5-turbo-pro") belong to the default owner."""
    normalized = model.strip().strip("/")
    if "/" not in normalized:
        return f"{DEFAULT_OWNER}/{normalized}"
    return normalized


class ReplicateClient(HttpProviderClient):
    name = "replicate"

    def __init__(self, api_token: str | None = None, base_url: str | None = None, *, http_client: httpx.Client | None = None):
        super().__init__(
            settings.REPLICATE_API_TOKEN if api_token is None else api_token,
            base_url or settings.REPLICATE_BASE_URL,
            http_client=http_client,
        )

    def submit(self, model: str, payload: Mapping[str, Any]) -> str:
        path = model_path(model)
        body_in = {"input": build_input(payload)}
        if ":" in path:
            # pinned version: owner/name:version
            body_in["version"] = path.split(":", 1)[1]
            _, body = self._request("POST", "predictions", json=body_in)
        else:
            _, body = self._request("POST", f"models/{path}/predictions", json=body_in)
        prediction_id = body.get("id") if isinstance(body, Mapping) else None
        if not prediction_id:
            raise ProviderError("replicate submit response is missing id")
        logger.info("replicate prediction created model=%s id=%s", path, prediction_id)
        return str(prediction_id)

    def _prediction(self, task_id: str) -> Mapping[str, Any]:
        _, body = self._request("GET", f"predictions/{task_id}")
        if not isinstance(body, Mapping):
            raise ProviderError("replicate prediction payload is not an object")
        return body

    def status(self, model: str, task_id: str) -> ProviderStatus:
        return self._map_status(self._prediction(task_id))

    def result(self, model: str, task_id: str) -> ProviderResult:
        body = self._prediction(task_id)
        status = self._map_status(body)
        echoed = dict(body.get("input") or {})
        if status == ProviderStatus.failed:
            return ProviderResult(
                status=status,
                echoed=echoed,
                error=str(body.get("error") or f"prediction {body.get('status')}"),
            )
        if status != ProviderStatus.completed:
            return ProviderResult(status=status, echoed=echoed)

        artifacts = [
            ProviderArtifact(kind=artifact_kind_from_url(url, default="video"), url=url)
            for url in collect_urls(body.get("output"))
        ]
        return ProviderResult(status=status, artifacts=artifacts, echoed=echoed)

    @staticmethod
    def _map_status(body: Mapping[str, Any]) -> ProviderStatus:
        raw = str(body.get("status") or "").lower()
        status = _STATUS_MAP.get(raw)
        if status is None:
            raise ProviderError(f"replicate returned an unknown status: {raw!r}")
        return status
