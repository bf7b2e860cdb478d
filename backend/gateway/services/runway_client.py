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
    collect_urls,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "PENDING": ProviderStatus.queued,
    "THROTTLED": ProviderStatus.queued,
    "RUNNING": ProviderStatus.in_progress,
    "SUCCEEDED": ProviderStatus.completed,
    "FAILED": ProviderStatus.failed,
    "CANCELLED": ProviderStatus.failed,
}


class RunwayClient(HttpProviderClient):
    name = "runway"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        api_version: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(
            settings.RUNWAY_API_KEY if api_key is None else api_key,
            base_url or settings.RUNWAY_BASE_URL,
            http_client=http_client,
        )
        self.api_version = api_version or settings.RUNWAY_API_VERSION

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Runway-Version": self.api_version,
        }

    def submit(self, model: str, payload: Mapping[str, Any]) -> str:
        image = payload.get("image_url") or payload.get("prompt_image")
        body_in: dict[str, Any] = {"model": model, "promptText": payload.get("prompt")}
        if image:
            body_in["promptImage"] = image
        if payload.get("ratio") or payload.get("aspect_ratio"):
            body_in["ratio"] = payload.get("ratio") or payload.get("aspect_ratio")
        if payload.get("duration") is not None:
            body_in["duration"] = payload.get("duration")
        if payload.get("seed") is not None:
            body_in["seed"] = payload.get("seed")
        endpoint = "image_to_video" if image else "text_to_video"

        _, body = self._request("POST", endpoint, json={k: v for k, v in body_in.items() if v is not None})
        task_id = body.get("id") if isinstance(body, Mapping) else None
        if not task_id:
            raise ProviderError("runway submit response is missing id")
        logger.info("runway task created model=%s id=%s", model, task_id)
        return str(task_id)

    def _task(self, task_id: str) -> Mapping[str, Any]:
        _, body = self._request("GET", f"tasks/{task_id}")
        if not isinstance(body, Mapping):
            raise ProviderError("runway task payload is not an object")
        return body

    def status(self, model: str, task_id: str) -> ProviderStatus:
        return self._map_status(self._task(task_id))

    def result(self, model: str, task_id: str) -> ProviderResult:
        body = self._task(task_id)
        status = self._map_status(body)
        if status == ProviderStatus.failed:
            return ProviderResult(status=status, error=str(body.get("failure") or "runway task failed"))
        if status != ProviderStatus.completed:
            return ProviderResult(status=status)
        artifacts = [
            ProviderArtifact(kind=artifact_kind_from_url(url, default="video"), url=url)
            for url in collect_urls(body.get("output"))
        ]
        return ProviderResult(status=status, artifacts=artifacts)

    @staticmethod
    def _map_status(body: Mapping[str, Any]) -> ProviderStatus:
        raw = str(body.get("status") or "").upper()
        status = _STATUS_MAP.get(raw)
        if status is None:
            raise ProviderError(f"runway returned an unknown status: {raw!r}")
        return status
