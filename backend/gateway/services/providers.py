"""
Provider adapter contract.

Each third-party provider (FAL, Replicate, Runway) is wrapped by a small
httpx client exposing submit/status/result. Provider-specific payloads are
normalized here so the reconciliation code only ever sees ProviderStatus and
ProviderResult.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

import httpx

from gateway.core.config import settings

logger = logging.getLogger(__name__)

_VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".m4v")


class ProviderError(Exception):
    """The provider rejected the request or returned something unusable."""


class ProviderConfigurationError(ProviderError):
    """Unknown provider or missing credentials. Never retried."""


class ProviderUnavailableError(ProviderError):
    """Transport failure talking to the provider. Safe to retry."""


class ProviderStatus(str, Enum):
    queued = "queued"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderStatus.completed, ProviderStatus.failed)


@dataclass(frozen=True)
class ProviderArtifact:
    kind: str  # "image" | "video"
    url: str


@dataclass(frozen=True)
class ProviderResult:
    status: ProviderStatus
    artifacts: list[ProviderArtifact] = field(default_factory=list)
    # Request parameters the provider echoed back, if any.
    echoed: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def images(self) -> list[ProviderArtifact]:
        return [a for a in self.artifacts if a.kind == "image"]

    @property
    def videos(self) -> list[ProviderArtifact]:
        return [a for a in self.artifacts if a.kind == "video"]


class ProviderAdapter(Protocol):
    name: str

    def submit(self, model: str, payload: Mapping[str, Any]) -> str: ...

    def status(self, model: str, task_id: str) -> ProviderStatus: ...

    def result(self, model: str, task_id: str) -> ProviderResult: ...


def artifact_kind_from_url(url: str, default: str = "image") -> str:
    path = url.split("?", 1)[0].lower()
    if path.endswith(_VIDEO_EXTENSIONS):
        return "video"
    return default


def collect_urls(value: Any) -> list[str]:
    """Flatten provider output (a URL, a {"url": ...} dict, or lists of either)."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.startswith(("http://", "https://")) else []
    if isinstance(value, Mapping):
        url = value.get("url")
        return [url] if isinstance(url, str) and url else []
    if isinstance(value, (list, tuple)):
        urls: list[str] = []
        for item in value:
            urls.extend(collect_urls(item))
        return urls
    return []


def build_input(payload: Mapping[str, Any], *, drop: tuple[str, ...] = ("kind",)) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None and k not in drop}


class HttpProviderClient:
    """Shared httpx plumbing: credential check, error translation, JSON decoding."""

    name = "provider"

    def __init__(self, api_key: str, base_url: str, *, http_client: httpx.Client | None = None):
        if not api_key:
            raise ProviderConfigurationError(f"{self.name} credentials are not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.Client(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _request(self, method: str, path: str, *, json: Any = None, allow_error: bool = False) -> tuple[int, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._http.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("%s request failed method=%s url=%s error=%s", self.name, method, url, exc)
            raise ProviderUnavailableError(f"Unable to reach {self.name}") from exc

        if response.status_code >= 500:
            raise ProviderUnavailableError(f"{self.name} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name} returned a non-JSON response") from exc

        if response.status_code >= 400 and not allow_error:
            raise ProviderError(f"{self.name} rejected the request: {_error_detail(body)}")
        return response.status_code, body


def _error_detail(body: Any) -> str:
    if isinstance(body, Mapping):
        for key in ("detail", "error", "message", "failure"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    return str(body)


class ProviderRegistry:
    """
    Provider name -> adapter. Adapters are built on first use so a missing
    credential fails the request that needs it, not application startup.
    """

    def __init__(self, factories: Mapping[str, Callable[[], ProviderAdapter]] | None = None):
        self._factories = dict(factories or {})
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, name: str, factory: Callable[[], ProviderAdapter]) -> None:
        self._factories[name.lower()] = factory
        self._adapters.pop(name.lower(), None)

    def get(self, name: str) -> ProviderAdapter:
        key = (name or "").strip().lower()
        if key in self._adapters:
            return self._adapters[key]
        factory = self._factories.get(key)
        if factory is None:
            raise ProviderConfigurationError(f"Unknown provider: {name}")
        adapter = factory()
        self._adapters[key] = adapter
        return adapter

    def names(self) -> list[str]:
        return sorted(self._factories)
