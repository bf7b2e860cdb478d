from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from gateway.core.config import settings

logger = logging.getLogger(__name__)

_SANITIZE_RE = re.compile(r"[^A-Za-z0-9_.-]")


class StorageError(Exception):
    """Downloading or uploading a generated artifact failed."""


@dataclass(frozen=True)
class StoredArtifact:
    public_url: str
    storage_key: str


def _client():
    region = settings.AWS_REGION or None
    return boto3.client("s3", region_name=region, endpoint_url=settings.S3_ENDPOINT_URL)


def artifact_key_prefix(user_id: str, kind: str, generation_id: str) -> str:
    return f"users/{_SANITIZE_RE.sub('_', user_id)}/{kind}/{generation_id}"


def artifact_file_name(source_url: str, index: int, kind: str) -> str:
    tail = source_url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    ext = tail.rsplit(".", 1)[-1].lower() if "." in tail else ("mp4" if kind == "video" else "png")
    return f"{kind}-{index}.{_SANITIZE_RE.sub('_', ext)}"


class StorageUploader:
    """
    Copies provider-hosted artifacts into our bucket. Keys are deterministic,
    so persisting the same artifact twice overwrites the same object.
    """

    def __init__(
        self,
        *,
        bucket: str | None = None,
        prefix: str | None = None,
        public_base_url: str | None = None,
        client_factory=None,
        http_client: httpx.Client | None = None,
    ):
        self.bucket = bucket or settings.S3_BUCKET_NAME
        self.prefix = (settings.S3_PREFIX if prefix is None else prefix).strip("/")
        self.public_base_url = (
            settings.STORAGE_PUBLIC_BASE_URL if public_base_url is None else public_base_url
        ).rstrip("/")
        self._client_factory = client_factory or _client
        self._http = http_client

    def build_key(self, key_prefix: str, file_name: str) -> str:
        safe_name = _SANITIZE_RE.sub("_", file_name or "artifact")
        parts = [self.prefix, key_prefix.strip("/"), safe_name]
        return "/".join(p for p in parts if p)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        region = settings.AWS_REGION or "us-east-1"
        return f"https://{self.bucket}.s3.{region}.amazonaws.com/{key}"

    def persist(self, source_url: str, key_prefix: str, file_name: str) -> StoredArtifact:
        if not self.bucket:
            raise StorageError("S3_BUCKET_NAME is not configured")
        key = self.build_key(key_prefix, file_name)
        content, content_type = self._download(source_url)

        params = {"Bucket": self.bucket, "Key": key, "Body": content}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client_factory().put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Artifact upload failed key=%s error=%s", key, exc)
            raise StorageError(f"Unable to store artifact {key}") from exc

        logger.info("Artifact stored key=%s bytes=%s", key, len(content))
        return StoredArtifact(public_url=self.public_url(key), storage_key=key)

    def _download(self, source_url: str) -> tuple[bytes, str | None]:
        try:
            if self._http is not None:
                response = self._http.get(source_url)
            else:
                with httpx.Client(follow_redirects=True, timeout=settings.ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS) as client:
                    response = client.get(source_url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Artifact download failed url=%s error=%s", source_url, exc)
            raise StorageError(f"Unable to download artifact from {source_url}") from exc
        content_type = response.headers.get("content-type")
        return response.content, content_type
