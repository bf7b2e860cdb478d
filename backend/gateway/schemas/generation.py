from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class GenerationCreate(BaseModel):
    provider: str
    model: str
    prompt: str | None = None
    generation_type: str | None = None
    # Billing-relevant parameters (duration, resolution, aspect_ratio, generate_audio, ...).
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider")
    @staticmethod
    def _validate_provider(value: str) -> str:
        normalized = (value or "").strip().lower()
        if not normalized:
            raise ValueError("provider is required")
        return normalized

    @field_validator("model")
    @staticmethod
    def _validate_model(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("model is required")
        return normalized


class GenerationSubmitOut(BaseModel):
    generation_id: str
    provider_task_id: str
    expected_debit: int
    sku: str
    pricing_version: str


class GenerationStatusOut(BaseModel):
    generation_id: str
    status: str
    provider_status: str | None = None


class ArtifactOut(BaseModel):
    url: str
    storage_key: str | None = None
    source_url: str | None = None


class GenerationResultOut(BaseModel):
    generation_id: str
    status: str
    images: list[ArtifactOut] = Field(default_factory=list)
    videos: list[ArtifactOut] = Field(default_factory=list)
    billed: bool
    billing_status: str
    cost: int | None = None
    error: str | None = None


class GenerationOut(BaseModel):
    id: str
    status: str
    provider: str
    provider_task_id: str | None = None
    provider_status: str | None = None
    model: str
    generation_type: str | None = None
    prompt: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    images: list[ArtifactOut] = Field(default_factory=list)
    videos: list[ArtifactOut] = Field(default_factory=list)
    error: str | None = None
    billing_status: str
    credits_charged: int | None = None
    pricing_version: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True, "protected_namespaces": ()}
