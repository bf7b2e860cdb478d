"""
Credit pricing for generation requests.

resolve_cost() is a pure function of (provider, model, params): the same
inputs always give the same SKU and cost, so reconciliation can re-derive a
charge from the params stored on the generation record as often as it needs.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Union

FAL_PRICING_VERSION = "fal-v1"
KLING_PRICING_VERSION = "kling-v1"
RUNWAY_PRICING_VERSION = "runway-v1"


class PricingError(ValueError):
    """No SKU exists for the normalized request parameters."""


# Credits per generation, keyed by SKU display name.
SKU_CREDITS: dict[str, int] = {
    # FAL Veo 3
    "veo3 t2v 4s": 160,
    "veo3 t2v 6s": 240,
    "veo3 t2v 8s": 320,
    "veo3 i2v 8s": 320,
    "veo3 fast t2v 4s": 80,
    "veo3 fast t2v 6s": 120,
    "veo3 fast t2v 8s": 160,
    "veo3 fast i2v 8s": 160,
    # FAL Veo 3.1
    "Veo 3.1 T2V 4s": 160,
    "Veo 3.1 T2V 6s": 240,
    "Veo 3.1 T2V 8s": 320,
    "Veo 3.1 I2V 8s": 320,
    "Veo 3.1 Fast T2V 4s": 60,
    "Veo 3.1 Fast T2V 6s": 90,
    "Veo 3.1 Fast T2V 8s": 120,
    "Veo 3.1 Fast I2V 8s": 120,
    # FAL Sora 2
    "Sora 2 4s": 40,
    "Sora 2 8s": 80,
    "Sora 2 12s": 120,
    "Sora 2 Pro 4s 720p": 120,
    "Sora 2 Pro 8s 720p": 240,
    "Sora 2 Pro 12s 720p": 360,
    "Sora 2 Pro 4s 1080p": 200,
    "Sora 2 Pro 8s 1080p": 400,
    "Sora 2 Pro 12s 1080p": 600,
    # Replicate Kling
    "Kling 2.5 Turbo Pro T2V 5s": 31,
    "Kling 2.5 Turbo Pro T2V 10s": 62,
    "Kling 2.5 Turbo Pro I2V 5s": 31,
    "Kling 2.5 Turbo Pro I2V 10s": 62,
    "Kling 2.1 Master T2V 5s": 140,
    "Kling 2.1 Master T2V 10s": 280,
    "Kling 2.1 Master I2V 5s": 140,
    "Kling 2.1 Master I2V 10s": 280,
    "Kling 2.1 T2V 5s 720p": 28,
    "Kling 2.1 T2V 10s 720p": 56,
    "Kling 2.1 T2V 5s 1080p": 50,
    "Kling 2.1 T2V 10s 1080p": 100,
    "Kling 2.1 I2V 5s 720p": 28,
    "Kling 2.1 I2V 10s 720p": 56,
    "Kling 2.1 I2V 5s 1080p": 50,
    "Kling 2.1 I2V 10s 1080p": 100,
    # Runway
    "Runway Gen 4 Turbo 5s": 25,
    "Runway Gen 4 Turbo 10s": 50,
    "Runway Gen 3a Turbo 5s": 25,
    "Runway Gen 3a Turbo 10s": 50,
}

_SKU_LOOKUP = {name.lower(): credits for name, credits in SKU_CREDITS.items()}

_T2V_ALIASES = {"t2v", "text-to-video", "text_to_video", "text2video"}
_I2V_ALIASES = {"i2v", "image-to-video", "image_to_video", "img2video", "image2video"}
_DIGITS_RE = re.compile(r"\d+")


@dataclass(frozen=True)
class VeoMeta:
    FAMILY = "veo"

    version: str
    kind: str
    duration: str
    fast: bool
    generate_audio: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"family": self.FAMILY, **asdict(self)}


@dataclass(frozen=True)
class SoraMeta:
    FAMILY = "sora"

    kind: str
    duration: str
    pro: bool
    resolution: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"family": self.FAMILY, **asdict(self)}


@dataclass(frozen=True)
class KlingMeta:
    FAMILY = "kling"

    variant: str
    kind: str
    duration: str
    resolution: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"family": self.FAMILY, **asdict(self)}


@dataclass(frozen=True)
class RunwayMeta:
    FAMILY = "runway"

    model: str
    duration: str

    def to_dict(self) -> dict[str, Any]:
        return {"family": self.FAMILY, **asdict(self)}


PricingMeta = Union[VeoMeta, SoraMeta, KlingMeta, RunwayMeta]


@dataclass(frozen=True)
class CostResolution:
    cost: int
    pricing_version: str
    sku: str
    meta: PricingMeta

    @property
    def family(self) -> str:
        return self.meta.FAMILY

    def ledger_meta(self) -> dict[str, Any]:
        return {**self.meta.to_dict(), "sku": self.sku, "pricing_version": self.pricing_version}


def _lookup(sku: str) -> int:
    credits = _SKU_LOOKUP.get(sku.lower())
    if credits is None:
        raise PricingError(f'Unsupported pricing for "{sku}"')
    return credits


def _parse_seconds(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = _DIGITS_RE.search(str(value))
    return int(match.group()) if match else None


def _step_duration(value: Any, steps: tuple[int, ...], default: int) -> int:
    """Round a requested duration up to the next catalog step, capped at the longest."""
    seconds = _parse_seconds(value)
    if seconds is None or seconds <= 0:
        return default
    for step in steps:
        if seconds <= step:
            return step
    return steps[-1]


def _normalize_resolution(value: Any, default: str) -> str:
    text = str(value or "").strip().lower()
    if "1080" in text:
        return "1080p"
    if "720" in text:
        return "720p"
    return default


def resolve_kind(model: str, params: Mapping[str, Any]) -> str:
    for field in ("kind", "type", "mode", "generation_type"):
        raw = str(params.get(field) or "").strip().lower()
        if raw in _T2V_ALIASES:
            return "t2v"
        if raw in _I2V_ALIASES:
            return "i2v"
    lowered = model.lower()
    if "image-to-video" in lowered:
        return "i2v"
    if "text-to-video" in lowered:
        return "t2v"
    if params.get("image_url") or params.get("image") or params.get("start_image"):
        return "i2v"
    if params.get("prompt"):
        return "t2v"
    raise PricingError("kind is required and must be one of t2v|i2v")


def _resolve_veo(model: str, params: Mapping[str, Any]) -> CostResolution:
    lowered = model.lower()
    is_31 = "veo3.1" in lowered
    fast = "/fast" in lowered or bool(params.get("fast"))
    kind = resolve_kind(model, params)
    # Image-to-video is only sold at 8s.
    seconds = 8 if kind == "i2v" else _step_duration(params.get("duration"), (4, 6, 8), 8)
    duration = f"{seconds}s"

    if is_31:
        sku = "Veo 3.1 " + ("Fast " if fast else "") + f"{kind.upper()} {duration}"
    else:
        sku = "veo3 " + ("fast " if fast else "") + f"{kind} {duration}"

    audio = params.get("generate_audio")
    meta = VeoMeta(
        version="3.1" if is_31 else "3",
        kind=kind,
        duration=duration,
        fast=fast,
        generate_audio=None if audio is None else bool(audio),
    )
    return CostResolution(cost=_lookup(sku), pricing_version=FAL_PRICING_VERSION, sku=sku, meta=meta)


def _resolve_sora(model: str, params: Mapping[str, Any]) -> CostResolution:
    lowered = model.lower()
    pro = lowered.endswith("/pro") or bool(params.get("pro"))
    kind = resolve_kind(model, params)
    seconds = _step_duration(params.get("duration"), (4, 8, 12), 8)
    if pro:
        # "auto" renders at 720p
        resolution = _normalize_resolution(params.get("resolution"), "720p")
        sku = f"Sora 2 Pro {seconds}s {resolution}"
    else:
        resolution = None
        sku = f"Sora 2 {seconds}s"
    meta = SoraMeta(kind=kind, duration=f"{seconds}s", pro=pro, resolution=resolution)
    return CostResolution(cost=_lookup(sku), pricing_version=FAL_PRICING_VERSION, sku=sku, meta=meta)


def _kling_tier_resolution(params: Mapping[str, Any]) -> str:
    for field in ("kling_mode", "video_mode", "quality", "resolution", "mode"):
        tier = str(params.get(field) or "").strip().lower()
        if tier == "pro" or "1080" in tier:
            return "1080p"
        if tier == "standard" or "720" in tier:
            return "720p"
    return "720p"


def _resolve_kling(model: str, params: Mapping[str, Any]) -> CostResolution:
    lowered = model.lower()
    kind = resolve_kind(model, params)
    duration = f"{_step_duration(params.get('duration'), (5, 10), 5)}s"
    resolution = None

    if "kling-v2.5-turbo-pro" in lowered:
        variant = "2.5-turbo-pro"
        sku = f"Kling 2.5 Turbo Pro {kind.upper()} {duration}"
    elif "kling-v2.1-master" in lowered:
        variant = "2.1-master"
        sku = f"Kling 2.1 Master {kind.upper()} {duration}"
    elif "kling-v2.1" in lowered:
        variant = "2.1"
        resolution = _kling_tier_resolution(params)
        sku = f"Kling 2.1 {kind.upper()} {duration} {resolution}"
    else:
        raise PricingError(f"Unsupported Kling model: {model}")

    meta = KlingMeta(variant=variant, kind=kind, duration=duration, resolution=resolution)
    return CostResolution(cost=_lookup(sku), pricing_version=KLING_PRICING_VERSION, sku=sku, meta=meta)


_RUNWAY_DISPLAY = {
    "gen4_turbo": "Runway Gen 4 Turbo",
    "gen3a_turbo": "Runway Gen 3a Turbo",
}


def _resolve_runway(model: str, params: Mapping[str, Any]) -> CostResolution:
    display = _RUNWAY_DISPLAY.get(model.lower())
    if display is None:
        raise PricingError(f"Unsupported Runway model: {model}")
    duration = f"{_step_duration(params.get('duration'), (5, 10), 5)}s"
    sku = f"{display} {duration}"
    meta = RunwayMeta(model=model.lower(), duration=duration)
    return CostResolution(cost=_lookup(sku), pricing_version=RUNWAY_PRICING_VERSION, sku=sku, meta=meta)


def resolve_cost(provider: str, model: str, params: Mapping[str, Any] | None = None) -> CostResolution:
    normalized_provider = (provider or "").strip().lower()
    normalized_model = (model or "").strip()
    values = dict(params or {})
    if not normalized_model:
        raise PricingError("model is required")

    lowered = normalized_model.lower()
    if normalized_provider == "fal":
        if "veo3" in lowered:
            return _resolve_veo(normalized_model, values)
        if "sora-2" in lowered:
            return _resolve_sora(normalized_model, values)
    elif normalized_provider == "replicate":
        if "kling" in lowered:
            return _resolve_kling(normalized_model, values)
    elif normalized_provider == "runway":
        return _resolve_runway(normalized_model, values)

    raise PricingError(f"No pricing for provider={provider} model={model}")
