from __future__ import annotations

import pytest

from gateway.services.pricing import (
    FAL_PRICING_VERSION,
    KLING_PRICING_VERSION,
    RUNWAY_PRICING_VERSION,
    KlingMeta,
    PricingError,
    SoraMeta,
    VeoMeta,
    resolve_cost,
    resolve_kind,
)


def test_kling_turbo_pro_t2v_5s():
    resolution = resolve_cost("replicate", "kling-v2.5-turbo-pro", {"kind": "t2v", "duration": "5s"})

    assert resolution.sku == "Kling 2.5 Turbo Pro T2V 5s"
    assert resolution.cost == 31
    assert resolution.pricing_version == KLING_PRICING_VERSION
    assert resolution.meta == KlingMeta(variant="2.5-turbo-pro", kind="t2v", duration="5s")
    assert resolution.family == "kling"


@pytest.mark.parametrize(
    "model,params,sku",
    [
        ("kwaivgi/kling-v2.5-turbo-pro", {"image": "https://x/y.png", "duration": 10}, "Kling 2.5 Turbo Pro I2V 10s"),
        ("kwaivgi/kling-v2.1-master", {"prompt": "hi"}, "Kling 2.1 Master T2V 5s"),
        ("kwaivgi/kling-v2.1", {"kind": "i2v", "kling_mode": "pro", "duration": "10"}, "Kling 2.1 I2V 10s 1080p"),
        ("kwaivgi/kling-v2.1", {"kind": "i2v", "mode": "standard"}, "Kling 2.1 I2V 5s 720p"),
        ("kwaivgi/kling-v2.1", {"kind": "t2v", "resolution": "1080p", "duration": 7}, "Kling 2.1 T2V 10s 1080p"),
    ],
)
def test_kling_sku_normalization(model, params, sku):
    assert resolve_cost("replicate", model, params).sku == sku


@pytest.mark.parametrize(
    "model,params,sku,cost",
    [
        ("fal-ai/veo3", {"prompt": "p", "duration": "4s"}, "veo3 t2v 4s", 160),
        ("fal-ai/veo3/fast", {"prompt": "p", "duration": "6s"}, "veo3 fast t2v 6s", 120),
        ("fal-ai/veo3/image-to-video", {"duration": "4s"}, "veo3 i2v 8s", 320),
        ("fal-ai/veo3.1", {"prompt": "p"}, "Veo 3.1 T2V 8s", 320),
        ("fal-ai/veo3.1/fast", {"prompt": "p", "duration": 4}, "Veo 3.1 Fast T2V 4s", 60),
        ("fal-ai/veo3.1/fast/image-to-video", {}, "Veo 3.1 Fast I2V 8s", 120),
    ],
)
def test_fal_veo_families(model, params, sku, cost):
    resolution = resolve_cost("fal", model, params)

    assert resolution.sku == sku
    assert resolution.cost == cost
    assert resolution.pricing_version == FAL_PRICING_VERSION
    assert isinstance(resolution.meta, VeoMeta)


def test_veo_meta_records_audio_flag():
    resolution = resolve_cost("fal", "fal-ai/veo3.1", {"prompt": "p", "generate_audio": False})

    assert resolution.meta.generate_audio is False
    assert resolution.ledger_meta()["generate_audio"] is False
    assert resolution.ledger_meta()["family"] == "veo"
    assert resolution.ledger_meta()["sku"] == "Veo 3.1 T2V 8s"


@pytest.mark.parametrize(
    "model,params,sku",
    [
        ("fal-ai/sora-2/text-to-video", {"duration": 4}, "Sora 2 4s"),
        ("fal-ai/sora-2/image-to-video", {"duration": "12"}, "Sora 2 12s"),
        ("fal-ai/sora-2/text-to-video/pro", {"duration": 8, "resolution": "1080p"}, "Sora 2 Pro 8s 1080p"),
        ("fal-ai/sora-2/image-to-video/pro", {"duration": 4, "resolution": "auto"}, "Sora 2 Pro 4s 720p"),
    ],
)
def test_fal_sora_families(model, params, sku):
    resolution = resolve_cost("fal", model, params)

    assert resolution.sku == sku
    assert isinstance(resolution.meta, SoraMeta)


def test_runway_models():
    resolution = resolve_cost("runway", "gen4_turbo", {"duration": 10, "prompt": "p"})

    assert resolution.sku == "Runway Gen 4 Turbo 10s"
    assert resolution.cost == 50
    assert resolution.pricing_version == RUNWAY_PRICING_VERSION
    assert resolution.meta.to_dict() == {"family": "runway", "model": "gen4_turbo", "duration": "10s"}


@pytest.mark.parametrize(
    "provider,model,params",
    [
        ("replicate", "kling-v3-ultra", {"kind": "t2v"}),
        ("replicate", "kling-v2.5-turbo-pro", {}),
        ("fal", "fal-ai/flux/dev", {"prompt": "p"}),
        ("runway", "gen2", {"duration": 5}),
        ("minimax", "video-01", {"prompt": "p"}),
        ("fal", "", {"prompt": "p"}),
    ],
)
def test_unknown_sku_raises(provider, model, params):
    with pytest.raises(PricingError):
        resolve_cost(provider, model, params)


def test_resolution_is_deterministic():
    params = {"kind": "t2v", "duration": "10s"}
    first = resolve_cost("replicate", "kling-v2.5-turbo-pro", params)
    second = resolve_cost("replicate", "kling-v2.5-turbo-pro", dict(params))

    assert first == second
    assert params == {"kind": "t2v", "duration": "10s"}


def test_resolve_kind_aliases():
    assert resolve_kind("m", {"type": "text-to-video"}) == "t2v"
    assert resolve_kind("m", {"mode": "image2video"}) == "i2v"
    assert resolve_kind("fal-ai/x/image-to-video", {"prompt": "p"}) == "i2v"
    assert resolve_kind("m", {"start_image": "https://x/y.png", "prompt": "p"}) == "i2v"
