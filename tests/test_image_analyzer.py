"""
Tests for image_analyzer.py.

Covers:
  - primary provider result normalised into ImageAnalysisResult with usage
  - fallback provider used when the primary fails
  - both failing (or a non-object payload) → AnalysisFailed
  - string references loaded through image_store; load errors → AnalysisFailed
  - hints passed through to the provider
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from errors import AnalysisFailed, ImageLoadError
from image_analyzer import analyze
from models import ImageType, Strategy
from providers.base import ProviderResult

STRATEGY = Strategy(extraction_provider="anthropic", extraction_fallback="openai")

TAG_PAYLOAD = {
    "imageType": "tag",
    "tagExtraction": {"brand": "Patagonia", "styleNumber": "STY25455", "size": "M"},
    "confidence": 0.93,
    "searchSuggestions": ["Patagonia STY25455"],
}


def make_provider(name: str, data=None, error: Exception | None = None) -> MagicMock:
    provider = MagicMock()
    provider.full_name = f"{name}/model"
    if error is not None:
        provider.analyse = AsyncMock(side_effect=error)
    else:
        provider.analyse = AsyncMock(return_value=ProviderResult(
            provider_name=f"{name}/model", model_id="model", data=data, latency_ms=800,
            input_tokens=1500, output_tokens=250, cost_usd=0.0009,
        ))
    return provider


def provider_map(**providers):
    async def get_provider(name):
        if name not in providers:
            raise RuntimeError(f"Provider '{name}' is not configured")
        return providers[name]
    return get_provider


@pytest.mark.asyncio
class TestAnalyze:
    async def test_primary_success(self):
        primary = make_provider("anthropic", TAG_PAYLOAD)
        with patch("image_analyzer.get_provider", side_effect=provider_map(anthropic=primary)):
            result = await analyze(b"\xff\xd8jpeg", ["PATAGONIA"], STRATEGY)

        assert result.image_type is ImageType.TAG
        assert result.tag.brand == "Patagonia"
        assert result.confidence == 0.93
        assert result.usage.provider == "anthropic/model"
        assert result.usage.input_tokens == 1500
        primary.analyse.assert_awaited_once_with(b"\xff\xd8jpeg", ["PATAGONIA"])

    async def test_fallback_used(self):
        primary = make_provider("anthropic", error=ValueError("[anthropic] JSON parse error"))
        fallback = make_provider("openai", TAG_PAYLOAD)
        with patch("image_analyzer.get_provider",
                   side_effect=provider_map(anthropic=primary, openai=fallback)):
            result = await analyze(b"img", None, STRATEGY)
        assert result.usage.provider == "openai/model"

    async def test_unconfigured_primary_falls_back(self):
        fallback = make_provider("openai", TAG_PAYLOAD)
        with patch("image_analyzer.get_provider", side_effect=provider_map(openai=fallback)):
            result = await analyze(b"img", None, STRATEGY)
        assert result.tag.style_number == "STY25455"

    async def test_both_fail(self):
        primary = make_provider("anthropic", error=ValueError("JSON parse error"))
        fallback = make_provider("openai", error=RuntimeError("401 unauthorized"))
        with patch("image_analyzer.get_provider",
                   side_effect=provider_map(anthropic=primary, openai=fallback)):
            with pytest.raises(AnalysisFailed) as exc_info:
                await analyze(b"img", None, STRATEGY)
        assert "anthropic" in str(exc_info.value)
        assert "openai" in str(exc_info.value)

    async def test_no_fallback_configured(self):
        primary = make_provider("anthropic", error=ValueError("JSON parse error"))
        fallback = make_provider("openai", TAG_PAYLOAD)
        strategy = Strategy(extraction_provider="anthropic", extraction_fallback=None)
        with patch("image_analyzer.get_provider",
                   side_effect=provider_map(anthropic=primary, openai=fallback)):
            with pytest.raises(AnalysisFailed):
                await analyze(b"img", None, strategy)
        fallback.analyse.assert_not_awaited()

    async def test_transient_error_retried(self):
        primary = make_provider("anthropic", TAG_PAYLOAD)
        ok = primary.analyse.return_value
        primary.analyse = AsyncMock(side_effect=[RuntimeError("529 overloaded"), ok])
        with patch("image_analyzer.get_provider", side_effect=provider_map(anthropic=primary)), \
             patch("errors.asyncio.sleep", new=AsyncMock()):
            result = await analyze(b"img", None, STRATEGY)
        assert result.image_type is ImageType.TAG
        assert primary.analyse.await_count == 2

    async def test_string_reference_loaded(self):
        primary = make_provider("anthropic", TAG_PAYLOAD)
        with patch("image_analyzer.get_provider", side_effect=provider_map(anthropic=primary)), \
             patch("image_analyzer.image_store.load_image", AsyncMock(return_value=b"normalised")) as load:
            await analyze("scans/abc/tag.jpg", None, STRATEGY)
        load.assert_awaited_once_with("scans/abc/tag.jpg")
        assert primary.analyse.await_args.args[0] == b"normalised"

    async def test_load_error_becomes_analysis_failed(self):
        with patch("image_analyzer.image_store.load_image",
                   AsyncMock(side_effect=ImageLoadError("Image missing.jpg not found"))):
            with pytest.raises(AnalysisFailed, match="not found"):
                await analyze("missing.jpg", None, STRATEGY)

    async def test_non_object_payload_fails(self):
        primary = make_provider("anthropic", ["not", "an", "object"])
        strategy = Strategy(extraction_provider="anthropic", extraction_fallback=None)
        with patch("image_analyzer.get_provider", side_effect=provider_map(anthropic=primary)):
            with pytest.raises(AnalysisFailed, match="Expected JSON object"):
                await analyze(b"img", None, strategy)
