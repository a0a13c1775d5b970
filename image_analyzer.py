"""
image_analyzer.py — stage 1a: one photo → ImageAnalysisResult.

The photo is classified (tag / garment / condition / detail / unknown) and the
fields appropriate to its type are extracted in a single vision call.
On-device hints only bias the prompt.

Provider order comes from the Strategy: primary first, then the fallback.
Every failure mode (missing key, timeout, HTTP error, non-JSON or non-object
response) collapses into AnalysisFailed once both are exhausted. Stateless:
nothing is written here, the orchestrator records results.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

import config
import image_store
from errors import AnalysisFailed, ImageLoadError, with_retry
from models import ImageAnalysisResult, Strategy, Usage
from providers.manager import get_provider

logger = logging.getLogger(__name__)


async def analyze(
    image: Union[bytes, str],
    hints: Optional[list[str]] = None,
    strategy: Optional[Strategy] = None,
) -> ImageAnalysisResult:
    """
    Analyse one photo (raw bytes, or a reference resolved through image_store).
    Raises AnalysisFailed.
    """
    strategy = strategy or Strategy.from_config()

    if isinstance(image, str):
        try:
            image = await image_store.load_image(image)
        except ImageLoadError as exc:
            raise AnalysisFailed(str(exc)) from exc

    names = [strategy.extraction_provider]
    if strategy.extraction_fallback and strategy.extraction_fallback not in names:
        names.append(strategy.extraction_fallback)

    errors: list[str] = []
    for name in names:
        try:
            return await _analyze_with(name, image, hints)
        except Exception as exc:
            logger.warning("Analysis with %s failed: %s", name, exc)
            errors.append(f"{name}: {exc}")

    raise AnalysisFailed("; ".join(errors))


async def _analyze_with(name: str, image_bytes: bytes, hints: Optional[list[str]]) -> ImageAnalysisResult:
    provider = await get_provider(name)
    result = await with_retry(
        lambda: asyncio.wait_for(provider.analyse(image_bytes, hints), timeout=config.ANALYSIS_TIMEOUT_S)
    )

    analysis = ImageAnalysisResult.from_raw(result.data)
    analysis.usage = Usage(
        provider=result.provider_name,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        cost_usd=result.cost_usd,
        latency_ms=result.latency_ms,
    )
    logger.info(
        "[%s] %s image, confidence=%.2f cost=%s latency=%dms",
        result.provider_name, analysis.image_type.value, analysis.confidence,
        result.cost_str, result.latency_ms,
    )
    return analysis
