"""
Google Gemini provider — uses the google-genai SDK (v1 API).

Pricing (as of early 2025):
  gemini-1.5-pro:        $3.50 / 1M input,  $10.50 / 1M output
                          Images: $0.001315 per image
  gemini-1.5-flash:      $0.075 / 1M input,  $0.30  / 1M output
                          Images: $0.00002 per image
  gemini-2.0-flash:      $0.10  / 1M input,  $0.40  / 1M output
                          Images: $0.00004 per image
"""
from __future__ import annotations

import time
import logging
from typing import Optional

from google import genai
from google.genai import types as genai_types

from providers.base import (
    EXTRACTION_PROMPT, REFINEMENT_SYSTEM_PROMPT, build_user_prompt, detect_media_type,
    ProviderResult, VisionProvider, parse_json_response,
)

logger = logging.getLogger(__name__)

_PRICING: dict[str, tuple[float, float, float]] = {
    # model_id: ($/1k_input_tokens, $/1k_output_tokens, $/image)
    "gemini-1.5-pro":        (0.0035,   0.0105,  0.001315),
    "gemini-1.5-flash":      (0.000075, 0.0003,  0.00002),
    "gemini-2.0-flash":      (0.0001,   0.0004,  0.00004),
    "gemini-2.0-flash-lite": (0.000075, 0.0003,  0.00002),
}


class GeminiProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.name     = "google"
        self.model_id = model
        # Force v1 (stable) API
        self._client  = genai.Client(api_key=api_key, http_options={"api_version": "v1"})

        rates = _PRICING.get(model, _PRICING["gemini-2.0-flash"])
        self.cost_per_1k_input_tokens  = rates[0]
        self.cost_per_1k_output_tokens = rates[1]
        self.cost_per_image            = rates[2]

    async def analyse(self, image_bytes: bytes, hints: Optional[list[str]] = None) -> ProviderResult:
        contents = [
            genai_types.Part.from_bytes(data=image_bytes, mime_type=detect_media_type(image_bytes)),
            build_user_prompt(hints),
        ]
        return await self._generate(EXTRACTION_PROMPT, contents, max_tokens=2000, images=1)

    async def complete(self, prompt: str, system: str = REFINEMENT_SYSTEM_PROMPT) -> ProviderResult:
        return await self._generate(system, [prompt], max_tokens=1500)

    async def _generate(self, system: str, contents: list, max_tokens: int, images: int = 0) -> ProviderResult:
        gen_config = genai_types.GenerateContentConfig(
            system_instruction=system,
            temperature=0,
            max_output_tokens=max_tokens,
        )

        t0 = time.monotonic()
        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=contents,
            config=gen_config,
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = response.text or ""

        usage         = response.usage_metadata
        input_tokens  = getattr(usage, "prompt_token_count", 0) or 0
        output_tokens = getattr(usage, "candidates_token_count", 0) or 0

        data = parse_json_response(raw, self.full_name)
        return ProviderResult(
            provider_name = self.full_name,
            model_id      = self.model_id,
            data          = data,
            latency_ms    = latency_ms,
            input_tokens  = input_tokens,
            output_tokens = output_tokens,
            cost_usd      = self.estimate_cost(input_tokens, output_tokens, images),
            raw_text      = raw,
        )
