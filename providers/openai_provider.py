"""
OpenAI provider — supports gpt-4o and gpt-4o-mini.

Pricing (as of early 2025):
  gpt-4o:       $5.00 / 1M input tokens,  $15.00 / 1M output tokens
                + image tiles: each 512×512 tile = 170 tokens (~$0.00085/tile)
                A typical 1024×1024 garment photo ≈ 765 input tokens for vision
  gpt-4o-mini:  $0.15 / 1M input tokens,  $0.60 / 1M output tokens
                Image tiles same count but much cheaper per token
"""
from __future__ import annotations

import base64
import time
import logging
from typing import Optional

from openai import AsyncOpenAI

from providers.base import (
    EXTRACTION_PROMPT, REFINEMENT_SYSTEM_PROMPT, build_user_prompt,
    ProviderResult, VisionProvider, parse_json_response,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.name = "openai"
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key)

        # Pricing per 1k tokens
        _pricing = {
            "gpt-4o":      (0.005,  0.015),
            "gpt-4o-mini": (0.00015, 0.0006),
        }
        self.cost_per_1k_input_tokens, self.cost_per_1k_output_tokens = _pricing.get(
            model, (0.005, 0.015)
        )
        # High-detail image processing: ~765 tokens for a typical garment photo
        self.cost_per_image = 765 / 1000 * self.cost_per_1k_input_tokens

    async def analyse(self, image_bytes: bytes, hints: Optional[list[str]] = None) -> ProviderResult:
        b64 = base64.b64encode(image_bytes).decode()
        return await self._chat(
            [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/jpeg;base64,{b64}",
                                "detail": "high",
                            },
                        },
                        {"type": "text", "text": build_user_prompt(hints)},
                    ],
                },
            ],
            max_tokens=2000,
            images=1,
        )

    async def complete(self, prompt: str, system: str = REFINEMENT_SYSTEM_PROMPT) -> ProviderResult:
        return await self._chat(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=1500,
        )

    async def _chat(self, messages: list[dict], max_tokens: int, images: int = 0) -> ProviderResult:
        t0 = time.monotonic()
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=max_tokens,
            temperature=0,
            response_format={"type": "json_object"},
            messages=messages,
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = response.choices[0].message.content or ""
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        data = parse_json_response(raw, self.full_name)
        return ProviderResult(
            provider_name=self.full_name,
            model_id=self.model_id,
            data=data,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.estimate_cost(input_tokens, output_tokens, images),
            raw_text=raw,
        )
