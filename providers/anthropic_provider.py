"""
Anthropic provider — supports claude-3-5-haiku and claude-3-5-sonnet.

Pricing (as of early 2025):
  claude-3-5-sonnet-20241022: $3.00 / 1M input,  $15.00 / 1M output
  claude-3-5-haiku-20241022:  $0.80 / 1M input,  $4.00  / 1M output
  Images: ~1600 tokens per standard image

Claude is the default extraction provider: it reads small tag print
(RN numbers, style codes, fibre content) reliably.
"""
from __future__ import annotations

import base64
import time
import logging
from typing import Optional

import anthropic

from providers.base import (
    EXTRACTION_PROMPT, REFINEMENT_SYSTEM_PROMPT, build_user_prompt, detect_media_type,
    ProviderResult, VisionProvider, parse_json_response,
)

logger = logging.getLogger(__name__)

_ANTHROPIC_IMAGE_TOKENS = 1600  # approximate tokens per image for Claude


class AnthropicProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-20241022"):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

        _pricing = {
            "claude-3-5-sonnet-20241022": (0.003,  0.015),
            "claude-3-5-haiku-20241022":  (0.0008, 0.004),
            "claude-3-haiku-20240307":    (0.00025, 0.00125),
        }
        self.cost_per_1k_input_tokens, self.cost_per_1k_output_tokens = _pricing.get(
            model, (0.003, 0.015)
        )
        self.cost_per_image = _ANTHROPIC_IMAGE_TOKENS / 1000 * self.cost_per_1k_input_tokens

    async def analyse(self, image_bytes: bytes, hints: Optional[list[str]] = None) -> ProviderResult:
        b64 = base64.b64encode(image_bytes).decode()
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": detect_media_type(image_bytes),
                    "data": b64,
                },
            },
            {"type": "text", "text": build_user_prompt(hints)},
        ]
        return await self._message(EXTRACTION_PROMPT, content, max_tokens=2000, images=1)

    async def complete(self, prompt: str, system: str = REFINEMENT_SYSTEM_PROMPT) -> ProviderResult:
        return await self._message(system, prompt, max_tokens=1500)

    async def _message(self, system: str, content, max_tokens: int, images: int = 0) -> ProviderResult:
        t0 = time.monotonic()
        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": content}],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = message.content[0].text if message.content else ""
        input_tokens = message.usage.input_tokens
        output_tokens = message.usage.output_tokens

        data = parse_json_response(raw, self.full_name)
        # image tokens are already part of usage.input_tokens
        cost = self.estimate_cost(input_tokens, output_tokens)

        return ProviderResult(
            provider_name=self.full_name,
            model_id=self.model_id,
            data=data,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            raw_text=raw,
        )
