"""
Shared prompts, result type and base class for all AI providers.

Every provider does two things:
  analyse(image_bytes, hints)  — vision call with EXTRACTION_PROMPT, one photo
  complete(prompt)             — text-only call, used by the refinement stage
Both return a ProviderResult carrying the parsed JSON plus token/cost metrics.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# ── Prompts (shared across all providers) ─────────────────────────────────────

EXTRACTION_PROMPT = """You are an expert clothing analyst. Analyze this image and determine what type of clothing image it is, then extract relevant information.

STEP 1: Classify the image type:
- "tag" = A clothing tag/label showing brand, size, materials, care instructions, RN numbers
- "garment" = An overall view of a clothing item showing its style, pattern, construction
- "condition" = A close-up showing wear, damage, stains, or quality details
- "detail" = A specific feature like buttons, zipper, logo, stitching
- "unknown" = Cannot determine what this image shows

STEP 2: READ ALL VISIBLE TEXT.
- Look carefully for ANY brand logos, labels, or text visible in the image
- Even in "garment" images, brands often appear on small labels, patches, or embroidered logos
- Transcribe the EXACT text, don't describe it (e.g. "TOPO DESIGNS" not "appears to be outdoor brand")

STEP 3: Based on the image type, extract relevant information.

Return ONLY a JSON object in this EXACT format, no markdown, no prose:
{
  "imageType": "tag" | "garment" | "condition" | "detail" | "unknown",
  "tagExtraction": {
    "brand": "Brand name if visible",
    "styleNumber": "Style/model number",
    "sku": "SKU or product code",
    "size": "Size (S, M, L, 32, etc.)",
    "materials": ["100% Cotton", "80% Wool, 20% Nylon"],
    "countryOfOrigin": "Made in country",
    "rnNumber": "RN number (US registration)",
    "wplNumber": "WPL number",
    "careInstructions": ["Machine wash cold", "Tumble dry low"],
    "rawText": ["All", "visible", "text", "on", "tag"]
  },
  "garmentAnalysis": {
    "category": "Be specific: 'fleece jacket' not just 'jacket'",
    "style": "Specific style name (e.g. Cowichan, varsity, bomber)",
    "estimatedEra": "vintage/1980s/modern/etc.",
    "colors": ["cream", "brown", "navy"],
    "patterns": ["geometric", "stripes", "solid"],
    "construction": "hand-knit/machine-knit/woven/canvas/nylon/etc.",
    "estimatedBrand": "EXACT brand name if visible on any label/logo, else null",
    "estimatedOrigin": "Geographic/cultural origin if identifiable",
    "notableFeatures": ["shawl collar", "zipper front"]
  },
  "conditionAssessment": {
    "overallGrade": "excellent/very good/good/fair/poor",
    "issues": ["pilling", "small stain on front"],
    "wearLevel": "like new/light wear/moderate wear/heavy wear",
    "repairNeeded": true,
    "notes": ["Overall good condition for vintage"]
  },
  "confidence": 0.85,
  "searchSuggestions": ["search query 1", "search query 2"]
}

RULES:
1. Only include sections relevant to the image type:
   - "tag" images: tagExtraction
   - "garment" images: garmentAnalysis
   - "condition" images: conditionAssessment
   - "detail" images: whichever section matches what is shown
   - "unknown" images: minimal data with low confidence
2. searchSuggestions are queries for finding similar items online, most specific first,
   e.g. "Patagonia STY25455 fleece jacket", "Cowichan sweater vintage hand knit".
"""

USER_PROMPT = "Analyse this clothing photo and return the JSON."

REFINEMENT_SYSTEM_PROMPT = """You are a clothing resale pricing expert.
Given extracted item data and market research, return ONLY valid JSON in this exact format:
{
  "suggestedPriceRange": {"low": 0, "high": 0, "recommended": 0, "currency": "USD"},
  "marketActivity": "hot | moderate | slow | rare",
  "demandLevel": "high | medium | low",
  "comparableListings": [
    {"title": "", "price": 0, "currency": "USD", "platform": "", "url": "", "relevanceScore": 0.8}
  ],
  "insights": ["3-5 key insights for the seller"],
  "brandTier": "luxury | premium | mid-range | budget | vintage | unknown",
  "conditionImpact": "how the condition affects the price",
  "seasonalFactors": "None noted",
  "confidence": 0.7
}

Rules:
- low <= recommended <= high, all non-negative, in the currency of the research results
- comparableListings: at most 5, only taken from the listings you were given
"""


def build_user_prompt(hints: Optional[list[str]] = None) -> str:
    """On-device OCR fragments bias the prompt only; the model decides."""
    if not hints:
        return USER_PROMPT
    return (
        f"{USER_PROMPT}\n\n"
        f"On-device OCR detected these text fragments (may help): {', '.join(hints)}"
    )


def detect_media_type(image_bytes: bytes) -> str:
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"GIF8":
        return "image/gif"
    if image_bytes[:4] == b"RIFF":
        return "image/webp"
    return "image/jpeg"


# ── Shared result type ─────────────────────────────────────────────────────────

@dataclass
class ProviderResult:
    """Result from a single provider call."""
    provider_name: str          # e.g. "openai/gpt-4o-mini"
    model_id: str
    data: dict                  # parsed JSON payload
    latency_ms: int
    input_tokens: int
    output_tokens: int
    cost_usd: float             # estimated cost
    raw_text: str = field(default="", repr=False)

    @property
    def cost_str(self) -> str:
        if self.cost_usd < 0.001:
            return f"${self.cost_usd * 1000:.3f}m"   # show in milli-dollars
        return f"${self.cost_usd:.4f}"


_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def parse_json_response(raw: str, provider_name: str) -> dict:
    """
    Parse JSON from a model response, handling markdown fences and
    surrounding prose gracefully.
    Raises ValueError on parse failure or when the payload is not an object.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    match = _JSON_BLOCK.search(text)
    # Prose around the object: keep only the outermost {...}
    if match and not text.startswith("{"):
        text = match.group(0)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"[{provider_name}] JSON parse error: expected an object")
    return data


# ── Abstract base ──────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all providers must implement."""

    name: str           # e.g. "openai"
    model_id: str       # e.g. "gpt-4o-mini"
    cost_per_1k_input_tokens: float
    cost_per_1k_output_tokens: float
    # Extra per-image cost for vision (input image processing flat fee or per-tile)
    cost_per_image: float = 0.0

    @abstractmethod
    async def analyse(self, image_bytes: bytes, hints: Optional[list[str]] = None) -> ProviderResult:
        """Run vision inference on image_bytes with EXTRACTION_PROMPT."""
        ...

    @abstractmethod
    async def complete(self, prompt: str, system: str = REFINEMENT_SYSTEM_PROMPT) -> ProviderResult:
        """Text-only JSON completion."""
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    def estimate_cost(self, input_tokens: int, output_tokens: int, images: int = 0) -> float:
        return (
            self.cost_per_image * images
            + input_tokens / 1000 * self.cost_per_1k_input_tokens
            + output_tokens / 1000 * self.cost_per_1k_output_tokens
        )
