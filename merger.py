"""
merger.py — stage 1b: many ImageAnalysisResults → one ExtractedData.

Pure and deterministic. Input order does not matter: analyses are sorted by
(confidence desc, content) before any field is chosen.

Precedence per field:
  tag fields      (brand, style number, sku, size, materials, care, origin,
                   RN/WPL)  → tag analyses, else garment analyses
  garment fields  (category, style, era, patterns, construction, colours)
                  → garment analyses only
  condition       → condition analyses only, never inferred from other shots

Brand strings that read like descriptions are not used as the brand; the
first one seen is kept in brand_notes.
"""
from __future__ import annotations

import json
import logging
import math
from typing import Callable, Iterable, Optional

from brands import is_valid_brand_name
from errors import NoUsableAnalysis
from models import ExtractedData, ImageAnalysisResult, ImageType

logger = logging.getLogger(__name__)


def _sort_key(a: ImageAnalysisResult) -> tuple:
    content = a.to_dict()
    content.pop("usage", None)
    return (-a.confidence, json.dumps(content, sort_keys=True, default=str))


def _first(analyses: Iterable[ImageAnalysisResult], get: Callable) -> tuple[Optional[object], Optional[ImageAnalysisResult]]:
    """First non-empty value of get(a) in precedence order, with its source."""
    for a in analyses:
        value = get(a)
        if value:
            return value, a
    return None, None


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        key = v.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(v.strip())
    return out


def merge(analyses: list[ImageAnalysisResult]) -> ExtractedData:
    """Raises NoUsableAnalysis if `analyses` is empty."""
    if not analyses:
        raise NoUsableAnalysis("No image analysis to merge")

    ordered = sorted(analyses, key=_sort_key)
    by_type: dict[ImageType, list[ImageAnalysisResult]] = {}
    for a in ordered:
        by_type.setdefault(a.image_type, []).append(a)

    tags = by_type.get(ImageType.TAG, [])
    garments = by_type.get(ImageType.GARMENT, [])
    conditions = by_type.get(ImageType.CONDITION, [])
    tag_sources = tags + garments

    merged = ExtractedData()
    provenance: dict[str, str] = {}

    def take(field_name: str, sources: list[ImageAnalysisResult], get: Callable) -> None:
        value, source = _first(sources, get)
        if source is not None:
            setattr(merged, field_name, value)
            provenance[field_name] = source.image_type.value

    # ── Brand ────────────────────────────────────────────────────────────────
    rejected: list[str] = []
    for a in tags:
        _consider_brand(merged, provenance, rejected, a, a.tag.brand if a.tag else None)
    for a in garments:
        if merged.brand:
            break
        _consider_brand(merged, provenance, rejected, a, a.tag.brand if a.tag else None)
        _consider_brand(merged, provenance, rejected, a, a.garment.estimated_brand if a.garment else None)
    if rejected:
        merged.brand_notes = rejected[0]

    # ── Tag fields ───────────────────────────────────────────────────────────
    take("style_number", tag_sources, lambda a: a.tag and a.tag.style_number)
    take("sku", tag_sources, lambda a: a.tag and a.tag.sku)
    take("size", tag_sources, lambda a: a.tag and a.tag.size)
    take("materials", tag_sources, lambda a: a.tag and list(a.tag.materials))
    take("care_instructions", tag_sources, lambda a: a.tag and list(a.tag.care_instructions))
    take("rn_number", tag_sources, lambda a: a.tag and a.tag.rn_number)
    take("wpl_number", tag_sources, lambda a: a.tag and a.tag.wpl_number)
    take("country_of_origin", tag_sources,
         lambda a: (a.tag and a.tag.country_of_origin)
         or (a.image_type is ImageType.GARMENT and a.garment and a.garment.estimated_origin))
    merged.raw_text = _dedupe(t for a in tags if a.tag for t in a.tag.raw_text)

    # ── Garment fields ───────────────────────────────────────────────────────
    take("category", garments, lambda a: a.garment and a.garment.category)
    take("style", garments, lambda a: a.garment and a.garment.style)
    take("era", garments, lambda a: a.garment and a.garment.estimated_era)
    take("patterns", garments, lambda a: a.garment and list(a.garment.patterns))
    take("construction", garments, lambda a: a.garment and a.garment.construction)
    take("colors", garments, lambda a: a.garment and list(a.garment.colors))

    # ── Condition ────────────────────────────────────────────────────────────
    take("condition_grade", conditions, lambda a: a.condition and a.condition.overall_grade)
    take("wear_level", conditions, lambda a: a.condition and a.condition.wear_level)
    merged.condition_issues = _dedupe(
        issue for a in conditions if a.condition for issue in a.condition.issues
    )
    if merged.condition_issues:
        provenance["condition_issues"] = ImageType.CONDITION.value

    # ── Meta ─────────────────────────────────────────────────────────────────
    merged.image_types = sorted({a.image_type for a in analyses}, key=lambda t: t.value)
    merged.confidence = round(math.fsum(a.confidence for a in analyses) / len(analyses), 4)
    merged.provenance = provenance
    merged.search_suggestions = build_search_suggestions(
        merged, (s for a in ordered for s in a.search_suggestions)
    )

    logger.info(
        "Merged %d analyses (%s): brand=%s code=%s category=%s",
        len(analyses), ", ".join(t.value for t in merged.image_types),
        merged.brand, merged.style_code, merged.category,
    )
    return merged


def _consider_brand(merged: ExtractedData, provenance: dict, rejected: list,
                    source: ImageAnalysisResult, brand: Optional[str]) -> None:
    if merged.brand or not brand:
        return
    if is_valid_brand_name(brand):
        merged.brand = brand
        provenance["brand"] = source.image_type.value
    else:
        logger.info("Brand field looks like a description, keeping as note: %r", brand)
        rejected.append(brand)


def build_search_suggestions(data: ExtractedData, model_suggestions: Iterable[str] = ()) -> list[str]:
    """
    Most specific first: combinations that include the style code, then
    brand + style, brand + era, brand alone with category, brandless
    descriptions, and finally the models' own suggestions.
    """
    combos = [
        (data.brand, data.style_code, data.category),
        (data.brand, data.style_code),
        (data.brand, data.style, data.category),
        (data.brand, data.category, data.era),
        (data.brand, data.category),
        (data.style, data.category, data.era),
        (data.style, data.category),
    ]
    generated = [" ".join(parts) for parts in combos if all(parts)]
    return _dedupe([*generated, *model_suggestions])
