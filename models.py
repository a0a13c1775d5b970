"""
Typed records for each pipeline stage.

Each stage has its own record so it is always clear which fields are
authoritative at which point:

  ImageAnalysisResult  — one photo, produced by image_analyzer
  ExtractedData        — all photos merged, produced by merger
  ResearchResults      — market listings, produced by research
  RefinedFindings      — price recommendation, produced by refinement

All records round-trip through plain dicts (to_dict / from_dict) so database.py
can store them as JSON.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

import config
from errors import IllegalTransition
from search_backends.base import Listing


class ImageType(str, Enum):
    TAG = "tag"
    GARMENT = "garment"
    CONDITION = "condition"
    DETAIL = "detail"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ImageType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ScanStatus(str, Enum):
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    RESEARCHING = "researching"
    REFINING = "refining"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


class Stage(str, Enum):
    EXTRACTION = "extraction"
    RESEARCH = "research"
    REFINEMENT = "refinement"

    @property
    def status(self) -> ScanStatus:
        return _STAGE_STATUS[self]


_STAGE_STATUS = {
    Stage.EXTRACTION: ScanStatus.EXTRACTING,
    Stage.RESEARCH: ScanStatus.RESEARCHING,
    Stage.REFINEMENT: ScanStatus.REFINING,
}

# ── State machine ─────────────────────────────────────────────────────────────

TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.UPLOADED:    frozenset({ScanStatus.EXTRACTING, ScanStatus.FAILED}),
    ScanStatus.EXTRACTING:  frozenset({ScanStatus.RESEARCHING, ScanStatus.FAILED}),
    ScanStatus.RESEARCHING: frozenset({ScanStatus.REFINING, ScanStatus.FAILED}),
    ScanStatus.REFINING:    frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED:   frozenset(),
    ScanStatus.FAILED:      frozenset(),
}

# Explicit resume may re-enter any stage from these states
RESUMABLE_FROM = frozenset({ScanStatus.UPLOADED, ScanStatus.FAILED})


def check_transition(current: ScanStatus, new: ScanStatus, resume: bool = False) -> None:
    """Raise IllegalTransition unless current → new is an edge of the machine."""
    if new in TRANSITIONS[current]:
        return
    if resume and current in RESUMABLE_FROM and new in _STAGE_STATUS.values():
        return
    raise IllegalTransition(f"Illegal status transition {current.value} → {new.value}")


# ── Strategy ──────────────────────────────────────────────────────────────────

@dataclass
class Strategy:
    """Which provider each stage uses. Passed explicitly into every stage call."""
    extraction_provider: str = "anthropic"
    extraction_fallback: Optional[str] = "openai"
    refinement_provider: str = "anthropic"   # "stats" → statistical path only

    @classmethod
    def from_config(cls) -> "Strategy":
        fallback = config.EXTRACTION_FALLBACK_PROVIDER or None
        if fallback == config.EXTRACTION_PROVIDER:
            fallback = None
        return cls(
            extraction_provider=config.EXTRACTION_PROVIDER,
            extraction_fallback=fallback,
            refinement_provider=config.REFINEMENT_PROVIDER,
        )

    @property
    def statistical_only(self) -> bool:
        return self.refinement_provider == "stats"


# ── Token / cost metrics ──────────────────────────────────────────────────────

@dataclass
class Usage:
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0


# ── Stage 1: per-image analysis ───────────────────────────────────────────────

def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


@dataclass
class TagExtraction:
    brand: Optional[str] = None
    style_number: Optional[str] = None
    sku: Optional[str] = None
    size: Optional[str] = None
    materials: list[str] = field(default_factory=list)
    country_of_origin: Optional[str] = None
    rn_number: Optional[str] = None
    wpl_number: Optional[str] = None
    care_instructions: list[str] = field(default_factory=list)
    raw_text: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: dict) -> "TagExtraction":
        return cls(
            brand=_str(raw.get("brand")),
            style_number=_str(raw.get("styleNumber")),
            sku=_str(raw.get("sku")),
            size=_str(raw.get("size")),
            materials=_str_list(raw.get("materials")),
            country_of_origin=_str(raw.get("countryOfOrigin")),
            rn_number=_str(raw.get("rnNumber")),
            wpl_number=_str(raw.get("wplNumber")),
            care_instructions=_str_list(raw.get("careInstructions")),
            raw_text=_str_list(raw.get("rawText")),
        )


@dataclass
class GarmentAnalysis:
    category: Optional[str] = None
    style: Optional[str] = None
    estimated_era: Optional[str] = None
    colors: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    construction: Optional[str] = None
    estimated_brand: Optional[str] = None
    estimated_origin: Optional[str] = None
    notable_features: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: dict) -> "GarmentAnalysis":
        return cls(
            category=_str(raw.get("category")),
            style=_str(raw.get("style")),
            estimated_era=_str(raw.get("estimatedEra")),
            colors=_str_list(raw.get("colors")),
            patterns=_str_list(raw.get("patterns")),
            construction=_str(raw.get("construction")),
            estimated_brand=_str(raw.get("estimatedBrand")),
            estimated_origin=_str(raw.get("estimatedOrigin")),
            notable_features=_str_list(raw.get("notableFeatures")),
        )


CONDITION_GRADES = ("excellent", "very good", "good", "fair", "poor")


@dataclass
class ConditionAssessment:
    overall_grade: Optional[str] = None
    issues: list[str] = field(default_factory=list)
    wear_level: Optional[str] = None
    repair_needed: Optional[bool] = None
    notes: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: dict) -> "ConditionAssessment":
        grade = _str(raw.get("overallGrade"))
        if grade is not None:
            grade = grade.lower()
            if grade not in CONDITION_GRADES:
                grade = None
        repair = raw.get("repairNeeded")
        return cls(
            overall_grade=grade,
            issues=_str_list(raw.get("issues")),
            wear_level=_str(raw.get("wearLevel")),
            repair_needed=repair if isinstance(repair, bool) else None,
            notes=_str_list(raw.get("notes")),
        )


@dataclass
class ImageAnalysisResult:
    image_type: ImageType
    confidence: float
    tag: Optional[TagExtraction] = None
    garment: Optional[GarmentAnalysis] = None
    condition: Optional[ConditionAssessment] = None
    search_suggestions: list[str] = field(default_factory=list)
    usage: Optional[Usage] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ImageAnalysisResult":
        """
        Normalise the model's JSON. Raises ValueError when the payload is not
        an object; the analyzer turns that into AnalysisFailed.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Expected JSON object, got {type(raw).__name__}")
        try:
            confidence = float(raw.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        tag = raw.get("tagExtraction")
        garment = raw.get("garmentAnalysis")
        condition = raw.get("conditionAssessment")
        return cls(
            image_type=ImageType.parse(raw.get("imageType")),
            confidence=max(0.0, min(1.0, confidence)),
            tag=TagExtraction.from_raw(tag) if isinstance(tag, dict) else None,
            garment=GarmentAnalysis.from_raw(garment) if isinstance(garment, dict) else None,
            condition=ConditionAssessment.from_raw(condition) if isinstance(condition, dict) else None,
            search_suggestions=_str_list(raw.get("searchSuggestions")),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ImageAnalysisResult":
        usage = data.get("usage")
        return cls(
            image_type=ImageType.parse(data.get("image_type")),
            confidence=float(data.get("confidence", 0.0)),
            tag=TagExtraction(**data["tag"]) if data.get("tag") else None,
            garment=GarmentAnalysis(**data["garment"]) if data.get("garment") else None,
            condition=ConditionAssessment(**data["condition"]) if data.get("condition") else None,
            search_suggestions=list(data.get("search_suggestions") or []),
            usage=Usage(**usage) if usage else None,
        )


# ── Stage 1 output: merged extraction ─────────────────────────────────────────

@dataclass
class ExtractedData:
    # tag-sourced (garment fallback)
    brand: Optional[str] = None
    style_number: Optional[str] = None
    sku: Optional[str] = None
    size: Optional[str] = None
    materials: list[str] = field(default_factory=list)
    care_instructions: list[str] = field(default_factory=list)
    country_of_origin: Optional[str] = None
    rn_number: Optional[str] = None
    wpl_number: Optional[str] = None
    raw_text: list[str] = field(default_factory=list)
    # garment-sourced
    category: Optional[str] = None
    style: Optional[str] = None
    era: Optional[str] = None
    patterns: list[str] = field(default_factory=list)
    construction: Optional[str] = None
    colors: list[str] = field(default_factory=list)
    # condition-sourced
    condition_grade: Optional[str] = None
    condition_issues: list[str] = field(default_factory=list)
    wear_level: Optional[str] = None
    # meta
    brand_notes: Optional[str] = None
    confidence: float = 0.0
    image_types: list[ImageType] = field(default_factory=list)
    search_suggestions: list[str] = field(default_factory=list)
    provenance: dict[str, str] = field(default_factory=dict)   # field → image type it came from

    @property
    def style_code(self) -> Optional[str]:
        return self.style_number or self.sku

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedData":
        values = dict(data)
        values["image_types"] = [ImageType.parse(t) for t in values.get("image_types", [])]
        return cls(**values)


# ── Stage 2 output: research ──────────────────────────────────────────────────

@dataclass
class DecodedStyle:
    """Metadata decoded from a brand-specific style code."""
    brand: str
    raw_code: str
    normalized_code: str               # cache key: raw code without separators or print prefixes
    style_number: Optional[str] = None  # the part of the code that identifies the style
    product_line: Optional[str] = None
    category: Optional[str] = None
    season: Optional[str] = None
    year: Optional[str] = None
    gender: Optional[str] = None
    material: Optional[str] = None
    color_code: Optional[str] = None
    pattern_type: Optional[str] = None
    confidence: float = 0.0
    search_terms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DecodedStyle":
        return cls(**data)


@dataclass
class ResearchResults:
    listings: list[Listing] = field(default_factory=list)        # active
    sold_listings: list[Listing] = field(default_factory=list)
    currency: str = "USD"
    region: str = "US"
    decoded_style: Optional[DecodedStyle] = None
    brand_tier: str = "unknown"
    search_queries: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    from_cache: bool = False

    @property
    def total_listings(self) -> int:
        return len(self.listings) + len(self.sold_listings)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchResults":
        decoded = data.get("decoded_style")
        return cls(
            listings=[Listing(**item) for item in data.get("listings", [])],
            sold_listings=[Listing(**item) for item in data.get("sold_listings", [])],
            currency=data.get("currency", config.DEFAULT_CURRENCY),
            region=data.get("region", "US"),
            decoded_style=DecodedStyle.from_dict(decoded) if decoded else None,
            brand_tier=data.get("brand_tier", "unknown"),
            search_queries=list(data.get("search_queries", [])),
            sources=list(data.get("sources", [])),
            from_cache=bool(data.get("from_cache", False)),
        )


# ── Stage 3 output: refinement ────────────────────────────────────────────────

MARKET_ACTIVITY = ("hot", "moderate", "slow", "rare")
DEMAND_LEVELS = ("high", "medium", "low")


@dataclass
class PriceRange:
    low: float
    high: float
    recommended: float
    currency: str = "USD"

    def __post_init__(self) -> None:
        if min(self.low, self.high, self.recommended) < 0:
            raise ValueError(f"Negative price in range {self}")
        if not self.low <= self.recommended <= self.high:
            raise ValueError(f"Price range out of order: {self}")

    @classmethod
    def coerce(cls, low: float, high: float, recommended: float, currency: str) -> "PriceRange":
        """Build a valid range from untrusted numbers: clamp at 0, order the bounds."""
        low, high, recommended = (max(0.0, float(v)) for v in (low, high, recommended))
        low, high = min(low, high), max(low, high)
        recommended = min(max(recommended, low), high)
        return cls(round(low, 2), round(high, 2), round(recommended, 2), currency)


@dataclass
class ComparableListing:
    title: str
    price: float
    currency: str
    platform: str
    url: str
    relevance: float


@dataclass
class RefinedFindings:
    price_range: PriceRange
    confidence: float
    market_activity: str
    demand_level: str
    comparable_listings: list[ComparableListing] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    brand_tier: str = "unknown"
    condition_impact: Optional[str] = None
    method: str = "stats"             # provider full name, or "stats"
    usage: Optional[Usage] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RefinedFindings":
        values = dict(data)
        values["price_range"] = PriceRange(**values["price_range"])
        values["comparable_listings"] = [
            ComparableListing(**c) for c in values.get("comparable_listings", [])
        ]
        if values.get("usage"):
            values["usage"] = Usage(**values["usage"])
        return cls(**values)
