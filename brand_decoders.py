"""
brand_decoders.py — structured data from brand-specific style codes.

Many outdoor brands encode useful information in their style/SKU codes
(season, year, product line, gender). A decoder turns a raw code into a
DecodedStyle. The normalised raw code is the research cache key, so
FA23-25455 and 25455 are cached apart; the style number the decoder finds
in it feeds the search terms that lead the research query list.

Every decoder returns a result for any non-empty code: when no pattern
matches it falls back to the normalised code with confidence 0.3.

Supported:
  PATAGONIA          FA23-25455, 25455, STY25455, 25455-BLK
  ARC'TERYX          24105, 21782-BLK-M
  THE NORTH FACE     NF0A4R52, A3SJL, T93XXX
  FJALLRAVEN         F23510, 87213
  REI CO-OP          1234567
  MAMMUT             1010-12345, 12345
  MOUNTAIN HARDWEAR  OM1234, OL12345, 123456
  OUTDOOR RESEARCH   123456
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional

from models import DecodedStyle

FALLBACK_CONFIDENCE = 0.3

_STRIP = re.compile(r"[\s\-_]")


def normalize_code(code: str) -> str:
    """Upper-case, spaces/hyphens/underscores removed."""
    return _STRIP.sub("", code.upper()).strip()


class StyleDecoder(ABC):
    brand_name: str
    aliases: tuple[str, ...] = ()
    display_name: str           # how the brand is written in search terms
    print_prefixes: tuple[str, ...] = ()    # printed on tags, not part of the code

    def matches(self, brand: str) -> bool:
        key = brand.upper().strip()
        return key == self.brand_name or key in self.aliases

    def decode(self, code: str) -> DecodedStyle:
        normalized = normalize_code(code)
        for prefix in self.print_prefixes:
            if normalized.startswith(prefix) and len(normalized) > len(prefix):
                normalized = normalized[len(prefix):]
                break
        result = DecodedStyle(brand=self.brand_name, raw_code=code, normalized_code=normalized,
                              style_number=normalized)
        if not self._decode(result, result.normalized_code):
            result.confidence = FALLBACK_CONFIDENCE
            result.search_terms = [f"{self.display_name} {code}"]
        return result

    @abstractmethod
    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        """Fill `result` in place. Return False if no pattern matched."""
        ...


# ── Patagonia ─────────────────────────────────────────────────────────────────

_PATAGONIA_SEASONS = {
    "FA": "Fall", "SP": "Spring", "SS": "Spring/Summer", "FW": "Fall/Winter", "HO": "Holiday",
}

# style-number prefix → (product line, category)
_PATAGONIA_LINES = {
    "23": ("Synchilla", "fleece"),
    "25": ("Better Sweater", "fleece"),
    "26": ("R1", "fleece"),
    "40": ("Baggies", "shorts"),
    "57": ("Stand Up", "shorts"),
    "82": ("Nano Puff", "insulated jacket"),
    "83": ("Torrentshell", "rain jacket"),
    "84": ("Down Sweater", "down jacket"),
    "85": ("Tres", "3-in-1 jacket"),
}


class PatagoniaDecoder(StyleDecoder):
    brand_name = "PATAGONIA"
    aliases = ("PATAGONIA INC", "PATAGONIA OUTDOOR", "PATAGUCCI")
    display_name = "Patagonia"
    print_prefixes = ("STY",)

    _SEASONAL = re.compile(r"^(FA|SP|SS|FW|HO)(\d{2})(\d{5})$")
    _PLAIN = re.compile(r"^(\d{5})$")
    _COLOR = re.compile(r"^(\d{5})([A-Z]{2,4})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._SEASONAL.match(normalized)
        if m:
            season_code, year, style_num = m.groups()
            result.season = _PATAGONIA_SEASONS[season_code]
            result.year = f"20{year}"
            self._style_number(result, style_num, "seasonal_prefix", 0.9)
            line = f"{result.product_line} " if result.product_line else ""
            result.search_terms = [
                f"Patagonia {line}{result.season} {result.year}",
                f"Patagonia {style_num}",
            ]
            return True

        m = self._PLAIN.match(normalized)
        if m:
            style_num = m.group(1)
            self._style_number(result, style_num, "plain_style", 0.7)
            line = f"{result.product_line} " if result.product_line else ""
            result.search_terms = [f"Patagonia {line}{style_num}", f"Patagonia style {style_num}"]
            return True

        m = self._COLOR.match(normalized)
        if m:
            style_num, color = m.groups()
            result.color_code = color
            self._style_number(result, style_num, "style_with_color", 0.75)
            line = f"{result.product_line} " if result.product_line else ""
            result.search_terms = [f"Patagonia {line}{style_num}"]
            return True
        return False

    @staticmethod
    def _style_number(result: DecodedStyle, style_num: str, pattern: str, confidence: float) -> None:
        result.style_number = style_num
        result.pattern_type = pattern
        result.confidence = confidence
        line = _PATAGONIA_LINES.get(style_num[:2])
        if line:
            result.product_line, result.category = line


# ── Arc'teryx ─────────────────────────────────────────────────────────────────

class ArcteryxDecoder(StyleDecoder):
    brand_name = "ARC'TERYX"
    aliases = ("ARCTERYX", "ARC TERYX", "ARCTERYX EQUIPMENT")
    display_name = "Arc'teryx"

    _STYLE = re.compile(r"^(\d{5})$")
    # colour and size suffix, e.g. 21782-BLK-M
    _EXTENDED = re.compile(r"^(\d{5})([A-Z]{2,4})?([XSML]{1,3})?$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._STYLE.match(normalized)
        if m:
            result.pattern_type = "style_number"
            result.confidence = 0.7
            result.search_terms = [f"Arc'teryx {m.group(1)}", f"Arcteryx style {m.group(1)}"]
            return True

        m = self._EXTENDED.match(normalized)
        if m:
            style_num, color, _size = m.groups()
            result.style_number = style_num
            result.color_code = color
            result.pattern_type = "extended_style"
            result.confidence = 0.75
            result.search_terms = [f"Arc'teryx {style_num}", f"Arcteryx {style_num}"]
            return True
        return False


# ── The North Face ────────────────────────────────────────────────────────────

class NorthFaceDecoder(StyleDecoder):
    brand_name = "THE NORTH FACE"
    aliases = ("NORTH FACE", "TNF", "THE NORTHFACE")
    display_name = "North Face"

    _MODERN = re.compile(r"^NF0A[A-Z0-9]{4}$")
    _LEGACY = re.compile(r"^[A-Z][A-Z0-9]{3,4}$")
    _T9 = re.compile(r"^T9[0-9][A-Z0-9]{3,4}$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        if self._MODERN.match(normalized):
            result.pattern_type = "modern_style"
            result.confidence = 0.85
            result.search_terms = [f"North Face {normalized}", f"TNF {normalized}", f'"{normalized}"']
            return True
        if self._LEGACY.match(normalized):
            result.pattern_type = "legacy_style"
            result.confidence = 0.7
            result.search_terms = [f"North Face {normalized}", f"TNF {normalized}"]
            return True
        if self._T9.match(normalized):
            result.pattern_type = "t9_style"
            result.confidence = 0.75
            result.search_terms = [f"North Face {normalized}"]
            return True
        return False


# ── Fjällräven ────────────────────────────────────────────────────────────────

class FjallravenDecoder(StyleDecoder):
    brand_name = "FJALLRAVEN"
    aliases = ("FJÄLLRÄVEN", "FJALL RAVEN", "FJÄLLRÄVEN SWEDEN")
    display_name = "Fjallraven"

    _ARTICLE = re.compile(r"^F?(\d{5,6})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._ARTICLE.match(normalized)
        if not m:
            return False
        article = m.group(1)
        result.style_number = article
        result.pattern_type = "article_number"
        result.confidence = 0.75

        number = int(article)
        if 23500 <= number <= 23599:
            result.product_line, result.category = "Kånken", "backpack"
            result.confidence = 0.85
        elif 87000 <= number <= 87999:
            result.product_line, result.category = "Greenland", "jacket"
        elif 81000 <= number <= 81999:
            result.product_line, result.category = "Keb", "pants/jacket"

        result.search_terms = [f"Fjallraven {article}", f"Fjällräven article {article}"]
        return True


# ── REI Co-op ─────────────────────────────────────────────────────────────────

class ReiDecoder(StyleDecoder):
    brand_name = "REI CO-OP"
    aliases = ("REI", "REI COOP", "RECREATIONAL EQUIPMENT")
    display_name = "REI"

    _ITEM = re.compile(r"^(\d{6,8})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._ITEM.match(normalized)
        if not m:
            return False
        result.pattern_type = "item_number"
        result.confidence = 0.7
        result.search_terms = [f"REI Co-op {m.group(1)}", f"REI item {m.group(1)}"]
        return True


# ── Mammut ────────────────────────────────────────────────────────────────────

_MAMMUT_CATEGORIES = {
    "1010": "jackets",
    "1012": "pants",
    "1014": "shirts/tops",
    "1020": "climbing gear",
    "1050": "accessories",
}


class MammutDecoder(StyleDecoder):
    brand_name = "MAMMUT"
    aliases = ("MAMMUT SPORTS", "MAMMUT SWITZERLAND")
    display_name = "Mammut"

    _ARTICLE = re.compile(r"^(10\d{2})(\d{5})$")
    _PLAIN = re.compile(r"^(\d{5,7})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._ARTICLE.match(normalized)
        if m:
            prefix, article = m.groups()
            result.style_number = f"{prefix}-{article}"
            result.pattern_type = "article_number"
            result.confidence = 0.8
            result.category = _MAMMUT_CATEGORIES.get(prefix)
            result.search_terms = [f"Mammut {prefix}-{article}", f"Mammut article {article}"]
            return True

        m = self._PLAIN.match(normalized)
        if m:
            result.pattern_type = "plain_number"
            result.confidence = 0.6
            result.search_terms = [f"Mammut {m.group(1)}"]
            return True
        return False


# ── Mountain Hardwear ─────────────────────────────────────────────────────────

_MHW_GENDERS = {"OM": "mens", "OL": "womens", "OU": "unisex"}


class MountainHardwearDecoder(StyleDecoder):
    brand_name = "MOUNTAIN HARDWEAR"
    aliases = ("MTN HARDWEAR", "MOUNTAIN HARDWARE", "MHW")
    display_name = "Mountain Hardwear"

    _PREFIXED = re.compile(r"^(OM|OL|OU)(\d{4,5})$")
    _NUMERIC = re.compile(r"^(\d{5,7})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._PREFIXED.match(normalized)
        if m:
            prefix, style_num = m.groups()
            result.pattern_type = "om_style"
            result.confidence = 0.8
            result.gender = _MHW_GENDERS[prefix]
            result.search_terms = [f"Mountain Hardwear {prefix}{style_num}", f"MHW {style_num}"]
            return True

        m = self._NUMERIC.match(normalized)
        if m:
            result.pattern_type = "numeric_style"
            result.confidence = 0.65
            result.search_terms = [f"Mountain Hardwear {m.group(1)}"]
            return True
        return False


# ── Outdoor Research ──────────────────────────────────────────────────────────

class OutdoorResearchDecoder(StyleDecoder):
    brand_name = "OUTDOOR RESEARCH"
    aliases = ("OR", "OUTDOOR RESEARCH INC")
    display_name = "Outdoor Research"

    _NUMERIC = re.compile(r"^(\d{5,7})$")

    def _decode(self, result: DecodedStyle, normalized: str) -> bool:
        m = self._NUMERIC.match(normalized)
        if not m:
            return False
        result.pattern_type = "numeric_style"
        result.confidence = 0.7
        result.search_terms = [f"Outdoor Research {m.group(1)}", f"OR {m.group(1)}"]
        return True


# ── Registry ──────────────────────────────────────────────────────────────────

DECODERS: list[StyleDecoder] = [
    PatagoniaDecoder(),
    ArcteryxDecoder(),
    NorthFaceDecoder(),
    FjallravenDecoder(),
    ReiDecoder(),
    MammutDecoder(),
    MountainHardwearDecoder(),
    OutdoorResearchDecoder(),
]


def get_decoder_for_brand(brand: str) -> Optional[StyleDecoder]:
    for decoder in DECODERS:
        if decoder.matches(brand):
            return decoder
    return None


def has_decoder(brand: str) -> bool:
    return get_decoder_for_brand(brand) is not None


def supported_brands() -> list[str]:
    return [d.brand_name for d in DECODERS]


def decode_style_code(brand: Optional[str], code: Optional[str]) -> Optional[DecodedStyle]:
    """None if either input is empty or the brand has no decoder."""
    if not brand or not code or not code.strip():
        return None
    decoder = get_decoder_for_brand(brand)
    if decoder is None:
        return None
    return decoder.decode(code.strip())
