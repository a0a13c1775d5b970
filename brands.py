"""
brands.py — brand-name validation and canonical resolution.

Vision models sometimes put a description into the brand field
("appears to be a vintage outdoor brand"). is_valid_brand_name() rejects
those so the merger can keep them as notes instead.

resolve_brand() maps a raw brand string (any case, any known alias) to its
canonical upper-case name and market tier. Canonical names are what the
research cache is keyed on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BRAND_TIERS = ("luxury", "premium", "mid-range", "budget", "vintage", "unknown")

_DESCRIPTION_PHRASES = (
    "appears to be",
    "based on",
    "likely",
    "possibly",
    "seems to be",
    "could be",
    "probably",
    "unknown",
    "unidentified",
    "generic",
    "contemporary",
    "vintage style",
    "quality",
    "construction",
)

# ── Seed table: canonical name, aliases, tier ─────────────────────────────────

_SEED: list[tuple[str, tuple[str, ...], str]] = [
    # luxury
    ("GUCCI",           ("GUCCI MADE IN ITALY", "GG"),                                    "luxury"),
    ("PRADA",           ("PRADA MILANO", "PRADA MADE IN ITALY"),                          "luxury"),
    ("LOUIS VUITTON",   ("LV", "LOUIS VUITTON PARIS", "LOUIS VUITTON MALLETIER"),         "luxury"),
    ("CHANEL",          ("COCO CHANEL", "CHANEL PARIS"),                                  "luxury"),
    ("HERMES",          ("HERMÈS", "HERMES PARIS"),                                       "luxury"),
    ("BURBERRY",        ("BURBERRYS", "BURBERRY LONDON", "BURBERRY BRIT"),                "luxury"),
    ("VERSACE",         ("GIANNI VERSACE", "VERSACE JEANS COUTURE", "VERSUS VERSACE"),    "luxury"),
    ("BALENCIAGA",      ("BALENCIAGA PARIS",),                                            "luxury"),
    ("SAINT LAURENT",   ("YSL", "YVES SAINT LAURENT", "SAINT LAURENT PARIS"),             "luxury"),
    ("DIOR",            ("CHRISTIAN DIOR", "DIOR HOMME", "MISS DIOR"),                    "luxury"),
    ("FENDI",           ("FENDI ROMA",),                                                  "luxury"),
    ("BOTTEGA VENETA",  ("BV", "BOTTEGA"),                                                "luxury"),
    ("MONCLER",         (),                                                               "luxury"),
    ("OFF-WHITE",       ("OFF WHITE",),                                                   "luxury"),
    # premium
    ("RALPH LAUREN",    ("POLO RALPH LAUREN", "POLO RL", "RL", "POLO", "POLO BY RALPH LAUREN",
                         "LAUREN RALPH LAUREN", "RRL", "DOUBLE RL"),                      "premium"),
    ("TOMMY HILFIGER",  ("TOMMY", "TOMMY JEANS", "HILFIGER"),                             "premium"),
    ("CALVIN KLEIN",    ("CK", "CALVIN KLEIN JEANS", "CK CALVIN KLEIN"),                  "premium"),
    ("COACH",           ("COACH NEW YORK",),                                              "premium"),
    ("KATE SPADE",      ("KATE SPADE NEW YORK",),                                         "premium"),
    ("MICHAEL KORS",    ("MK", "MICHAEL MICHAEL KORS"),                                   "premium"),
    ("TORY BURCH",      (),                                                               "premium"),
    ("THEORY",          (),                                                               "premium"),
    ("VINCE",           (),                                                               "premium"),
    ("ALLSAINTS",       ("ALL SAINTS",),                                                  "premium"),
    ("PATAGONIA",       ("PATAGUCCI",),                                                   "premium"),
    ("THE NORTH FACE",  ("TNF", "NORTH FACE"),                                            "premium"),
    ("ARC'TERYX",       ("ARCTERYX", "ARC TERYX"),                                        "premium"),
    ("FJALLRAVEN",      ("FJÄLLRÄVEN", "FJALL RAVEN"),                                    "premium"),
    ("MAMMUT",          (),                                                               "premium"),
    ("MOUNTAIN HARDWEAR", ("MHW",),                                                       "premium"),
    ("LULULEMON",       ("LULULEMON ATHLETICA",),                                         "premium"),
    ("CANADA GOOSE",    (),                                                               "premium"),
    ("SUPREME",         ("SUPREME NEW YORK", "SUPREME NYC"),                              "premium"),
    ("STUSSY",          ("STÜSSY",),                                                      "premium"),
    ("BAPE",            ("A BATHING APE", "BATHING APE"),                                 "premium"),
    ("FEAR OF GOD",     ("FOG", "ESSENTIALS"),                                            "premium"),
    ("PALACE",          ("PALACE SKATEBOARDS",),                                          "premium"),
    ("KITH",            (),                                                               "premium"),
    ("CITIZENS OF HUMANITY", ("COH",),                                                    "premium"),
    ("AG JEANS",        ("ADRIANO GOLDSCHMIED", "AG"),                                    "premium"),
    ("7 FOR ALL MANKIND", ("7FAM", "SEVEN FOR ALL MANKIND"),                              "premium"),
    ("TRUE RELIGION",   (),                                                               "premium"),
    ("DIESEL",          (),                                                               "premium"),
    ("FILSON",          ("C.C. FILSON",),                                                 "premium"),
    # mid-range
    ("COLUMBIA",        ("COLUMBIA SPORTSWEAR",),                                         "mid-range"),
    ("REI CO-OP",       ("REI", "REI COOP", "RECREATIONAL EQUIPMENT"),                    "mid-range"),
    ("OUTDOOR RESEARCH", (),                                                              "mid-range"),
    ("J.CREW",          ("J CREW", "JCREW"),                                              "mid-range"),
    ("BANANA REPUBLIC", (),                                                               "mid-range"),
    ("GAP",             ("THE GAP",),                                                     "mid-range"),
    ("ZARA",            (),                                                               "mid-range"),
    ("UNIQLO",          (),                                                               "mid-range"),
    ("MADEWELL",        (),                                                               "mid-range"),
    ("ANTHROPOLOGIE",   (),                                                               "mid-range"),
    ("FREE PEOPLE",     (),                                                               "mid-range"),
    ("URBAN OUTFITTERS", ("UO",),                                                         "mid-range"),
    ("NIKE",            ("NIKE INC", "NIKE SPORTSWEAR", "NIKE ACG"),                      "mid-range"),
    ("ADIDAS",          ("ADIDAS ORIGINALS", "ADIDAS SPORTSWEAR"),                        "mid-range"),
    ("NEW BALANCE",     ("NB",),                                                          "mid-range"),
    ("PUMA",            (),                                                               "mid-range"),
    ("REEBOK",          (),                                                               "mid-range"),
    ("UNDER ARMOUR",    ("UA",),                                                          "mid-range"),
    ("LEVI'S",          ("LEVIS", "LEVI STRAUSS", "LEVI'S STRAUSS & CO"),                 "mid-range"),
    ("WRANGLER",        (),                                                               "mid-range"),
    ("LEE",             ("LEE JEANS",),                                                   "mid-range"),
    ("L.L.BEAN",        ("LL BEAN", "LLBEAN", "L.L. BEAN"),                               "mid-range"),
    ("CARHARTT",        ("CARHARTT WIP",),                                                "mid-range"),
    ("EDDIE BAUER",     (),                                                               "mid-range"),
    # budget
    ("H&M",             ("HENNES & MAURITZ", "H & M"),                                    "budget"),
    ("OLD NAVY",        (),                                                               "budget"),
    ("FOREVER 21",      ("FOREVER21",),                                                   "budget"),
    # vintage
    ("PENDLETON",       ("PENDLETON WOOLEN MILLS",),                                      "vintage"),
    ("WOOLRICH",        (),                                                               "vintage"),
    ("COWICHAN",        ("COWICHAN SWEATER", "COWICHAN VALLEY"),                          "vintage"),
    ("COOGI",           (),                                                               "vintage"),
]

_BY_NAME: dict[str, tuple[str, str]] = {}
for _name, _aliases, _tier in _SEED:
    _BY_NAME[_name] = (_name, _tier)
for _name, _aliases, _tier in _SEED:
    for _alias in _aliases:
        # canonical names win over another brand's alias
        _BY_NAME.setdefault(_alias, (_name, _tier))


@dataclass(frozen=True)
class BrandInfo:
    canonical: str
    tier: str
    found: bool


def is_valid_brand_name(brand: Optional[str]) -> bool:
    """False for empty strings and for descriptions masquerading as brands."""
    if not brand or not brand.strip():
        return False
    if len(brand) > 40:
        return False
    lower = brand.lower()
    if any(phrase in lower for phrase in _DESCRIPTION_PHRASES):
        return False
    return len(brand.split()) <= 5


def normalize_brand(brand: str) -> str:
    return " ".join(brand.upper().split())


def resolve_brand(brand: str) -> BrandInfo:
    """
    Exact canonical match first, then alias match (both case-insensitive).
    Unknown brands keep their upper-cased spelling with tier 'unknown'.
    """
    key = normalize_brand(brand)
    hit = _BY_NAME.get(key)
    if hit:
        return BrandInfo(canonical=hit[0], tier=hit[1], found=True)
    logger.debug("Brand not in seed table: %r", brand)
    return BrandInfo(canonical=key, tier="unknown", found=False)
