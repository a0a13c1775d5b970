"""
Abstract base for all market search backends.
Every backend must return the same Listing list — the research engine
doesn't care which backend produced a listing.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class Listing:
    title: str
    price: float
    currency: str
    platform: str               # e.g. "eBay", "Poshmark"
    url: str                    # dereferenceable source page
    sold: bool = False
    condition: Optional[str] = None
    sold_date: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        """Every stored listing must carry a price, currency, platform and URL."""
        return (
            self.price is not None
            and self.price >= 0
            and bool(self.currency)
            and bool(self.platform)
            and self.url.startswith(("http://", "https://"))
        )


# ── Known resale platforms ─────────────────────────────────────────────────────

RESALE_PLATFORMS: dict[str, str] = {
    "ebay.com":                "eBay",
    "poshmark.com":            "Poshmark",
    "mercari.com":             "Mercari",
    "depop.com":               "Depop",
    "grailed.com":             "Grailed",
    "therealreal.com":         "TheRealReal",
    "vestiairecollective.com": "Vestiaire Collective",
    "rebag.com":               "Rebag",
    "etsy.com":                "Etsy",
    "thredup.com":             "ThredUp",
}

_CURRENCY_SYMBOLS = {"$": "USD", "£": "GBP", "€": "EUR", "¥": "JPY"}


def platform_for_url(url: str) -> Optional[str]:
    for domain, name in RESALE_PLATFORMS.items():
        if domain in url:
            return name
    return None


def _parse_price(price_str) -> Optional[float]:
    """Extract numeric value from strings like '$29.99', '29.99', '$1,299.00'."""
    try:
        cleaned = re.sub(r"[^\d.]", "", str(price_str).replace(",", ""))
        return float(cleaned) if cleaned else None
    except ValueError:
        return None


def _currency_from_text(text: str, default: str = "USD") -> str:
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    for code in ("USD", "GBP", "EUR", "CAD", "AUD", "JPY"):
        if code in text.upper():
            return code
    return default


def extract_condition(text: str) -> Optional[str]:
    lower = text.lower()
    if "nwot" in lower or "new without tags" in lower:
        return "New without tags"
    if "nwt" in lower or "new with tags" in lower:
        return "New with tags"
    if "excellent" in lower:
        return "Excellent"
    if "good condition" in lower or "great condition" in lower:
        return "Good"
    if "fair" in lower:
        return "Fair"
    if "pre-owned" in lower or "preowned" in lower:
        return "Pre-owned"
    return None


class SearchBackend(ABC):
    """All backends must implement this interface."""

    @abstractmethod
    async def search(self, query: str, max_results: int = 20) -> list[Listing]:
        """
        Search for listings matching `query`.
        Raises ProviderUnavailable on HTTP errors and timeouts.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name for logs and PipelineRun rows."""
        ...
