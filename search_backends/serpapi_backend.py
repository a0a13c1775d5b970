"""
SerpAPI Google backend — active resale listings.

Sign up at: https://serpapi.com  (free tier: 100 searches/month)
API docs:   https://serpapi.com/search-api

Two parts of the Google response carry listings:
  • shopping_results  → structured price, most reliable; taken first
  • organic_results   → kept only when the link is a known resale platform
                        (eBay, Poshmark, Grailed, ...); price from the
                        rich-snippet "extracted_price" or a $ amount in the
                        title/snippet

Sold detection for organic results: "sold" in title or link, or the eBay
LH_Sold=1 filter in the URL.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

import aiohttp

import config
from errors import ProviderUnavailable
from search_backends.base import (
    Listing, SearchBackend,
    _currency_from_text, _parse_price, extract_condition, platform_for_url,
)

logger = logging.getLogger(__name__)

SEARCH_URL = "https://serpapi.com/search"

_PRICE_IN_TEXT = re.compile(r"[$£€]\s?[\d,]+(?:\.\d{1,2})?")


class SerpApiBackend(SearchBackend):

    def __init__(self, api_key: str) -> None:
        self._key = api_key

    @property
    def name(self) -> str:
        return "SerpAPI / Google"

    async def search(self, query: str, max_results: int = 20) -> list[Listing]:
        params = {
            "engine":  "google",
            "q":       query,
            "num":     str(max_results),
            "api_key": self._key,
        }
        data = await self._fetch(params)

        listings = _parse_shopping(data.get("shopping_results") or [])
        listings += _parse_organic(data.get("organic_results") or [])
        logger.info("SerpAPI returned %d listings for query '%s'", len(listings), query)
        return listings[:max_results]

    # ── HTTP helper ───────────────────────────────────────────────────────────

    async def _fetch(self, params: dict) -> dict:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    SEARCH_URL,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=config.SEARCH_TIMEOUT_S),
                ) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise ProviderUnavailable(f"SerpAPI error {resp.status}: {text[:200]}")
                    try:
                        data = await resp.json()
                    except ValueError as exc:
                        raise ProviderUnavailable(f"SerpAPI returned invalid JSON: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable("SerpAPI request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(f"SerpAPI connection error: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"SerpAPI returned {type(data).__name__}, expected an object")
        return data


# ── Parsers ───────────────────────────────────────────────────────────────────

def _parse_shopping(items: list) -> list[Listing]:
    listings: list[Listing] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue
        price_raw = raw.get("extracted_price")
        price = float(price_raw) if isinstance(price_raw, (int, float)) else _parse_price(raw.get("price"))
        url = raw.get("link") or raw.get("product_link") or ""
        listing = Listing(
            title=(raw.get("title") or "").strip(),
            price=price,
            currency=_currency_from_text(str(raw.get("price") or "")),
            platform=raw.get("source") or "Google Shopping",
            url=url,
            image_url=raw.get("thumbnail"),
        )
        if listing.is_usable:
            listings.append(listing)
    return listings


def _parse_organic(items: list) -> list[Listing]:
    listings: list[Listing] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue
        link = raw.get("link") or ""
        platform = platform_for_url(link)
        if not platform:
            continue

        title = (raw.get("title") or "").strip()
        text = f"{title} {raw.get('snippet') or ''}"
        price, currency = _organic_price(raw, text)
        if price is None:
            continue

        sold = "sold" in title.lower() or "sold" in link.lower() or "LH_Sold=1" in link
        listing = Listing(
            title=title,
            price=price,
            currency=currency,
            platform=platform,
            url=link,
            sold=sold,
            condition=extract_condition(text),
        )
        if listing.is_usable:
            listings.append(listing)
    return listings


def _organic_price(raw: dict, text: str) -> tuple[Optional[float], str]:
    # Rich snippet first: {"detected_extensions": {"price": 45.0, "currency": "$"}}
    bottom = (raw.get("rich_snippet") or {}).get("bottom") or {}
    extensions = bottom.get("detected_extensions") or {}
    if isinstance(extensions.get("price"), (int, float)):
        return float(extensions["price"]), _currency_from_text(str(extensions.get("currency") or "$"))

    match = _PRICE_IN_TEXT.search(text)
    if match:
        return _parse_price(match.group(0)), _currency_from_text(match.group(0))
    return None, "USD"
