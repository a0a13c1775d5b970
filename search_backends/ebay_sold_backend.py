"""
SerpAPI eBay backend — completed (sold) listings only.

Sold prices are the most useful pricing signal we have, so this backend is
queried alongside the Google backend for every research query.

Uses the same SERPAPI_API_KEY as serpapi_backend.py:
  engine=ebay, LH_Complete=1, LH_Sold=1
"""
from __future__ import annotations

import asyncio
import logging

import aiohttp

import config
from errors import ProviderUnavailable
from search_backends.base import Listing, SearchBackend, _currency_from_text, _parse_price

logger = logging.getLogger(__name__)

SEARCH_URL = "https://serpapi.com/search"


class EbaySoldBackend(SearchBackend):

    def __init__(self, api_key: str, ebay_domain: str = "ebay.com") -> None:
        self._key = api_key
        self._domain = ebay_domain

    @property
    def name(self) -> str:
        return "SerpAPI / eBay sold"

    async def search(self, query: str, max_results: int = 20) -> list[Listing]:
        params = {
            "engine":      "ebay",
            "ebay_domain": self._domain,
            "_nkw":        query,
            "LH_Complete": "1",
            "LH_Sold":     "1",
            "api_key":     self._key,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    SEARCH_URL,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=config.SEARCH_TIMEOUT_S),
                ) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise ProviderUnavailable(f"SerpAPI eBay error {resp.status}: {text[:200]}")
                    try:
                        data = await resp.json()
                    except ValueError as exc:
                        raise ProviderUnavailable(f"SerpAPI eBay returned invalid JSON: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable("SerpAPI eBay request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(f"SerpAPI eBay connection error: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"SerpAPI eBay returned {type(data).__name__}, expected an object")

        listings: list[Listing] = []
        for raw in data.get("organic_results") or []:
            listing = _parse_item(raw)
            if listing:
                listings.append(listing)

        logger.info("eBay sold search returned %d listings for '%s'", len(listings), query)
        return listings[:max_results]


def _parse_item(raw) -> Listing | None:
    if not isinstance(raw, dict):
        return None
    price_info = raw.get("price") or {}
    if isinstance(price_info, dict):
        extracted = price_info.get("extracted")
        raw_price = price_info.get("raw") or ""
        price = float(extracted) if isinstance(extracted, (int, float)) else _parse_price(raw_price)
    else:
        raw_price = str(price_info)
        price = _parse_price(raw_price)

    listing = Listing(
        title=(raw.get("title") or "").strip(),
        price=price,
        currency=_currency_from_text(str(raw_price)),
        platform="eBay",
        url=raw.get("link") or "",
        sold=True,
        condition=raw.get("condition"),
        sold_date=raw.get("sold_date"),
        image_url=raw.get("thumbnail"),
    )
    return listing if listing.is_usable else None
