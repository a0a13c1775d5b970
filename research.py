"""
research.py — stage 2: ExtractedData → ResearchResults.

Flow:
  1. Resolve the brand to its canonical name and tier (brands.py).
  2. If a brand and style code are known, look the pair up in the research
     cache. A fresh cached market snapshot is returned as-is (no queries).
  3. Build the query list, most specific first:
       decoded search terms → merged search suggestions →
       brand/category queries restricted to the tier's resale platforms →
       quoted brand + SKU → RN number → brandless garment queries
  4. Run queries in order until RESEARCH_MIN_LISTINGS distinct listings
     have been collected (cumulative) or RESEARCH_MAX_QUERIES is reached.
     A failing query is skipped; if every query issued fails the stage
     raises ResearchUnavailable.
  5. Split sold vs. active, pick currency/region by majority vote, store
     the snapshot in the cache entry (last write wins).
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

import config
import research_cache
from brands import resolve_brand
from errors import ProviderUnavailable, ResearchUnavailable
from market_search import Listing, search_listings
from models import ExtractedData, ResearchResults

logger = logging.getLogger(__name__)

# Resale platforms worth targeting per brand tier, best first
PLATFORM_TIERS: dict[str, list[str]] = {
    "luxury":    ["therealreal.com", "vestiairecollective.com", "rebag.com", "ebay.com", "poshmark.com"],
    "premium":   ["poshmark.com", "ebay.com", "mercari.com", "grailed.com", "therealreal.com"],
    "mid-range": ["poshmark.com", "mercari.com", "ebay.com", "depop.com", "thredup.com"],
    "budget":    ["mercari.com", "thredup.com", "depop.com", "ebay.com"],
    "vintage":   ["etsy.com", "ebay.com", "depop.com", "poshmark.com", "grailed.com"],
    "unknown":   ["ebay.com", "poshmark.com", "mercari.com"],
}

_REGION_FOR_CURRENCY = {
    "USD": "US", "GBP": "UK", "EUR": "EU", "CAD": "CA", "AUD": "AU", "JPY": "JP",
}


def build_queries(data: ExtractedData, brand_tier: str = "unknown",
                  decoded_terms: Optional[list[str]] = None) -> list[str]:
    queries: list[str] = []
    queries += decoded_terms or []
    queries += data.search_suggestions

    core = ""
    if data.brand:
        core = f"{data.brand} {data.style_number or data.category or ''}".strip()
    elif data.style or data.category:
        core = " ".join(p for p in (data.style, data.category) if p)
    if core:
        # eBay first: best sold-price coverage
        sites = ["ebay.com"] + [s for s in PLATFORM_TIERS.get(brand_tier, PLATFORM_TIERS["unknown"])[:3]
                                if s != "ebay.com"]
        queries += [f"{core} site:{site}" for site in sites]

    if data.brand and data.sku:
        queries.append(f'"{data.brand}" "{data.sku}"')
    if data.rn_number:
        queries.append(f"RN {data.rn_number} manufacturer clothing")
    if not data.brand and data.style and data.category:
        queries.append(f"{data.style} {data.category} vintage resale")

    seen: set[str] = set()
    out: list[str] = []
    for q in queries:
        key = q.strip().lower()
        if key and key not in seen:
            seen.add(key)
            out.append(q.strip())
    return out[: config.RESEARCH_MAX_QUERIES]


def _majority_currency(listings: list[Listing]) -> str:
    counts = Counter(item.currency for item in listings if item.currency)
    if not counts:
        return config.DEFAULT_CURRENCY
    # ties broken alphabetically so the result does not depend on listing order
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


async def research(extracted: ExtractedData) -> ResearchResults:
    """Raises ResearchUnavailable when every query issued failed."""
    brand_info = resolve_brand(extracted.brand) if extracted.brand else None
    brand_tier = brand_info.tier if brand_info else "unknown"

    cached = None
    if brand_info and extracted.style_code:
        cached = await research_cache.lookup(brand_info.canonical, extracted.style_code)

    if cached and cached.market_fresh and cached.market_snapshot is not None:
        logger.info("Using cached market data for %s %s", cached.brand, cached.normalized_code)
        snapshot = cached.market_snapshot
        snapshot.from_cache = True
        snapshot.decoded_style = cached.decoded
        return snapshot

    decoded = cached.decoded if cached else None
    queries = build_queries(extracted, brand_tier, decoded.search_terms if decoded else None)
    if not queries:
        logger.warning("No research queries could be built (no brand, code or category)")

    collected: dict[str, Listing] = {}
    issued: list[str] = []
    succeeded = 0
    for query in queries:
        issued.append(query)
        try:
            listings = await search_listings(query)
        except ProviderUnavailable as exc:
            logger.warning("Query '%s' failed, skipping: %s", query, exc)
            continue
        succeeded += 1
        for listing in listings:
            collected.setdefault(listing.url, listing)
        if len(collected) >= config.RESEARCH_MIN_LISTINGS:
            logger.info("Collected %d listings after %d queries, stopping", len(collected), len(issued))
            break

    if issued and not succeeded:
        raise ResearchUnavailable(f"All {len(issued)} research queries failed")

    everything = list(collected.values())
    currency = _majority_currency(everything)
    results = ResearchResults(
        listings=[item for item in everything if not item.sold],
        sold_listings=[item for item in everything if item.sold],
        currency=currency,
        region=_REGION_FOR_CURRENCY.get(currency, "US"),
        decoded_style=decoded,
        brand_tier=brand_tier,
        search_queries=issued,
        sources=sorted({item.platform for item in everything}),
    )
    logger.info("Research found %d active / %d sold listings (%s)",
                len(results.listings), len(results.sold_listings), currency)

    if cached and results.total_listings:
        await research_cache.store_market_snapshot(cached, results)
    return results
