"""
refinement.py — stage 3: ExtractedData + ResearchResults → RefinedFindings.

Two paths, chosen by the Strategy:
  AI           the refinement provider synthesises range, demand and activity
               from both inputs; tried REFINEMENT_AI_ATTEMPTS times
  statistical  percentiles of sold prices (active prices if nothing sold),
               widened by FALLBACK_BAND for small samples

The statistical path runs when the strategy asks for it ("stats") or
automatically after the AI attempts are exhausted. Whatever the path, the
result satisfies 0 <= low <= recommended <= high. With no priced listings the
result is a wide tier-based band with zero confidence, not a failure.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import statistics
from typing import Optional

import config
from errors import RefinementFailed
from models import (
    DEMAND_LEVELS, MARKET_ACTIVITY, ComparableListing, ExtractedData, PriceRange,
    RefinedFindings, ResearchResults, Strategy, Usage,
)
from providers.manager import get_provider
from search_backends.base import Listing

logger = logging.getLogger(__name__)

# Upper bound of the no-data band per brand tier, in the research currency
TIER_CEILINGS = {
    "luxury":    500.0,
    "premium":   150.0,
    "mid-range":  60.0,
    "budget":     25.0,
    "vintage":    80.0,
    "unknown":   100.0,
}

MAX_COMPARABLES = 5
_PROMPT_LISTINGS = 15


async def refine(
    extracted: ExtractedData,
    research: ResearchResults,
    strategy: Optional[Strategy] = None,
) -> RefinedFindings:
    """Raises RefinementFailed only if the statistical path itself fails."""
    strategy = strategy or Strategy.from_config()

    ai_error: Optional[Exception] = None
    if not strategy.statistical_only:
        for attempt in range(1, config.REFINEMENT_AI_ATTEMPTS + 1):
            try:
                return await _refine_with_ai(strategy.refinement_provider, extracted, research)
            except Exception as exc:
                ai_error = exc
                logger.warning("AI refinement attempt %d/%d failed: %s",
                               attempt, config.REFINEMENT_AI_ATTEMPTS, exc)

    try:
        findings = statistical_estimate(extracted, research)
    except (ValueError, ArithmeticError) as exc:
        raise RefinementFailed(f"Statistical estimate failed: {exc}") from exc

    if ai_error is not None:
        findings.insights.append("AI pricing was unavailable; this estimate is statistical.")
    return findings


# ── AI path ───────────────────────────────────────────────────────────────────

def build_prompt(extracted: ExtractedData, research: ResearchResults) -> str:
    item_data = extracted.to_dict()
    item_data.pop("provenance", None)
    item_data.pop("raw_text", None)
    listings = [
        {"title": item.title, "price": item.price, "currency": item.currency, "platform": item.platform,
         "url": item.url, "sold": item.sold, "condition": item.condition}
        for item in (research.sold_listings + research.listings)[:_PROMPT_LISTINGS]
    ]
    return (
        f"EXTRACTED ITEM DATA:\n{json.dumps(item_data, indent=2, default=str)}\n\n"
        f"RESEARCH RESULTS (currency {research.currency}, brand tier {research.brand_tier}):\n"
        f"- Active listings found: {len(research.listings)}\n"
        f"- Sold listings found: {len(research.sold_listings)}\n"
        f"- Listings: {json.dumps(listings, indent=2)}"
    )


async def _refine_with_ai(provider_name: str, extracted: ExtractedData,
                          research: ResearchResults) -> RefinedFindings:
    provider = await get_provider(provider_name)
    result = await asyncio.wait_for(
        provider.complete(build_prompt(extracted, research)),
        timeout=config.ANALYSIS_TIMEOUT_S,
    )
    data = result.data

    price = data.get("suggestedPriceRange")
    if not isinstance(price, dict):
        raise ValueError("response has no suggestedPriceRange")
    price_range = PriceRange.coerce(
        float(price.get("low", 0)),
        float(price.get("high", 0)),
        float(price.get("recommended", price.get("low", 0))),
        research.currency,
    )

    # Fall back to the counts when the model returns something off-scale
    activity = str(data.get("marketActivity", "")).lower()
    if activity not in MARKET_ACTIVITY:
        activity = _market_activity(research.total_listings)
    demand = str(data.get("demandLevel", "")).lower()
    if demand not in DEMAND_LEVELS:
        demand = _demand_level(research.total_listings)

    known = {item.url: item for item in research.listings + research.sold_listings}
    comparables = []
    for raw in data.get("comparableListings") or []:
        if not isinstance(raw, dict) or raw.get("url") not in known:
            continue
        listing = known[raw["url"]]
        comparables.append(ComparableListing(
            title=listing.title,
            price=listing.price,
            currency=listing.currency,
            platform=listing.platform,
            url=listing.url,
            relevance=_clamp(raw.get("relevanceScore", 0.5)),
        ))

    tier = research.brand_tier
    if tier == "unknown" and data.get("brandTier") in TIER_CEILINGS:
        tier = data["brandTier"]

    insights = [str(i) for i in data.get("insights") or [] if i]
    seasonal = data.get("seasonalFactors")
    if seasonal and str(seasonal).lower() not in ("none", "none noted"):
        insights.append(f"Seasonal: {seasonal}")

    logger.info("[%s] refined %s %.2f-%.2f (rec %.2f), cost=%s",
                result.provider_name, price_range.currency, price_range.low,
                price_range.high, price_range.recommended, result.cost_str)
    return RefinedFindings(
        price_range=price_range,
        confidence=_clamp(data.get("confidence", 0.5)),
        market_activity=activity,
        demand_level=demand,
        comparable_listings=comparables[:MAX_COMPARABLES],
        insights=insights,
        brand_tier=tier,
        condition_impact=data.get("conditionImpact") or None,
        method=result.provider_name,
        usage=Usage(
            provider=result.provider_name,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
            latency_ms=result.latency_ms,
        ),
    )


def _clamp(value, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(0.0, min(1.0, number))


# ── Statistical path ──────────────────────────────────────────────────────────

def _market_activity(count: int) -> str:
    if count >= 10:
        return "hot"
    if count <= 2:
        return "rare"
    if count <= 5:
        return "slow"
    return "moderate"


def _demand_level(count: int) -> str:
    return "medium" if count >= 5 else "low"


def _priced(listings: list[Listing], currency: str) -> list[Listing]:
    usable = [item for item in listings if item.price is not None and item.price >= 0]
    same_currency = [item for item in usable if item.currency == currency]
    return same_currency or usable


def statistical_estimate(extracted: ExtractedData, research: ResearchResults) -> RefinedFindings:
    currency = research.currency or config.DEFAULT_CURRENCY
    tier = research.brand_tier if research.brand_tier in TIER_CEILINGS else "unknown"
    basis = "sold"
    sample = _priced(research.sold_listings, currency)
    if not sample:
        basis = "active"
        sample = _priced(research.listings, currency)

    condition_impact = (
        f"Graded '{extracted.condition_grade}' from photos; price within the range accordingly."
        if extracted.condition_grade else None
    )

    if not sample:
        ceiling = TIER_CEILINGS[tier]
        return RefinedFindings(
            price_range=PriceRange(0.0, ceiling, round(ceiling / 2, 2), currency),
            confidence=0.0,
            market_activity="rare",
            demand_level="low",
            insights=[f"No comparable listings found; this is a wide estimate for a {tier} brand."],
            brand_tier=tier,
            condition_impact=condition_impact,
        )

    prices = sorted(item.price for item in sample)
    n = len(prices)
    median = statistics.median(prices)
    band = config.FALLBACK_BAND
    if n == 1:
        low, high = median * (1 - band), median * (1 + band)
    else:
        p25, _, p75 = statistics.quantiles(prices, n=4, method="inclusive")
        low, high = p25, p75
        if n < config.FALLBACK_SMALL_SAMPLE:
            low, high = min(low, median * (1 - band)), max(high, median * (1 + band))

    comparables = sorted(sample, key=lambda item: (abs(item.price - median), item.url))[:MAX_COMPARABLES]
    insights = [f"Based on {n} {basis} listing(s), median {currency} {median:.2f}."]
    if n < config.FALLBACK_SMALL_SAMPLE:
        insights.append("Small sample; the range has been widened.")

    return RefinedFindings(
        price_range=PriceRange.coerce(low, high, median, currency),
        confidence=round(min(0.3 + 0.05 * n, 0.7), 2),
        market_activity=_market_activity(research.total_listings),
        demand_level=_demand_level(research.total_listings),
        comparable_listings=[
            ComparableListing(
                title=item.title, price=item.price, currency=item.currency, platform=item.platform, url=item.url,
                relevance=round(max(0.0, 1 - abs(item.price - median) / median), 2) if median else 0.5,
            )
            for item in comparables
        ],
        insights=insights,
        brand_tier=tier,
        condition_impact=condition_impact,
    )
