"""
Tests for refinement.py.

Covers:
  - AI path: range coerced into order, off-scale labels replaced, comparables
    limited to known listings, usage recorded
  - AI failures fall back to the statistical path after the configured attempts
  - "stats" strategy never calls a provider
  - statistical_estimate(): sold preferred over active, small-sample widening,
    single listing, no listings → wide tier band with zero confidence
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import config
from models import ExtractedData, ResearchResults, Strategy
from providers.base import ProviderResult
from refinement import TIER_CEILINGS, build_prompt, refine, statistical_estimate
from search_backends.base import Listing


def make_listing(n: int, price: float, sold: bool = True, currency: str = "USD") -> Listing:
    return Listing(title=f"Item {n}", price=price, currency=currency, platform="eBay",
                   url=f"https://www.ebay.com/itm/{n}", sold=sold)


def make_research(prices_sold=(), prices_active=(), tier="premium", currency="USD") -> ResearchResults:
    return ResearchResults(
        sold_listings=[make_listing(i, p, True, currency) for i, p in enumerate(prices_sold)],
        listings=[make_listing(100 + i, p, False, currency) for i, p in enumerate(prices_active)],
        brand_tier=tier,
        currency=currency,
    )


def make_provider(data: dict | None = None, error: Exception | None = None) -> MagicMock:
    provider = MagicMock()
    if error is not None:
        provider.complete = AsyncMock(side_effect=error)
    else:
        provider.complete = AsyncMock(return_value=ProviderResult(
            provider_name="anthropic/claude-3-5-haiku-20241022", model_id="claude-3-5-haiku-20241022",
            data=data, latency_ms=900, input_tokens=1200, output_tokens=300, cost_usd=0.002,
        ))
    return provider


EXTRACTED = ExtractedData(brand="Patagonia", style_number="25455", category="fleece jacket",
                          condition_grade="good", raw_text=["RN 51884"], provenance={"brand": "tag"})
AI_STRATEGY = Strategy(refinement_provider="anthropic")


# ── AI path ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAiRefinement:
    async def test_happy_path(self):
        research = make_research(prices_sold=[40, 55, 60])
        provider = make_provider({
            "suggestedPriceRange": {"low": 45, "high": 65, "recommended": 55},
            "marketActivity": "Moderate",
            "demandLevel": "medium",
            "comparableListings": [
                {"url": "https://www.ebay.com/itm/1", "relevanceScore": 0.9},
                {"url": "https://made-up.example/listing", "relevanceScore": 1.0},
            ],
            "insights": ["Better Sweaters sell steadily"],
            "seasonalFactors": "Sells best in autumn",
            "conditionImpact": "Good condition, small discount",
            "confidence": 0.8,
        })
        with patch("refinement.get_provider", AsyncMock(return_value=provider)):
            findings = await refine(EXTRACTED, research, AI_STRATEGY)

        pr = findings.price_range
        assert (pr.low, pr.recommended, pr.high, pr.currency) == (45, 55, 65, "USD")
        assert findings.market_activity == "moderate"
        assert findings.demand_level == "medium"
        assert [c.url for c in findings.comparable_listings] == ["https://www.ebay.com/itm/1"]
        assert findings.comparable_listings[0].price == 55
        assert "Seasonal: Sells best in autumn" in findings.insights
        assert findings.method == "anthropic/claude-3-5-haiku-20241022"
        assert findings.usage.input_tokens == 1200
        assert findings.brand_tier == "premium"

    async def test_range_out_of_order_is_coerced(self):
        provider = make_provider({"suggestedPriceRange": {"low": 80, "high": 20, "recommended": 200}})
        with patch("refinement.get_provider", AsyncMock(return_value=provider)):
            findings = await refine(EXTRACTED, make_research([30]), AI_STRATEGY)
        pr = findings.price_range
        assert pr.low <= pr.recommended <= pr.high
        assert (pr.low, pr.high) == (20, 80)

    async def test_off_scale_labels_replaced(self):
        provider = make_provider({
            "suggestedPriceRange": {"low": 10, "high": 20, "recommended": 15},
            "marketActivity": "booming",
            "demandLevel": "extreme",
        })
        research = make_research(prices_sold=[10] * 12)
        with patch("refinement.get_provider", AsyncMock(return_value=provider)):
            findings = await refine(EXTRACTED, research, AI_STRATEGY)
        assert findings.market_activity == "hot"
        assert findings.demand_level == "medium"

    async def test_prompt_excludes_provenance_and_raw_text(self):
        prompt = build_prompt(EXTRACTED, make_research([40]))
        assert "provenance" not in prompt
        assert "RN 51884" not in prompt
        assert "Patagonia" in prompt
        assert "https://www.ebay.com/itm/0" in prompt


@pytest.mark.asyncio
class TestFallback:
    async def test_ai_failure_falls_back_to_stats(self, monkeypatch):
        monkeypatch.setattr(config, "REFINEMENT_AI_ATTEMPTS", 2)
        provider = make_provider(error=RuntimeError("overloaded"))
        with patch("refinement.get_provider", AsyncMock(return_value=provider)):
            findings = await refine(EXTRACTED, make_research([40, 50, 60, 70, 80]), AI_STRATEGY)
        assert provider.complete.await_count == 2
        assert findings.method == "stats"
        assert any("statistical" in i for i in findings.insights)

    async def test_missing_price_range_is_a_failure(self, monkeypatch):
        monkeypatch.setattr(config, "REFINEMENT_AI_ATTEMPTS", 1)
        provider = make_provider({"marketActivity": "hot"})
        with patch("refinement.get_provider", AsyncMock(return_value=provider)):
            findings = await refine(EXTRACTED, make_research([40]), AI_STRATEGY)
        assert findings.method == "stats"

    async def test_unconfigured_provider_falls_back(self):
        with patch("refinement.get_provider", AsyncMock(side_effect=RuntimeError("not configured"))):
            findings = await refine(EXTRACTED, make_research([40]), AI_STRATEGY)
        assert findings.method == "stats"

    async def test_stats_strategy_never_calls_provider(self):
        get_provider = AsyncMock()
        with patch("refinement.get_provider", get_provider):
            findings = await refine(EXTRACTED, make_research([40]), Strategy(refinement_provider="stats"))
        get_provider.assert_not_awaited()
        assert findings.method == "stats"
        assert not any("unavailable" in i for i in findings.insights)


# ── Statistical path ──────────────────────────────────────────────────────────

class TestStatisticalEstimate:
    def test_sold_preferred_over_active(self):
        findings = statistical_estimate(EXTRACTED, make_research(
            prices_sold=[40, 50, 60, 70, 80], prices_active=[500, 600]))
        assert findings.price_range.recommended == 60
        assert findings.price_range.low == 50
        assert findings.price_range.high == 70
        assert "sold" in findings.insights[0]

    def test_active_used_when_nothing_sold(self):
        findings = statistical_estimate(EXTRACTED, make_research(prices_active=[20, 30, 40, 50, 60]))
        assert findings.price_range.recommended == 40
        assert "active" in findings.insights[0]

    def test_small_sample_widened(self, monkeypatch):
        monkeypatch.setattr(config, "FALLBACK_SMALL_SAMPLE", 5)
        monkeypatch.setattr(config, "FALLBACK_BAND", 0.25)
        findings = statistical_estimate(EXTRACTED, make_research(prices_sold=[90, 100, 110]))
        pr = findings.price_range
        assert pr.recommended == 100
        assert pr.low == 75
        assert pr.high == 125
        assert any("Small sample" in i for i in findings.insights)

    def test_single_listing(self):
        findings = statistical_estimate(EXTRACTED, make_research(prices_sold=[80]))
        pr = findings.price_range
        assert (pr.low, pr.recommended, pr.high) == (60, 80, 100)
        assert findings.market_activity == "rare"

    def test_no_listings_gives_tier_band(self):
        findings = statistical_estimate(EXTRACTED, make_research(tier="luxury"))
        pr = findings.price_range
        assert pr.low == 0
        assert pr.high == TIER_CEILINGS["luxury"]
        assert pr.low <= pr.recommended <= pr.high
        assert findings.confidence == 0.0
        assert findings.demand_level == "low"

    def test_unknown_tier_label_treated_as_unknown(self):
        findings = statistical_estimate(EXTRACTED, make_research(tier="ultra"))
        assert findings.brand_tier == "unknown"
        assert findings.price_range.high == TIER_CEILINGS["unknown"]

    def test_other_currency_listings_ignored_when_possible(self):
        research = make_research(prices_sold=[50, 50, 50, 50, 50], currency="USD")
        research.sold_listings.append(make_listing(99, 5000, True, "JPY"))
        findings = statistical_estimate(EXTRACTED, research)
        assert findings.price_range.high == 50

    def test_comparables_closest_to_median(self):
        findings = statistical_estimate(EXTRACTED, make_research(prices_sold=[10, 48, 50, 52, 200, 300, 400]))
        prices = [c.price for c in findings.comparable_listings]
        assert prices[0] == 52
        assert len(prices) == 5

    def test_confidence_grows_with_sample_and_caps(self):
        small = statistical_estimate(EXTRACTED, make_research(prices_sold=[50, 60]))
        large = statistical_estimate(EXTRACTED, make_research(prices_sold=[50] * 30))
        assert small.confidence < large.confidence
        assert large.confidence == 0.7

    def test_condition_impact_from_grade(self):
        findings = statistical_estimate(EXTRACTED, make_research(prices_sold=[50]))
        assert "good" in findings.condition_impact
