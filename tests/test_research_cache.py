"""
Tests for research_cache.py.

Covers:
  - lookup(): no decoder → None; miss creates the entry; hit bumps the counter
  - decoded data is write-once across lookups
  - different raw codes with one style number are cached apart
  - concurrent lookups of a new key: exactly one miss, every hit counted
  - market snapshot freshness horizon
  - cleanup_stale() and brand_stats()
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

import brand_decoders
import config
import database as db
import research_cache
from models import ResearchResults
from search_backends.base import Listing


@pytest_asyncio.fixture(autouse=True)
async def init(tmp_data_dir):
    await db.init_db()


def _snapshot() -> ResearchResults:
    return ResearchResults(
        sold_listings=[Listing(title="Better Sweater", price=60.0, currency="USD",
                               platform="eBay", url="https://www.ebay.com/itm/9", sold=True)],
        brand_tier="premium",
    )


class TestIsFresh:
    def test_none_is_stale(self):
        assert not research_cache.is_fresh(None)

    def test_within_horizon(self):
        now = datetime.now(timezone.utc)
        assert research_cache.is_fresh(now - timedelta(hours=1), now)

    def test_past_horizon(self, monkeypatch):
        monkeypatch.setattr(config, "MARKET_DATA_TTL_HOURS", 24)
        now = datetime.now(timezone.utc)
        assert not research_cache.is_fresh(now - timedelta(hours=25), now)


@pytest.mark.asyncio
class TestLookup:
    async def test_brand_without_decoder(self):
        assert await research_cache.lookup("GAP", "123456") is None

    async def test_missing_code(self):
        assert await research_cache.lookup("PATAGONIA", None) is None

    async def test_miss_creates_entry(self):
        result = await research_cache.lookup("PATAGONIA", "FA23-25455")
        assert result.hit is False
        assert result.normalized_code == "FA2325455"
        assert result.decoded.season == "Fall"
        entry = await db.get_cache_entry("PATAGONIA", "FA2325455")
        assert entry is not None
        assert entry.hit_count == 0

    async def test_second_lookup_is_hit(self):
        await research_cache.lookup("PATAGONIA", "25455")
        result = await research_cache.lookup("Patagonia", "25455")
        assert result.hit is True
        assert result.hit_count == 1
        assert result.market_snapshot is None
        assert result.market_fresh is False

    async def test_decoded_data_never_overwritten(self, monkeypatch):
        first = await research_cache.lookup("PATAGONIA", "FA23-25455")
        # a later decoder change must not rewrite what was stored
        monkeypatch.setitem(brand_decoders._PATAGONIA_SEASONS, "FA", "Autumn")
        again = await research_cache.lookup("patagonia", "fa23 25455")
        assert again.hit is True
        assert again.decoded == first.decoded
        assert again.decoded.season == "Fall"

    async def test_distinct_codes_keep_their_own_decode(self):
        seasonal = await research_cache.lookup("PATAGONIA", "FA23-25455")
        plain = await research_cache.lookup("PATAGONIA", "25455")
        assert plain.hit is False
        assert plain.decoded.season is None
        assert plain.decoded.search_terms[0] == "Patagonia Better Sweater 25455"

        seasonal_again = await research_cache.lookup("PATAGONIA", "FA23-25455")
        assert seasonal_again.hit is True
        assert seasonal_again.decoded.season == "Fall"
        assert seasonal_again.decoded == seasonal.decoded

    async def test_concurrent_lookups_of_new_key(self):
        results = await asyncio.gather(*[research_cache.lookup("PATAGONIA", "84212") for _ in range(6)])
        assert sum(1 for r in results if not r.hit) == 1
        entry = await db.get_cache_entry("PATAGONIA", "84212")
        assert entry.hit_count == 5

    async def test_fresh_snapshot_returned(self):
        first = await research_cache.lookup("PATAGONIA", "25455")
        await research_cache.store_market_snapshot(first, _snapshot())
        result = await research_cache.lookup("PATAGONIA", "25455")
        assert result.market_fresh is True
        assert result.market_snapshot.total_listings == 1

    async def test_stale_snapshot_flagged(self, monkeypatch):
        first = await research_cache.lookup("PATAGONIA", "25455")
        await research_cache.store_market_snapshot(first, _snapshot())
        monkeypatch.setattr(config, "MARKET_DATA_TTL_HOURS", 0)
        result = await research_cache.lookup("PATAGONIA", "25455")
        assert result.market_fresh is False
        assert result.market_snapshot is not None


@pytest.mark.asyncio
class TestMaintenance:
    async def test_cleanup_stale_clears_expired_only(self, monkeypatch):
        entry = await research_cache.lookup("PATAGONIA", "25455")
        await research_cache.store_market_snapshot(entry, _snapshot())
        assert await research_cache.cleanup_stale() == 0

        monkeypatch.setattr(config, "MARKET_DATA_TTL_HOURS", -1)
        assert await research_cache.cleanup_stale() == 1
        cached = await db.get_cache_entry("PATAGONIA", "25455")
        assert cached.market_snapshot is None
        assert cached.decoded is not None

    async def test_brand_stats(self):
        await research_cache.lookup("PATAGONIA", "25455")
        await research_cache.lookup("PATAGONIA", "25455")
        await research_cache.lookup("PATAGONIA", "84212")
        stats = await research_cache.brand_stats("patagonia")
        assert stats["total_entries"] == 2
        assert stats["total_hits"] == 1
