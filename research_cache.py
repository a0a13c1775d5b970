"""
research_cache.py — decoded style codes and market snapshots, by (brand, code).

  lookup()                 decode the code; on a hit bump the counter and
                           return the stored entry, on a miss store the decode
  store_market_snapshot()  attach the latest research results (last write wins)
  cleanup_stale()          drop snapshots older than MARKET_DATA_TTL_HOURS

The decoded portion of an entry is written once and never changes. Only the
market snapshot ages: past the horizon it is refreshed, not reused.
Concurrent runs need no locking; hit counts are incremented in SQL.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import config
import database as db
from brand_decoders import decode_style_code
from models import DecodedStyle, ResearchResults

logger = logging.getLogger(__name__)


@dataclass
class CacheLookup:
    brand: str                  # canonical, the cache key
    normalized_code: str
    decoded: DecodedStyle
    hit: bool
    market_snapshot: Optional[ResearchResults] = None
    market_fresh: bool = False
    hit_count: int = 0


def is_fresh(updated_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if updated_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - updated_at < timedelta(hours=config.MARKET_DATA_TTL_HOURS)


async def lookup(brand: Optional[str], style_code: Optional[str]) -> Optional[CacheLookup]:
    """
    None when the brand has no decoder (nothing is cached for it).
    Every call with a decodable code either records a hit or creates the entry.
    """
    decoded = decode_style_code(brand, style_code)
    if decoded is None:
        return None

    key = (decoded.brand, decoded.normalized_code)
    entry = await db.get_cache_entry(*key)
    if entry is None:
        if await db.insert_cache_entry(*key, decoded):
            logger.info("Cache miss for %s %s, decoded as %s (%.2f)",
                        *key, decoded.pattern_type or "fallback", decoded.confidence)
            return CacheLookup(brand=key[0], normalized_code=key[1], decoded=decoded, hit=False)
        # another run inserted it between our read and write
        entry = await db.get_cache_entry(*key)

    await db.record_cache_hit(*key)
    fresh = entry.market_snapshot is not None and is_fresh(entry.market_updated_at)
    logger.info("Cache hit for %s %s (hits=%d, market %s)",
                *key, entry.hit_count + 1, "fresh" if fresh else "stale/none")
    return CacheLookup(
        brand=key[0],
        normalized_code=key[1],
        decoded=entry.decoded or decoded,
        hit=True,
        market_snapshot=entry.market_snapshot,
        market_fresh=fresh,
        hit_count=entry.hit_count + 1,
    )


async def store_market_snapshot(entry: CacheLookup, results: ResearchResults) -> None:
    await db.save_market_snapshot(entry.brand, entry.normalized_code, results)


async def cleanup_stale(limit: int = 100) -> int:
    """Clear expired market snapshots, keep decoded data. Returns the number cleared."""
    threshold = datetime.now(timezone.utc) - timedelta(hours=config.MARKET_DATA_TTL_HOURS)
    cleared = await db.clear_stale_market_data(threshold, limit)
    if cleared:
        logger.info("Cleared %d stale market snapshot(s)", cleared)
    return cleared


async def brand_stats(brand: str) -> dict:
    return await db.get_brand_cache_stats(brand.upper().strip())
