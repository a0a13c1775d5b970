"""
market_search.py — public interface for listing search.

The research engine imports only from here:
  from market_search import search_listings, get_backends

Backends are built once from key_store (DB → .env fallback):

  serpapi_api_key set  →  SerpAPI Google (active listings)
                           + SerpAPI eBay (sold listings)

One query fans out to every backend. A query fails (ProviderUnavailable)
only when every backend fails for it; a partial answer is still an answer.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from errors import ProviderUnavailable
from search_backends.base import Listing, SearchBackend

logger = logging.getLogger(__name__)

__all__ = ["Listing", "search_listings", "get_backends", "backend_names", "reset"]

# Built once per process, reset() drops it when a key changes
_backends: Optional[list[SearchBackend]] = None


def reset() -> None:
    global _backends
    _backends = None


async def get_backends() -> list[SearchBackend]:
    """Return the active backends, initialising them once on first call."""
    global _backends
    if _backends is not None:
        return _backends
    _backends = await _build_backends()
    logger.info("Search backends: %s", ", ".join(b.name for b in _backends))
    return _backends


async def backend_names() -> str:
    try:
        return " + ".join(b.name for b in await get_backends())
    except ProviderUnavailable:
        return "not configured"


async def _build_backends() -> list[SearchBackend]:
    import key_store

    serpapi_key = await key_store.get("serpapi_api_key")
    if not serpapi_key:
        raise ProviderUnavailable(
            "No search backend configured: set SERPAPI_API_KEY (or store serpapi_api_key in the DB)."
        )

    from search_backends.ebay_sold_backend import EbaySoldBackend
    from search_backends.serpapi_backend import SerpApiBackend
    return [SerpApiBackend(api_key=serpapi_key), EbaySoldBackend(api_key=serpapi_key)]


async def search_listings(query: str, max_results: int = 20) -> list[Listing]:
    """
    Run `query` on every backend concurrently and return the combined
    listings, de-duplicated by URL.

    Raises ProviderUnavailable if no backend answered.
    """
    backends = await get_backends()

    async def _safe_run(backend: SearchBackend) -> Optional[list[Listing]]:
        try:
            return await backend.search(query, max_results)
        except ProviderUnavailable as exc:
            logger.warning("[%s] '%s' failed: %s", backend.name, query, exc)
            return None
        except Exception as exc:
            logger.error("[%s] '%s' failed unexpectedly: %s", backend.name, query, exc, exc_info=True)
            return None

    results = await asyncio.gather(*[_safe_run(b) for b in backends])
    answered = [r for r in results if r is not None]
    if not answered:
        raise ProviderUnavailable(f"All search backends failed for '{query}'")

    seen: dict[str, Listing] = {}
    for listings in answered:
        for listing in listings:
            seen.setdefault(listing.url, listing)
    return list(seen.values())
