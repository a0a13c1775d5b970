"""
key_store.py — single source of truth for all API keys.

Priority order for every key:
  1. Database (set via `python main.py keys set ...`) — takes precedence
  2. Environment variable / .env file                 — fallback / bootstrap

This means:
  • You can start with keys in .env
  • Then migrate to DB-only by storing them with the CLI
  • Changing a key in the DB takes effect on the NEXT provider build
    (key_store always reads fresh from DB)

Key names (stored in DB as-is, env vars are the uppercase equivalent):
  openai_api_key     →  OPENAI_API_KEY
  anthropic_api_key  →  ANTHROPIC_API_KEY
  google_api_key     →  GOOGLE_API_KEY
  serpapi_api_key    →  SERPAPI_API_KEY
"""
from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

KEY_NAMES = (
    "openai_api_key",
    "anthropic_api_key",
    "google_api_key",
    "serpapi_api_key",
)

# Lazy import to avoid circular dependency at module load time
_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


async def get(key_name: str) -> Optional[str]:
    """
    Return the value for key_name, checking DB first then env.
    Returns None if not set anywhere.
    """
    try:
        db_val = await _get_db().get_api_key(key_name)
        if db_val:
            return db_val
    except Exception as exc:
        logger.warning("key_store: DB lookup failed for %s: %s", key_name, exc)

    env_val = os.getenv(key_name.upper())
    return env_val or None


async def set(key_name: str, value: str, updated_by: str = "cli") -> None:
    """Save a key to the DB (overrides .env for all future calls)."""
    if key_name not in KEY_NAMES:
        raise ValueError(f"Unknown key name: {key_name!r}")
    await _get_db().set_api_key(key_name, value, updated_by)


async def delete(key_name: str) -> None:
    """Remove a key from DB (will fall back to .env value if present)."""
    await _get_db().delete_api_key(key_name)


async def get_all_keys() -> dict[str, Optional[str]]:
    """Return all known keys with their current values."""
    return {name: await get(name) for name in KEY_NAMES}


def mask(value: Optional[str]) -> str:
    """Return a masked version safe to print."""
    if not value:
        return "not set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
