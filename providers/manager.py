"""
Provider Manager — builds AI providers by short name and caches them.

Keys are read from key_store (DB → .env fallback) the first time a provider
is requested, so a key stored with `python main.py keys set` takes effect
after reset() or a restart.

Short names (as used by Strategy and config):
  openai     → OpenAIProvider(config.OPENAI_MODEL)       needs openai_api_key
  anthropic  → AnthropicProvider(config.ANTHROPIC_MODEL) needs anthropic_api_key
  google     → GeminiProvider(config.GOOGLE_MODEL)       needs google_api_key
"""
from __future__ import annotations

import logging

import config
from providers.base import VisionProvider

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ("openai", "anthropic", "google")

_KEY_FOR = {
    "openai":    "openai_api_key",
    "anthropic": "anthropic_api_key",
    "google":    "google_api_key",
}

# Module-level cache, reset() drops it when a key changes
_providers: dict[str, VisionProvider] = {}


def reset() -> None:
    _providers.clear()


async def _build_provider(name: str) -> VisionProvider:
    import key_store

    if name not in _KEY_FOR:
        raise ValueError(f"Unknown provider '{name}'. Available: {', '.join(PROVIDER_NAMES)}")

    api_key = await key_store.get(_KEY_FOR[name])
    if not api_key:
        raise RuntimeError(
            f"Provider '{name}' is not configured: "
            f"set {_KEY_FOR[name].upper()} (or store {_KEY_FOR[name]} in the DB)."
        )

    if name == "openai":
        from providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, config.OPENAI_MODEL)
    if name == "anthropic":
        from providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, config.ANTHROPIC_MODEL)
    from providers.gemini_provider import GeminiProvider
    return GeminiProvider(api_key, config.GOOGLE_MODEL)


async def get_provider(name: str) -> VisionProvider:
    """
    Return the provider for `name`, building it on first use.
    Raises RuntimeError if its API key is missing, ValueError for an unknown name.
    """
    if name not in _providers:
        provider = await _build_provider(name)
        _providers[name] = provider
        logger.info("Loaded provider: %s", provider.full_name)
    return _providers[name]


async def available_providers() -> list[str]:
    """Short names of providers whose API key is set."""
    import key_store
    return [name for name in PROVIDER_NAMES if await key_store.get(_KEY_FOR[name])]
