"""
Central configuration — reads from .env file.

API keys are not read here: they go through key_store.py (DB → .env fallback)
so that a key stored in the database takes effect on the next call.

Provider choices below are only the *defaults* used to build a Strategy when a
caller does not pass one explicitly (see models.Strategy).
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
# SQLite file and locally uploaded images live here
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# ── AI providers ──────────────────────────────────────────────────────────────
# One of: anthropic | openai | google
EXTRACTION_PROVIDER: str          = os.getenv("EXTRACTION_PROVIDER", "anthropic")
EXTRACTION_FALLBACK_PROVIDER: str = os.getenv("EXTRACTION_FALLBACK_PROVIDER", "openai")
# One of: anthropic | openai | google | stats
REFINEMENT_PROVIDER: str          = os.getenv("REFINEMENT_PROVIDER", "anthropic")

# Model used per provider name
OPENAI_MODEL: str    = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-20241022")
GOOGLE_MODEL: str    = os.getenv("GOOGLE_MODEL", "gemini-2.0-flash")

# ── Timeouts (seconds) ────────────────────────────────────────────────────────
ANALYSIS_TIMEOUT_S: float = float(os.getenv("ANALYSIS_TIMEOUT_S", "60"))
SEARCH_TIMEOUT_S: float   = float(os.getenv("SEARCH_TIMEOUT_S", "30"))

# ── Research policy ───────────────────────────────────────────────────────────
# Cached market snapshots older than this are re-queried (decoded data never expires)
MARKET_DATA_TTL_HOURS: float = float(os.getenv("MARKET_DATA_TTL_HOURS", "168"))
# Stop issuing queries once this many distinct listings have been collected
RESEARCH_MIN_LISTINGS: int   = int(os.getenv("RESEARCH_MIN_LISTINGS", "8"))
RESEARCH_MAX_QUERIES: int    = int(os.getenv("RESEARCH_MAX_QUERIES", "6"))

# ── Refinement policy ─────────────────────────────────────────────────────────
REFINEMENT_AI_ATTEMPTS: int  = int(os.getenv("REFINEMENT_AI_ATTEMPTS", "2"))
# Statistical fallback: samples below this size get the band applied on both sides
FALLBACK_SMALL_SAMPLE: int   = int(os.getenv("FALLBACK_SMALL_SAMPLE", "5"))
FALLBACK_BAND: float         = float(os.getenv("FALLBACK_BAND", "0.25"))

DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "USD")

# ── Image normalisation before AI calls ───────────────────────────────────────
MAX_IMAGE_EDGE: int = int(os.getenv("MAX_IMAGE_EDGE", "1568"))
JPEG_QUALITY: int   = int(os.getenv("JPEG_QUALITY", "85"))
