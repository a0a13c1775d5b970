"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  scans           — one row per item under analysis, carries status + stage outputs
  scan_images     — one row per photo, per-image analysis or error
  research_cache  — decoded style codes + optional market snapshot, by (brand, code)
  pipeline_runs   — append-only audit log, one row per stage invocation
  api_keys        — keys stored in the DB (override .env values, see key_store.py)

Stage outputs are stored as JSON text and converted to the typed records in
models.py on read. Every function opens its own connection; no operation
spans more than one table.

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

import config
from models import (
    DecodedStyle, ExtractedData, ImageAnalysisResult, ImageType,
    RefinedFindings, ResearchResults, ScanStatus,
)

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so a single volume mount
# (./data:/app/data) keeps it across container restarts.
_DATA_DIR = Path(config.DATA_DIR)
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "scans.db")
_lock = asyncio.Lock()          # serialise schema creation


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(obj) -> Optional[str]:
    return json.dumps(obj.to_dict()) if obj is not None else None


# ── Data models ───────────────────────────────────────────────────────────────

@dataclass
class Scan:
    id: str
    user_id: str
    status: ScanStatus
    created_at: datetime
    updated_at: datetime
    extracted_data: Optional[ExtractedData] = None
    research_results: Optional[ResearchResults] = None
    refined_findings: Optional[RefinedFindings] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None        # PipelineError.kind of the last failure


@dataclass
class ScanImage:
    id: int
    scan_id: str
    image_ref: str               # blob reference (path or URL), see image_store.py
    image_type: ImageType
    processed: bool
    analysis_result: Optional[ImageAnalysisResult] = None
    error: Optional[str] = None


@dataclass
class CacheEntry:
    brand: str                   # canonical, upper-case
    normalized_code: str
    decoded: Optional[DecodedStyle]
    market_snapshot: Optional[ResearchResults]
    market_updated_at: Optional[datetime]
    hit_count: int
    last_hit_at: Optional[datetime]
    created_at: datetime


@dataclass
class PipelineRun:
    id: int
    scan_id: str
    stage: str
    provider: str
    duration_ms: int
    success: bool
    error_message: Optional[str]
    created_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    details: dict = field(default_factory=dict)


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scans (
    id               TEXT PRIMARY KEY,
    user_id          TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'uploaded',
    extracted_data   TEXT,
    research_results TEXT,
    refined_findings TEXT,
    error_message    TEXT,
    error_kind       TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scans_user   ON scans (user_id);
CREATE INDEX IF NOT EXISTS idx_scans_status ON scans (status);

CREATE TABLE IF NOT EXISTS scan_images (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id         TEXT    NOT NULL,
    image_ref       TEXT    NOT NULL,
    image_type      TEXT    NOT NULL DEFAULT 'unknown',
    analysis_result TEXT,
    processed       INTEGER NOT NULL DEFAULT 0,
    error           TEXT,
    created_at      TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scan_images_scan ON scan_images (scan_id);

CREATE TABLE IF NOT EXISTS research_cache (
    brand             TEXT NOT NULL,
    normalized_code   TEXT NOT NULL,
    decoded           TEXT,
    market_snapshot   TEXT,
    market_updated_at TEXT,
    hit_count         INTEGER NOT NULL DEFAULT 0,
    last_hit_at       TEXT,
    created_at        TEXT NOT NULL,
    PRIMARY KEY (brand, normalized_code)
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id       TEXT    NOT NULL,
    stage         TEXT    NOT NULL,
    provider      TEXT    NOT NULL DEFAULT 'unknown',
    duration_ms   INTEGER NOT NULL DEFAULT 0,
    success       INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    input_tokens  INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_usd      REAL    NOT NULL DEFAULT 0,
    details       TEXT    NOT NULL DEFAULT '{}',
    created_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_scan ON pipeline_runs (scan_id);

-- API keys stored in the DB (override .env values)
CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_by TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);
"""

_MIGRATIONS = [
    # scans created before failure kinds were recorded
    "ALTER TABLE scans ADD COLUMN error_kind TEXT",
]


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            # Additive migrations; SQLite raises if the column already exists
            for sql in _MIGRATIONS:
                try:
                    await db.execute(sql)
                except aiosqlite.OperationalError as exc:
                    logger.debug("Migration skipped (%s): %s", exc, sql)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Scans ─────────────────────────────────────────────────────────────────────

def _row_to_scan(r) -> Scan:
    return Scan(
        id=r["id"],
        user_id=r["user_id"],
        status=ScanStatus(r["status"]),
        created_at=datetime.fromisoformat(r["created_at"]),
        updated_at=datetime.fromisoformat(r["updated_at"]),
        extracted_data=(
            ExtractedData.from_dict(json.loads(r["extracted_data"])) if r["extracted_data"] else None
        ),
        research_results=(
            ResearchResults.from_dict(json.loads(r["research_results"])) if r["research_results"] else None
        ),
        refined_findings=(
            RefinedFindings.from_dict(json.loads(r["refined_findings"])) if r["refined_findings"] else None
        ),
        error_message=r["error_message"],
        error_kind=r["error_kind"],
    )


async def create_scan(user_id: str) -> str:
    """Insert a new scan in status 'uploaded'. Returns its id."""
    scan_id = uuid.uuid4().hex
    now = _now()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO scans (id, user_id, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (scan_id, user_id, ScanStatus.UPLOADED.value, now, now),
        )
        await db.commit()
    return scan_id


async def get_scan(scan_id: str) -> Optional[Scan]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM scans WHERE id = ?", (scan_id,)) as cur:
            row = await cur.fetchone()
    return _row_to_scan(row) if row else None


async def get_scans_by_status(status: ScanStatus, limit: int = 100) -> list[Scan]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM scans WHERE status = ? ORDER BY created_at LIMIT ?",
            (status.value, limit),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_scan(r) for r in rows]


async def compare_and_set_status(
    scan_id: str,
    expected: ScanStatus,
    new: ScanStatus,
    error_message: Optional[str] = None,
    error_kind: Optional[str] = None,
) -> bool:
    """
    Atomically move a scan from `expected` to `new`.
    Returns False (and writes nothing) if the scan is not in `expected`.
    error_message and error_kind are cleared when leaving 'failed' and set
    when entering it.
    """
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            """UPDATE scans SET status = ?, error_message = ?, error_kind = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (new.value, error_message, error_kind, _now(), scan_id, expected.value),
        )
        await db.commit()
        return cursor.rowcount > 0


async def _save_output(scan_id: str, column: str, payload: Optional[str]) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            f"UPDATE scans SET {column} = ?, updated_at = ? WHERE id = ?",
            (payload, _now(), scan_id),
        )
        await db.commit()


async def save_extracted_data(scan_id: str, data: ExtractedData) -> None:
    await _save_output(scan_id, "extracted_data", _dumps(data))


async def save_research_results(scan_id: str, results: ResearchResults) -> None:
    await _save_output(scan_id, "research_results", _dumps(results))


async def save_refined_findings(scan_id: str, findings: RefinedFindings) -> None:
    await _save_output(scan_id, "refined_findings", _dumps(findings))


# ── Scan images ───────────────────────────────────────────────────────────────

def _row_to_image(r) -> ScanImage:
    return ScanImage(
        id=r["id"],
        scan_id=r["scan_id"],
        image_ref=r["image_ref"],
        image_type=ImageType.parse(r["image_type"]),
        processed=bool(r["processed"]),
        analysis_result=(
            ImageAnalysisResult.from_dict(json.loads(r["analysis_result"]))
            if r["analysis_result"] else None
        ),
        error=r["error"],
    )


async def add_scan_image(scan_id: str, image_ref: str) -> int:
    """Register one uploaded photo for a scan. Returns the image id."""
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            "INSERT INTO scan_images (scan_id, image_ref, created_at) VALUES (?, ?, ?)",
            (scan_id, image_ref, _now()),
        )
        await db.commit()
        return cursor.lastrowid


async def get_scan_images(scan_id: str) -> list[ScanImage]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM scan_images WHERE scan_id = ? ORDER BY id", (scan_id,)
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_image(r) for r in rows]


async def record_image_analysis(image_id: int, result: ImageAnalysisResult) -> None:
    """Store a successful analysis and mark the image processed."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE scan_images
               SET image_type = ?, analysis_result = ?, processed = 1, error = NULL
               WHERE id = ?""",
            (result.image_type.value, _dumps(result), image_id),
        )
        await db.commit()


async def mark_image_failed(image_id: int, error: str) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "UPDATE scan_images SET processed = 0, error = ? WHERE id = ?",
            (error[:500], image_id),
        )
        await db.commit()


# ── Research cache ────────────────────────────────────────────────────────────

def _row_to_cache_entry(r) -> CacheEntry:
    return CacheEntry(
        brand=r["brand"],
        normalized_code=r["normalized_code"],
        decoded=DecodedStyle.from_dict(json.loads(r["decoded"])) if r["decoded"] else None,
        market_snapshot=(
            ResearchResults.from_dict(json.loads(r["market_snapshot"])) if r["market_snapshot"] else None
        ),
        market_updated_at=(
            datetime.fromisoformat(r["market_updated_at"]) if r["market_updated_at"] else None
        ),
        hit_count=r["hit_count"],
        last_hit_at=datetime.fromisoformat(r["last_hit_at"]) if r["last_hit_at"] else None,
        created_at=datetime.fromisoformat(r["created_at"]),
    )


async def get_cache_entry(brand: str, normalized_code: str) -> Optional[CacheEntry]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM research_cache WHERE brand = ? AND normalized_code = ?",
            (brand, normalized_code),
        ) as cur:
            row = await cur.fetchone()
    return _row_to_cache_entry(row) if row else None


async def insert_cache_entry(brand: str, normalized_code: str, decoded: DecodedStyle) -> bool:
    """
    Create an entry with decoded metadata. Decoded fields are write-once:
    if another run inserted the same key first, this is a no-op.
    Returns True if a row was inserted.
    """
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            """INSERT INTO research_cache (brand, normalized_code, decoded, hit_count, created_at)
               VALUES (?, ?, ?, 0, ?)
               ON CONFLICT(brand, normalized_code) DO NOTHING""",
            (brand, normalized_code, _dumps(decoded), _now()),
        )
        await db.commit()
        return cursor.rowcount > 0


async def record_cache_hit(brand: str, normalized_code: str) -> None:
    """Increment the hit counter in SQL so concurrent hits never lose an update."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE research_cache SET hit_count = hit_count + 1, last_hit_at = ?
               WHERE brand = ? AND normalized_code = ?""",
            (_now(), brand, normalized_code),
        )
        await db.commit()


async def save_market_snapshot(brand: str, normalized_code: str, snapshot: ResearchResults) -> None:
    """Last write wins."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """UPDATE research_cache SET market_snapshot = ?, market_updated_at = ?
               WHERE brand = ? AND normalized_code = ?""",
            (_dumps(snapshot), _now(), brand, normalized_code),
        )
        await db.commit()


async def clear_stale_market_data(older_than: datetime, limit: int = 100) -> int:
    """Drop market snapshots last written before `older_than`. Decoded data is kept."""
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            """UPDATE research_cache SET market_snapshot = NULL, market_updated_at = NULL
               WHERE rowid IN (
                   SELECT rowid FROM research_cache
                   WHERE market_updated_at IS NOT NULL AND market_updated_at < ?
                   LIMIT ?
               )""",
            (older_than.isoformat(), limit),
        )
        await db.commit()
        return cursor.rowcount


async def get_brand_cache_stats(brand: str) -> dict:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT COUNT(*), COALESCE(SUM(hit_count), 0),
                      SUM(CASE WHEN market_snapshot IS NOT NULL THEN 1 ELSE 0 END)
               FROM research_cache WHERE brand = ?""",
            (brand,),
        ) as cur:
            total, hits, with_market = await cur.fetchone()
    return {
        "brand": brand,
        "total_entries": total,
        "total_hits": hits,
        "entries_with_market_data": with_market or 0,
    }


# ── Pipeline runs (audit) ─────────────────────────────────────────────────────

async def log_pipeline_run(
    scan_id: str,
    stage: str,
    provider: str,
    duration_ms: int,
    success: bool,
    error_message: Optional[str] = None,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost_usd: float = 0.0,
    details: Optional[dict] = None,
) -> None:
    """Append one audit row. Never read by the pipeline itself."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO pipeline_runs
               (scan_id, stage, provider, duration_ms, success, error_message,
                input_tokens, output_tokens, cost_usd, details, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (scan_id, stage, provider, duration_ms, 1 if success else 0,
             error_message[:500] if error_message else None,
             input_tokens, output_tokens, cost_usd, json.dumps(details or {}), _now()),
        )
        await db.commit()


async def get_pipeline_runs(scan_id: str) -> list[PipelineRun]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM pipeline_runs WHERE scan_id = ? ORDER BY id", (scan_id,)
        ) as cur:
            rows = await cur.fetchall()
    return [
        PipelineRun(
            id=r["id"],
            scan_id=r["scan_id"],
            stage=r["stage"],
            provider=r["provider"],
            duration_ms=r["duration_ms"],
            success=bool(r["success"]),
            error_message=r["error_message"],
            created_at=datetime.fromisoformat(r["created_at"]),
            input_tokens=r["input_tokens"],
            output_tokens=r["output_tokens"],
            cost_usd=r["cost_usd"],
            details=json.loads(r["details"]),
        )
        for r in rows
    ]


# ── API key operations ────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    """Return DB-stored value for key_name, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str, updated_by: str = "") -> None:
    """Insert or replace an API key in the DB."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_by, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                 key_value=excluded.key_value,
                 updated_by=excluded.updated_by,
                 updated_at=excluded.updated_at""",
            (key_name, key_value, updated_by, _now()),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    """Remove a key from DB (falls back to .env value)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()
