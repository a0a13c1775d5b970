"""
image_store.py — blob boundary.

An image reference is either
  • an http(s) URL   → downloaded with aiohttp
  • a file path      → read from disk (relative paths resolve under DATA_DIR)

Loaded bytes are normalised before any AI call: converted to RGB JPEG and
bounded to MAX_IMAGE_EDGE on the long side. If Pillow cannot decode the image
the raw bytes are passed through unchanged and the provider decides.
"""
from __future__ import annotations

import asyncio
import io
import logging
from pathlib import Path

import aiohttp
from PIL import Image, UnidentifiedImageError

import config
from errors import ImageLoadError

logger = logging.getLogger(__name__)


async def load_image(ref: str) -> bytes:
    """Return normalised JPEG bytes for `ref`. Raises ImageLoadError."""
    raw = await (_download(ref) if ref.startswith(("http://", "https://")) else _read_file(ref))
    if not raw:
        raise ImageLoadError(f"Image {ref} is empty")
    return normalise(raw)


async def _download(url: str) -> bytes:
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=config.SEARCH_TIMEOUT_S)
            ) as resp:
                if resp.status != 200:
                    raise ImageLoadError(f"Image {url} not found (HTTP {resp.status})")
                return await resp.read()
    except asyncio.TimeoutError as exc:
        raise ImageLoadError(f"Image download timed out: {url}") from exc
    except aiohttp.ClientError as exc:
        raise ImageLoadError(f"Image download failed: {exc}") from exc


async def _read_file(ref: str) -> bytes:
    path = Path(ref)
    if not path.is_absolute():
        path = Path(config.DATA_DIR) / path
    try:
        return await asyncio.to_thread(path.read_bytes)
    except FileNotFoundError as exc:
        raise ImageLoadError(f"Image {ref} not found") from exc
    except OSError as exc:
        raise ImageLoadError(f"Image {ref} could not be read: {exc}") from exc


def normalise(raw: bytes) -> bytes:
    """
    Convert to JPEG and shrink so the long edge is at most MAX_IMAGE_EDGE.
    RGBA/P/PNG images are flattened to RGB. Falls back to the raw bytes on
    any decode error.
    """
    try:
        img = Image.open(io.BytesIO(raw))
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.thumbnail((config.MAX_IMAGE_EDGE, config.MAX_IMAGE_EDGE))
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=config.JPEG_QUALITY)
        return buf.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Image normalisation failed, sending raw bytes: %s", exc)
        return raw
