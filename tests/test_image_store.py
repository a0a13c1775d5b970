"""
Tests for image_store.py.

Covers:
  - normalise(): RGBA PNG → RGB JPEG, long edge bounded, undecodable bytes passed through
  - load_image(): relative paths under DATA_DIR, missing/empty files, HTTP 200 / 404
"""
from __future__ import annotations

import io
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

import config
from errors import ImageLoadError
from image_store import load_image, normalise


def _png(size=(400, 200), mode="RGBA") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def _mock_session(status: int = 200, body: bytes = b"") -> MagicMock:
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.read   = AsyncMock(return_value=body)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__  = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__  = AsyncMock(return_value=False)
    mock_session.get        = MagicMock(return_value=mock_resp)
    return mock_session


class TestNormalise:
    def test_rgba_png_becomes_jpeg(self):
        out = normalise(_png())
        img = Image.open(io.BytesIO(out))
        assert img.format == "JPEG"
        assert img.mode == "RGB"
        assert img.size == (400, 200)

    def test_long_edge_bounded(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_IMAGE_EDGE", 100)
        img = Image.open(io.BytesIO(normalise(_png(mode="RGB"))))
        assert max(img.size) == 100
        assert img.size == (100, 50)

    def test_garbage_passed_through(self):
        assert normalise(b"not an image") == b"not an image"


@pytest.mark.asyncio
class TestLoadImage:
    async def test_relative_path_under_data_dir(self, tmp_data_dir):
        (tmp_data_dir / "scans").mkdir()
        (tmp_data_dir / "scans" / "tag.png").write_bytes(_png())
        out = await load_image("scans/tag.png")
        assert Image.open(io.BytesIO(out)).format == "JPEG"

    async def test_absolute_path(self, tmp_path):
        path = tmp_path / "garment.png"
        path.write_bytes(_png(mode="RGB"))
        assert Image.open(io.BytesIO(await load_image(str(path)))).format == "JPEG"

    async def test_missing_file(self):
        with pytest.raises(ImageLoadError, match="not found"):
            await load_image("nope.jpg")

    async def test_empty_file(self, tmp_data_dir):
        (tmp_data_dir / "empty.jpg").write_bytes(b"")
        with pytest.raises(ImageLoadError, match="empty"):
            await load_image("empty.jpg")

    async def test_http_download(self):
        session = _mock_session(body=_png())
        with patch("image_store.aiohttp.ClientSession", return_value=session):
            out = await load_image("https://cdn.example.com/tag.png")
        assert Image.open(io.BytesIO(out)).format == "JPEG"
        assert session.get.call_args.args[0] == "https://cdn.example.com/tag.png"

    async def test_http_not_found(self):
        with patch("image_store.aiohttp.ClientSession", return_value=_mock_session(status=404)):
            with pytest.raises(ImageLoadError, match="HTTP 404"):
                await load_image("https://cdn.example.com/missing.jpg")
