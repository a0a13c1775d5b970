"""
Tests for search_backends/ebay_sold_backend.py.

Covers:
  - _parse_item: dict price, string price, unusable rows
  - search(): sold-only params, every listing marked sold, HTTP error
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from errors import ProviderUnavailable
from search_backends.ebay_sold_backend import EbaySoldBackend, _parse_item


@pytest.fixture
def backend():
    return EbaySoldBackend(api_key="test_serpapi_key")


def _mock_session(status: int = 200, payload: dict | None = None, text: str = "") -> MagicMock:
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json   = AsyncMock(return_value=payload or {})
    mock_resp.text   = AsyncMock(return_value=text)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__  = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__  = AsyncMock(return_value=False)
    mock_session.get        = MagicMock(return_value=mock_resp)
    return mock_session


class TestParseItem:
    def test_dict_price(self):
        item = _parse_item({
            "title": "Patagonia Synchilla Snap-T Pullover",
            "price": {"raw": "$42.00", "extracted": 42.0},
            "link": "https://www.ebay.com/itm/111",
            "condition": "Pre-Owned",
            "sold_date": "Sold  Mar 3, 2025",
        })
        assert item.price == 42.0
        assert item.currency == "USD"
        assert item.sold is True
        assert item.platform == "eBay"
        assert item.sold_date == "Sold  Mar 3, 2025"

    def test_string_price(self):
        item = _parse_item({"title": "x", "price": "£18.50", "link": "https://www.ebay.co.uk/itm/2"})
        assert item.price == 18.5
        assert item.currency == "GBP"

    def test_unusable_rows(self):
        assert _parse_item("junk") is None
        assert _parse_item({"title": "no link", "price": {"extracted": 5}}) is None
        assert _parse_item({"title": "no price", "link": "https://www.ebay.com/itm/3"}) is None


@pytest.mark.asyncio
class TestSearch:
    async def test_sold_only_params(self, backend):
        payload = {"organic_results": [
            {"title": "A", "price": {"extracted": 30}, "link": "https://www.ebay.com/itm/1"},
            {"title": "B", "price": {"raw": "$25.00"}, "link": "https://www.ebay.com/itm/2"},
        ]}
        session = _mock_session(payload=payload)
        with patch("search_backends.ebay_sold_backend.aiohttp.ClientSession", return_value=session):
            listings = await backend.search("Patagonia 25455")
        params = session.get.call_args.kwargs["params"]
        assert params["engine"] == "ebay"
        assert params["LH_Sold"] == "1"
        assert params["_nkw"] == "Patagonia 25455"
        assert [item.price for item in listings] == [30.0, 25.0]
        assert all(item.sold for item in listings)

    async def test_http_error_raises(self, backend):
        with patch("search_backends.ebay_sold_backend.aiohttp.ClientSession",
                   return_value=_mock_session(status=503, text="unavailable")):
            with pytest.raises(ProviderUnavailable, match="503"):
                await backend.search("q")

    async def test_empty_results(self, backend):
        with patch("search_backends.ebay_sold_backend.aiohttp.ClientSession",
                   return_value=_mock_session(payload={})):
            assert await backend.search("q") == []

    async def test_invalid_json_raises(self, backend):
        session = _mock_session()
        session.get.return_value.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "", 0))
        with patch("search_backends.ebay_sold_backend.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="invalid JSON"):
                await backend.search("q")
