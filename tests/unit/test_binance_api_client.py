"""
Unit Tests for Binance API Client

These tests verify that the BinanceAPIClient:
- Correctly formats API requests
- Normalizes Binance responses to our schemas
- Handles errors and retries appropriately
- Works with mocked HTTP responses

Run with:
    pytest tests/unit/test_binance_api_client.py -v
"""

from datetime import datetime, timezone

import aiohttp
import pytest
import pytest_asyncio

from core.errors import PermanentError, TransientError
from core.schemas import AssetClass, Instrument, Orderbook, Ticker
from exchanges.binance.api_client import BinanceAPIClient, parse_levels

BTC = Instrument.parse("BTC-USDT")


class MockResponse:
    def __init__(self, status, json_data=None, text="error"):
        self.status = status
        self._json_data = json_data
        self._text = text

    async def json(self):
        return self._json_data

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def api_client(monkeypatch):
    """Create a BinanceAPIClient instance with retry sleeps disabled"""
    async def no_sleep(delay):
        return None

    monkeypatch.setattr("exchanges.binance.api_client.asyncio.sleep", no_sleep)
    async with BinanceAPIClient() as client:
        yield client


# ============================================
# Tests for Ticker Data
# ============================================

class TestGetTicker:
    """Tests for get_ticker method"""

    @pytest.mark.asyncio
    async def test_get_ticker_merges_stats_and_book(self, api_client, monkeypatch):
        """Verify get_ticker combines 24hr stats and the book ticker"""
        responses = {
            "/fapi/v1/ticker/24hr": {
                "symbol": "BTCUSDT",
                "lastPrice": "43250.10",
                "highPrice": "44000.00",
                "lowPrice": "42000.00",
                "volume": "120345.123",
                "closeTime": 1704110400000,
            },
            "/fapi/v1/ticker/bookTicker": {
                "symbol": "BTCUSDT",
                "bidPrice": "43250.00",
                "askPrice": "43250.20",
                "time": 1704110399000,
            },
        }
        requested = []

        async def mock_get(path, params=None):
            requested.append((path, params))
            return responses[path]

        monkeypatch.setattr(api_client, "_get", mock_get)

        ticker = await api_client.get_ticker(BTC)

        assert isinstance(ticker, Ticker)
        assert ticker.venue == "binance"
        assert ticker.asset_class == AssetClass.PERPETUAL_SWAP
        assert ticker.last == 43250.10
        assert (ticker.bid, ticker.ask) == (43250.0, 43250.2)
        assert ticker.high == 44000.0
        assert ticker.volume == 120345.123
        assert ticker.last_updated == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert all(params == {"symbol": "BTCUSDT"} for _, params in requested)


# ============================================
# Tests for Depth Data
# ============================================

class TestGetDepth:
    """Tests for get_depth method"""

    @pytest.mark.asyncio
    async def test_get_depth_returns_sorted_book(self, api_client, monkeypatch):
        """Verify levels are parsed, zero amounts dropped and sides sorted"""
        async def mock_get(path, params=None):
            return {
                "lastUpdateId": 1027024,
                "E": 1704110400000,
                "bids": [["99.0", "1.5"], ["100.0", "2"], ["98.0", "0"]],
                "asks": [["102.0", "1"], ["101.0", "3"]],
            }

        monkeypatch.setattr(api_client, "_get", mock_get)

        book = await api_client.get_depth(BTC)

        assert isinstance(book, Orderbook)
        assert [lvl.price for lvl in book.bids] == [100.0, 99.0]
        assert [lvl.price for lvl in book.asks] == [101.0, 102.0]
        assert book.bids[0].amount == 2.0
        assert book.sequence == 1027024

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested,sent", [(1, 5), (100, 100), (150, 500), (5000, 1000)])
    async def test_get_depth_rounds_limit(self, api_client, monkeypatch, requested, sent):
        """Verify the limit is rounded up to a value Binance accepts"""
        captured = {}

        async def mock_get(path, params=None):
            captured.update(params)
            return {"bids": [], "asks": []}

        monkeypatch.setattr(api_client, "_get", mock_get)

        await api_client.get_depth(BTC, limit=requested)
        assert captured["limit"] == sent

    def test_parse_levels(self):
        """Verify string pairs become levels"""
        levels = parse_levels([["100.5", "2"], ["100.4", "0"]])
        assert [(lvl.price, lvl.amount) for lvl in levels] == [(100.5, 2.0), (100.4, 0.0)]


# ============================================
# Tests for Context Manager
# ============================================

class TestContextManager:
    """Tests for async context manager functionality"""

    @pytest.mark.asyncio
    async def test_context_manager_creates_session(self):
        """Verify context manager creates and releases the aiohttp session"""
        client = BinanceAPIClient()
        assert client.session is None

        async with client as c:
            assert c.session is not None

        assert client.session is None

    @pytest.mark.asyncio
    async def test_context_manager_raises_if_not_used(self):
        """Verify _get raises error if session not initialized"""
        client = BinanceAPIClient()

        with pytest.raises(RuntimeError, match="not initialized"):
            await client._get("/test")


# ============================================
# Tests for Error Handling
# ============================================

class TestErrorHandling:
    """Tests for error handling and retry logic"""

    @pytest.mark.asyncio
    async def test_get_retries_on_rate_limit(self, api_client):
        """Verify _get retries on rate limit (429)"""
        call_count = 0

        def mock_get(url, params=None, headers=None, timeout=None):
            nonlocal call_count
            call_count += 1

            # Return rate limit error on first 2 calls, success on 3rd
            if call_count < 3:
                return MockResponse(429)
            return MockResponse(200, {"success": True})

        api_client.session.get = mock_get

        result = await api_client._get("/test")

        assert call_count == 3
        assert result == {"success": True}

    @pytest.mark.asyncio
    async def test_get_fails_after_max_retries(self, api_client):
        """Verify _get raises TransientError after max retries"""
        def mock_get(url, params=None, headers=None, timeout=None):
            return MockResponse(429)

        api_client.session.get = mock_get

        with pytest.raises(TransientError, match="Failed to fetch"):
            await api_client._get("/test")

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, api_client):
        """Verify a 4xx response is raised at once with the venue message"""
        call_count = 0

        def mock_get(url, params=None, headers=None, timeout=None):
            nonlocal call_count
            call_count += 1
            return MockResponse(400, text='{"code":-1121,"msg":"Invalid symbol."}')

        api_client.session.get = mock_get

        with pytest.raises(PermanentError, match="Invalid symbol"):
            await api_client._get("/fapi/v1/depth")
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, api_client):
        """Verify a 5xx response other than 503 is raised as transient"""
        def mock_get(url, params=None, headers=None, timeout=None):
            return MockResponse(500)

        api_client.session.get = mock_get

        with pytest.raises(TransientError, match="HTTP 500"):
            await api_client._get("/test")

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self, api_client):
        """Verify connection failures are retried"""
        call_count = 0

        def mock_get(url, params=None, headers=None, timeout=None):
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise aiohttp.ClientConnectionError("reset by peer")
            return MockResponse(200, {})

        api_client.session.get = mock_get

        assert await api_client._get("/fapi/v1/ping") == {}
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        """Verify the API key is sent when configured"""
        seen = {}

        def mock_get(url, params=None, headers=None, timeout=None):
            seen.update(headers)
            return MockResponse(200, {})

        async with BinanceAPIClient(api_key="k") as client:
            client.session.get = mock_get
            await client.ping()

        assert seen["X-MBX-APIKEY"] == "k"
