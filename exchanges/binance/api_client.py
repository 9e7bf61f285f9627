"""
Binance REST API Client

This module provides an async HTTP client for the Binance Futures (USD-M)
public REST API. It handles:
- HTTP requests with retry logic
- Rate limit handling (429, 418, 503 errors)
- Error classification (transient vs permanent)
- Normalization of tickers and depth snapshots to our schemas

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Endpoints Used:
    - GET /fapi/v1/ping              - Connectivity test
    - GET /fapi/v1/ticker/24hr       - Last price, high, low, volume
    - GET /fapi/v1/ticker/bookTicker - Best bid / best ask
    - GET /fapi/v1/depth             - Orderbook snapshot

Usage:
    async with BinanceAPIClient() as client:
        ticker = await client.get_ticker(Instrument.parse("BTC-USDT"))
        book = await client.get_depth(Instrument.parse("BTC-USDT"), limit=100)
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import PermanentError, TransientError
from core.logging import get_logger, log_api_request
from core.schemas import AssetClass, Instrument, Orderbook, OrderbookLevel, Ticker
from core.utils.time import current_utc_datetime, to_utc_datetime

VENUE = "binance"

# Depth limits accepted by /fapi/v1/depth
DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000)


def parse_levels(raw: List[List[str]]) -> List[OrderbookLevel]:
    """
    Convert Binance [price, qty] string pairs into orderbook levels.

    Example:
        >>> parse_levels([["100.5", "2"], ["100.4", "0"]])
        [OrderbookLevel(price=100.5, amount=2.0, ...), OrderbookLevel(price=100.4, amount=0.0, ...)]
    """
    return [OrderbookLevel(price=float(price), amount=float(qty)) for price, qty, *_ in raw]


class BinanceAPIClient:
    """
    Async HTTP client for Binance Futures REST API

    All methods return normalized data using our Pydantic schemas.

    Attributes:
        base_url: Binance Futures API base URL
        timeout: Per-request timeout in seconds
        max_attempts: Attempts per request before giving up
        retry_delay: Base delay between attempts (multiplied by attempt number)
        session: aiohttp ClientSession for HTTP requests

    Example:
        >>> async with BinanceAPIClient() as client:
        ...     ticker = await client.get_ticker(Instrument.parse("BTC-USDT"))
        ...     print(f"Last: {ticker.last}")

    Notes:
        - Uses context manager for automatic session cleanup
        - 429/418/503 and timeouts are retried, other HTTP errors are not
        - No API key needed for public endpoints
    """

    BASE_URL = "https://fapi.binance.com"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delay: float = 1.5,
        api_key: Optional[str] = None,
    ):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.api_key = api_key
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        self.logger.debug("BinanceAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug("BinanceAPIClient session closed")
        self.session = None

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make GET request to Binance API with retry logic.

        Args:
            path: API endpoint path (e.g., "/fapi/v1/depth")
            params: Optional query parameters

        Returns:
            JSON response from API

        Raises:
            RuntimeError: If the session was never opened
            PermanentError: On a non-retryable HTTP error (4xx other than 418/429)
            TransientError: If every attempt was rate limited, timed out or failed to connect

        Rate Limit Handling:
            - 429: Too many requests
            - 418: IP banned (temporary)
            - 503: Service unavailable

            Retry delay: retry_delay * (attempt + 1)
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        log_api_request(VENUE, path, params)
        last_error = "no attempts made"

        for attempt in range(self.max_attempts):
            delay = self.retry_delay * (attempt + 1)
            try:
                async with self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        self.logger.debug(f"GET {path} - Success (attempt {attempt + 1})")
                        return data

                    if resp.status in (429, 418, 503):
                        last_error = f"HTTP {resp.status}"
                        self.logger.warning(
                            f"Rate limited (HTTP {resp.status}) on {path}. "
                            f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.max_attempts})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    text = await resp.text()
                    self.logger.error(f"HTTP {resp.status} on {path}: {text}")
                    if resp.status >= 500:
                        raise TransientError(f"HTTP {resp.status} on {path}: {text}")
                    raise PermanentError(f"HTTP {resp.status} on {path}", text)

            except asyncio.TimeoutError:
                last_error = "timeout"
                self.logger.error(f"Timeout on {path} (attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(delay)

            except aiohttp.ClientConnectionError as e:
                last_error = str(e)
                self.logger.error(f"Request failed on {path}: {e} (attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(delay)

        raise TransientError(f"Failed to fetch {url} after {self.max_attempts} attempts ({last_error})")

    # ============================================
    # API Methods
    # ============================================

    async def ping(self) -> bool:
        """
        Test connectivity to the REST API.

        Binance Endpoint:
            GET /fapi/v1/ping  -> {}
        """
        await self._get("/fapi/v1/ping")
        return True

    async def get_ticker(self, instrument: Instrument) -> Ticker:
        """
        Fetch a ticker for one perpetual contract.

        The 24hr statistics and the book ticker are fetched concurrently and
        merged: last/high/low/volume from the former, bid/ask from the latter.

        Binance Endpoints:
            GET /fapi/v1/ticker/24hr?symbol={symbol}
            GET /fapi/v1/ticker/bookTicker?symbol={symbol}

        Response Format (24hr):
            {
              "symbol": "BTCUSDT",
              "lastPrice": "43250.10",
              "highPrice": "44000.00",
              "lowPrice": "42000.00",
              "volume": "120345.123",
              "closeTime": 1704110400000
            }

        Response Format (bookTicker):
            {
              "symbol": "BTCUSDT",
              "bidPrice": "43250.00",
              "bidQty": "3.1",
              "askPrice": "43250.20",
              "askQty": "1.4",
              "time": 1704110400000
            }

        Example:
            >>> ticker = await client.get_ticker(Instrument.parse("BTC-USDT"))
            >>> ticker.bid <= ticker.ask
            True
        """
        params = {"symbol": instrument.symbol}
        stats, book = await asyncio.gather(
            self._get("/fapi/v1/ticker/24hr", params),
            self._get("/fapi/v1/ticker/bookTicker", params),
        )

        close_time = stats.get("closeTime") or book.get("time")
        ticker = Ticker(
            venue=VENUE,
            instrument=instrument,
            asset_class=AssetClass.PERPETUAL_SWAP,
            last=float(stats.get("lastPrice", 0)),
            high=float(stats.get("highPrice", 0)),
            low=float(stats.get("lowPrice", 0)),
            volume=float(stats.get("volume", 0)),
            bid=float(book.get("bidPrice", 0)),
            ask=float(book.get("askPrice", 0)),
            last_updated=to_utc_datetime(close_time) if close_time else current_utc_datetime(),
        )
        self.logger.debug(f"Ticker for {instrument}: last={ticker.last} bid={ticker.bid} ask={ticker.ask}")
        return ticker

    async def get_depth(self, instrument: Instrument, limit: int = 100) -> Orderbook:
        """
        Fetch an orderbook snapshot.

        Args:
            instrument: Contract to fetch
            limit: Depth per side, rounded up to the nearest accepted value

        Binance Endpoint:
            GET /fapi/v1/depth?symbol={symbol}&limit={limit}

        Response Format:
            {
              "lastUpdateId": 1027024,
              "E": 1589436922972,
              "T": 1589436922959,
              "bids": [["4.00000000", "431.00000000"]],
              "asks": [["4.00000200", "12.00000000"]]
            }

        Notes:
            - Zero-quantity levels are dropped; they only mean something in a diff
            - lastUpdateId is returned as the book sequence; the depth stream
              is synced against it
        """
        accepted = next((d for d in DEPTH_LIMITS if d >= limit), DEPTH_LIMITS[-1])
        data = await self._get("/fapi/v1/depth", {"symbol": instrument.symbol, "limit": accepted})

        event_time = data.get("E") or data.get("T")
        bids = [lvl for lvl in parse_levels(data.get("bids", [])) if lvl.amount > 0]
        asks = [lvl for lvl in parse_levels(data.get("asks", [])) if lvl.amount > 0]
        book = Orderbook(
            venue=VENUE,
            instrument=instrument,
            asset_class=AssetClass.PERPETUAL_SWAP,
            bids=sorted(bids, key=lambda level: level.price, reverse=True),
            asks=sorted(asks, key=lambda level: level.price),
            last_updated=to_utc_datetime(event_time) if event_time else current_utc_datetime(),
            sequence=data.get("lastUpdateId"),
        )
        self.logger.debug(
            f"Depth for {instrument}: {len(book.bids)} bids / {len(book.asks)} asks "
            f"(lastUpdateId={book.sequence})"
        )
        return book
