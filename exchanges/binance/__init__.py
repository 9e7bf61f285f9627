"""
Binance Exchange Connector

This module implements the ExchangeInterface for Binance Futures (USD-M)
perpetual contracts. It provides market data only: tickers and orderbooks
over REST, plus an optional websocket stream that pushes live best bid/ask
and depth diffs to the data handler the engine installs.

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Endpoints Used:
    REST:
        - GET /fapi/v1/ping
        - GET /fapi/v1/ticker/24hr + /fapi/v1/ticker/bookTicker
        - GET /fapi/v1/depth

    WebSocket:
        - wss://fstream.binance.com/ws
        - Best bid/ask: <symbol>@bookTicker
        - Depth diffs:  <symbol>@depth@100ms

Structure:
    exchanges/binance/
    ├── __init__.py          # This file (BinanceExchange class)
    ├── api_client.py        # REST API client with aiohttp
    └── ws_client.py         # WebSocket streaming client
"""

from typing import Any, Dict, Iterable, Optional, Set

from core.errors import UnknownInstrumentError, VenueHubError
from core.exchange_interface import (
    ExchangeInterface,
    OrderbookCapable,
    StreamingCapable,
    TickerCapable,
    parse_channel,
)
from core.logging import get_logger
from core.schemas import (
    AssetClass,
    Instrument,
    Orderbook,
    OrderbookUpdate,
    OrderbookUpdateKind,
    Ticker,
)
from core.utils.time import current_utc_datetime, to_utc_datetime
from .api_client import VENUE, BinanceAPIClient, parse_levels
from .ws_client import BinanceWebSocketClient, book_ticker_stream, depth_stream

logger = get_logger(__name__)


class BinanceExchange(ExchangeInterface, TickerCapable, OrderbookCapable, StreamingCapable):
    """
    Binance Futures Exchange Connector

    Attributes:
        name: Exchange identifier ("binance")
        capabilities: Supported features (market data and websocket only)
        client: REST client, created in initialize()
        ws: Websocket client, created in initialize() when websocket_enabled

    Example:
        >>> exchange = BinanceExchange()
        >>> exchange.setup({"name": "binance", "websocket_enabled": False})
        >>> await exchange.initialize()
        >>> ticker = await exchange.update_ticker(Instrument.parse("BTC-USDT"), AssetClass.PERPETUAL_SWAP)
        >>> await exchange.shutdown()

    Notes:
        - Timestamps are converted from milliseconds to UTC datetime
        - Depth diffs carry Binance's update ids; a gap triggers a fresh REST snapshot
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "binance"

    capabilities = {
        "ticker": True,
        "orderbook": True,
        "websocket": True,
        "account_info": False,
        "submit_order": False,
        "cancel_order": False,
        "cancel_all_orders": False,
        "get_order": False,
        "active_orders": False,
        "order_history": False,
        "deposit_address": False,
    }

    asset_classes = frozenset({AssetClass.PERPETUAL_SWAP})

    # ============================================
    # Initialization
    # ============================================

    def __init__(self):
        super().__init__()
        self.base_url = BinanceAPIClient.BASE_URL
        self.ws_url = BinanceWebSocketClient.BASE_URL
        self.http_timeout = 15.0
        self.websocket_enabled = False

        self.client: Optional[BinanceAPIClient] = None
        self.ws: Optional[BinanceWebSocketClient] = None

        self._tickers: Dict[Instrument, Ticker] = {}
        self._books: Dict[Instrument, Orderbook] = {}
        self._symbols: Dict[str, Instrument] = {}
        self._channels: Set[str] = set()
        # Final update id ("u") of the last depth diff per symbol
        self._last_update_id: Dict[str, int] = {}
        # lastUpdateId of the latest REST snapshot per symbol
        self._snapshot_id: Dict[str, Optional[int]] = {}

    def setup(self, config: Dict[str, Any]) -> None:
        super().setup(config)
        self.base_url = config.get("base_url") or BinanceAPIClient.BASE_URL
        self.ws_url = config.get("ws_url") or BinanceWebSocketClient.BASE_URL
        self.http_timeout = float(config.get("http_timeout", self.http_timeout))
        self.websocket_enabled = bool(config.get("websocket_enabled", False))

    async def initialize(self) -> None:
        logger.info("Initializing Binance exchange connector...")
        self.client = BinanceAPIClient(base_url=self.base_url, timeout=self.http_timeout)
        await self.client.__aenter__()

        if self.websocket_enabled:
            self.ws = BinanceWebSocketClient(on_message=self._handle_message, url=self.ws_url)
            self.ws.start()

        logger.info("✓ Binance exchange connector initialized")

    async def shutdown(self) -> None:
        logger.info("Shutting down Binance exchange connector...")
        if self.ws is not None:
            await self.ws.stop()
            self.ws = None
        if self.client is not None:
            await self.client.close()
            self.client = None
        logger.info("✓ Binance exchange connector shut down")

    async def health_check(self) -> bool:
        """Ping /fapi/v1/ping; False if unreachable."""
        if self.client is None:
            return False
        try:
            return await self.client.ping()
        except VenueHubError as e:
            logger.error(f"Binance health check failed: {e}")
            return False

    def _check(self, instrument: Instrument, asset_class: AssetClass) -> None:
        if self.client is None:
            raise RuntimeError("Binance connector not initialized")
        if not self.supports_asset_class(asset_class):
            raise UnknownInstrumentError(f"binance does not trade {asset_class.value}")
        self._symbols[instrument.symbol] = instrument

    # ============================================
    # REST Market Data
    # ============================================

    async def fetch_ticker(self, instrument: Instrument, asset_class: AssetClass) -> Ticker:
        cached = self._tickers.get(instrument)
        if cached is not None and asset_class == cached.asset_class:
            return cached
        return await self.update_ticker(instrument, asset_class)

    async def update_ticker(self, instrument: Instrument, asset_class: AssetClass) -> Ticker:
        self._check(instrument, asset_class)
        ticker = await self.client.get_ticker(instrument)
        self._tickers[instrument] = ticker
        return ticker

    async def fetch_orderbook(self, instrument: Instrument, asset_class: AssetClass) -> Orderbook:
        cached = self._books.get(instrument)
        if cached is not None and asset_class == cached.asset_class:
            return cached
        return await self.update_orderbook(instrument, asset_class)

    async def update_orderbook(self, instrument: Instrument, asset_class: AssetClass) -> Orderbook:
        self._check(instrument, asset_class)
        book = await self.client.get_depth(instrument)
        self._books[instrument] = book
        self._last_update_id.pop(instrument.symbol, None)
        self._snapshot_id[instrument.symbol] = book.sequence
        return book

    # ============================================
    # WebSocket Streaming
    # ============================================

    def is_websocket_enabled(self) -> bool:
        return self.websocket_enabled and self.ws is not None

    def _streams_for(self, channels: Iterable[str]) -> Set[str]:
        streams = set()
        for value in channels:
            kind, instrument = parse_channel(value)
            self._symbols[instrument.symbol] = instrument
            streams.add(book_ticker_stream(instrument.symbol) if kind == "ticker" else depth_stream(instrument.symbol))
        return streams

    async def subscribe(self, channels: Iterable[str]) -> None:
        """
        Subscribe to "ticker:<pair>" / "orderbook:<pair>" channels.

        An orderbook subscription seeds the book with a REST snapshot so the
        diffs that follow have something to merge into.
        """
        if self.ws is None:
            raise RuntimeError("Binance websocket is not enabled")
        channels = set(channels) - self._channels
        self._channels |= channels
        await self.ws.subscribe(self._streams_for(channels))

        for value in channels:
            kind, instrument = parse_channel(value)
            if kind == "orderbook":
                await self._resync_book(instrument)

    async def unsubscribe(self, channels: Iterable[str]) -> None:
        if self.ws is None:
            raise RuntimeError("Binance websocket is not enabled")
        channels = set(channels) & self._channels
        self._channels -= channels
        await self.ws.unsubscribe(self._streams_for(channels))

    async def flush_channels(self) -> None:
        if self.ws is None:
            return
        await self.ws.flush(self._streams_for(self._channels))

    async def _emit(self, value: Any) -> None:
        if self.data_handler is None:
            logger.debug(f"No data handler installed, dropping {type(value).__name__}")
            return
        try:
            await self.data_handler(value)
        except Exception as e:
            logger.error(f"Data handler failed for {type(value).__name__}: {e}")

    async def _resync_book(self, instrument: Instrument) -> None:
        try:
            book = await self.update_orderbook(instrument, AssetClass.PERPETUAL_SWAP)
        except Exception as e:
            logger.error(f"Binance snapshot for {instrument} failed: {e}")
            return
        await self._emit(book)

    async def _handle_message(self, msg: Dict[str, Any]) -> None:
        event = msg.get("e")
        if event == "bookTicker":
            await self._on_book_ticker(msg)
        elif event == "depthUpdate":
            await self._on_depth_update(msg)
        else:
            logger.warning(f"Unexpected message type: {event}")

    async def _on_book_ticker(self, msg: Dict[str, Any]) -> None:
        """
        Message Format:
            {
              "e": "bookTicker",
              "u": 400900217,
              "E": 1568014460893,
              "T": 1568014460891,
              "s": "BNBUSDT",
              "b": "25.35190000",
              "B": "31.21000000",
              "a": "25.36520000",
              "A": "40.66000000"
            }
        """
        instrument = self._symbols.get(msg.get("s", ""))
        if instrument is None:
            return
        timestamp = msg.get("T") or msg.get("E")
        changes = {
            "bid": float(msg.get("b", 0)),
            "ask": float(msg.get("a", 0)),
            "last_updated": to_utc_datetime(timestamp) if timestamp else current_utc_datetime(),
        }
        previous = self._tickers.get(instrument)
        if previous is not None:
            ticker = previous.model_copy(update=changes)
        else:
            ticker = Ticker(venue=VENUE, instrument=instrument, asset_class=AssetClass.PERPETUAL_SWAP, **changes)
        self._tickers[instrument] = ticker
        await self._emit(ticker)

    async def _on_depth_update(self, msg: Dict[str, Any]) -> None:
        """
        Message Format:
            {
              "e": "depthUpdate",
              "E": 123456789,
              "T": 123456788,
              "s": "BTCUSDT",
              "U": 157,
              "u": 160,
              "pu": 149,
              "b": [["0.0024", "10"]],
              "a": [["0.0026", "100"]]
            }

        "pu" must equal the previous event's "u"; otherwise updates were lost.
        Until the first diff after a snapshot is accepted, events ending
        before the snapshot's lastUpdateId are dropped and the first one kept
        must span it (U <= lastUpdateId <= u).
        """
        symbol = msg.get("s", "")
        instrument = self._symbols.get(symbol)
        if instrument is None:
            return

        previous = self._last_update_id.get(symbol)
        if previous is None:
            snapshot_id = self._snapshot_id.get(symbol)
            if snapshot_id is not None:
                first, final = msg.get("U", 0), msg.get("u", 0)
                if final < snapshot_id:
                    logger.debug(f"Dropping Binance depth event on {symbol} older than snapshot ({final} < {snapshot_id})")
                    return
                if first > snapshot_id:
                    logger.warning(
                        f"Binance depth on {symbol} starts after snapshot (U={first} > {snapshot_id}), resyncing"
                    )
                    await self._resync_book(instrument)
                    return
        elif msg.get("pu") != previous:
            logger.warning(f"Binance depth gap on {symbol} (pu={msg.get('pu')}, expected {previous}), resyncing")
            await self._resync_book(instrument)
            return
        self._last_update_id[symbol] = msg.get("u")

        timestamp = msg.get("E") or msg.get("T")
        await self._emit(OrderbookUpdate(
            venue=VENUE,
            instrument=instrument,
            asset_class=AssetClass.PERPETUAL_SWAP,
            kind=OrderbookUpdateKind.DIFF,
            bids=parse_levels(msg.get("b", [])),
            asks=parse_levels(msg.get("a", [])),
            last_updated=to_utc_datetime(timestamp) if timestamp else current_utc_datetime(),
        ))
