"""
Market-Data Registries

Three registries hold the latest normalized market state and fan changes out
through the dispatcher:

    TickerRegistry     one Ticker per (venue, asset class, instrument)
    OrderbookRegistry  one Orderbook per (venue, asset class, instrument)
    HoldingsRegistry   one Holdings per venue

Every registry publishes to a per-key topic and to a per-venue aggregate
topic. Topics are created on first subscription; a change is only published
when the merged state differs from the previous one and someone listens.

Writers on the same key are serialised by a per-key asyncio.Lock held for
the merge and the publish enqueue. Readers get a copy taken under the
registry's record lock.

Orderbook merge:
    - A snapshot replaces the book.
    - A diff merges level by level: amount 0 removes the price level,
      anything else replaces it.
    - A merge that leaves the best bid at or above the best ask is
      discarded, the book is marked stale and a fresh snapshot is requested
      from the adapter (if it has the `orderbook` capability). Diffs are
      ignored while the book is stale.

Example:
    tickers = TickerRegistry(dispatcher, exchange_manager)
    pipe = tickers.subscribe("binance", Instrument.parse("BTC-USDT"), AssetClass.PERPETUAL_SWAP)
    await tickers.process(ticker)
    latest = tickers.get("binance", Instrument.parse("BTC-USDT"), AssetClass.PERPETUAL_SWAP)
"""

import asyncio
import threading
import uuid
from typing import Dict, Generic, Hashable, List, Optional, Tuple, Type, TypeVar, Union

from core.errors import UnknownInstrumentError
from core.exchange_manager import ExchangeManager
from core.logging import get_logger
from core.schemas import (
    AssetClass,
    Holdings,
    Instrument,
    Orderbook,
    OrderbookLevel,
    OrderbookUpdate,
    OrderbookUpdateKind,
    Ticker,
)
from core.utils.time import current_utc_datetime
from services.dispatcher import Dispatcher, Pipe

logger = get_logger(__name__)

MarketKey = Tuple[str, AssetClass, Instrument]
RecordT = TypeVar("RecordT")


def market_key(venue: str, instrument: Instrument, asset_class: AssetClass) -> MarketKey:
    return (venue.lower(), AssetClass(asset_class), instrument)


class _TopicRegistry(Generic[RecordT]):
    """Shared storage, per-key locking and topic bookkeeping."""

    kind: Type = object

    def __init__(self, dispatcher: Dispatcher, exchanges: Optional[ExchangeManager] = None) -> None:
        self._dispatcher = dispatcher
        self._exchanges = exchanges
        self._lock = threading.RLock()
        self._records: Dict[Hashable, RecordT] = {}
        self._key_locks: Dict[Hashable, asyncio.Lock] = {}
        self._topics: Dict[Hashable, uuid.UUID] = {}
        self._venue_topics: Dict[str, uuid.UUID] = {}

    def _key_lock(self, key: Hashable) -> asyncio.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = asyncio.Lock()
            return lock

    def _topic(self, key: Hashable) -> uuid.UUID:
        with self._lock:
            topic = self._topics.get(key)
            if topic is None:
                topic = self._topics[key] = self._dispatcher.register_topic(self.kind)
            return topic

    def _venue_topic(self, venue: str) -> uuid.UUID:
        venue = venue.lower()
        with self._lock:
            topic = self._venue_topics.get(venue)
            if topic is None:
                topic = self._venue_topics[venue] = self._dispatcher.register_topic(self.kind)
            return topic

    async def _publish(self, key: Hashable, venue: str, record: RecordT) -> None:
        with self._lock:
            targets = [t for t in (self._topics.get(key), self._venue_topics.get(venue)) if t is not None]
        for topic in targets:
            if self._dispatcher.subscriber_count(topic):
                await self._dispatcher.publish(topic, record)

    def _check_asset_class(self, venue: str, asset_class: AssetClass) -> None:
        if self._exchanges is None:
            return
        exchange = self._exchanges.get(venue)
        if exchange is not None and not exchange.supports_asset_class(asset_class):
            raise UnknownInstrumentError(f"{venue} does not support asset class {asset_class.value}")

    def subscribe_venue(self, venue: str) -> Pipe:
        """Subscribe to every update of this registry for one venue."""
        return self._dispatcher.subscribe(self._venue_topic(venue))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ============================================
# Tickers
# ============================================

class TickerRegistry(_TopicRegistry[Ticker]):
    """
    Latest ticker per instrument.

    Updates older than the stored ticker are ignored; an update that only
    moves the timestamp is stored but not published.
    """

    kind = Ticker

    async def process(self, ticker: Ticker) -> bool:
        """
        Store a ticker and publish it if it changed.

        Returns:
            True if the update was published

        Raises:
            UnknownInstrumentError: If the venue does not trade that asset class
        """
        self._check_asset_class(ticker.venue, ticker.asset_class)
        key = market_key(ticker.venue, ticker.instrument, ticker.asset_class)

        async with self._key_lock(key):
            with self._lock:
                previous = self._records.get(key)
            if previous is not None and ticker.last_updated < previous.last_updated:
                logger.debug(f"Ignoring out-of-date ticker for {ticker.venue} {ticker.instrument}")
                return False

            stored = ticker.model_copy(deep=True)
            with self._lock:
                self._records[key] = stored
            if previous is not None and _same_prices(previous, ticker):
                return False
            await self._publish(key, ticker.venue, stored)
        return True

    def get(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> Ticker:
        """
        Raises:
            UnknownInstrumentError: If no ticker is stored for the key
        """
        with self._lock:
            ticker = self._records.get(market_key(venue, instrument, asset_class))
            if ticker is None:
                raise UnknownInstrumentError(f"no ticker for {venue} {instrument} {asset_class.value}")
            return ticker.model_copy(deep=True)

    def get_venue(self, venue: str) -> List[Ticker]:
        venue = venue.lower()
        with self._lock:
            return [t.model_copy(deep=True) for k, t in self._records.items() if k[0] == venue]

    def subscribe(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> Pipe:
        return self._dispatcher.subscribe(self._topic(market_key(venue, instrument, asset_class)))


def _same_prices(a: Ticker, b: Ticker) -> bool:
    return a.model_dump(exclude={"last_updated"}) == b.model_dump(exclude={"last_updated"})


# ============================================
# Orderbooks
# ============================================

class _BookState:
    """Mutable depth for one key; levels are keyed by price."""

    def __init__(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> None:
        self.venue = venue
        self.instrument = instrument
        self.asset_class = asset_class
        self.bids: Dict[float, OrderbookLevel] = {}
        self.asks: Dict[float, OrderbookLevel] = {}
        self.stale = False
        self.last_updated = current_utc_datetime()

    def to_orderbook(self) -> Orderbook:
        return Orderbook(
            venue=self.venue,
            instrument=self.instrument,
            asset_class=self.asset_class,
            bids=sorted(self.bids.values(), key=lambda level: level.price, reverse=True),
            asks=sorted(self.asks.values(), key=lambda level: level.price),
            stale=self.stale,
            last_updated=self.last_updated,
        )


def _apply_levels(side: Dict[float, OrderbookLevel], levels: List[OrderbookLevel]) -> Dict[float, OrderbookLevel]:
    merged = dict(side)
    for level in levels:
        if level.amount == 0:
            merged.pop(level.price, None)
        else:
            merged[level.price] = level.model_copy()
    return merged


def _is_crossed(bids: Dict[float, OrderbookLevel], asks: Dict[float, OrderbookLevel]) -> bool:
    return bool(bids) and bool(asks) and max(bids) >= min(asks)


class OrderbookRegistry(_TopicRegistry[Orderbook]):
    """
    Depth per instrument, kept uncrossed.

    Attributes:
        snapshot_requests: Number of snapshots requested after integrity failures
    """

    kind = Orderbook

    def __init__(self, dispatcher: Dispatcher, exchanges: Optional[ExchangeManager] = None) -> None:
        super().__init__(dispatcher, exchanges)
        self.snapshot_requests = 0

    async def process(self, update: Union[Orderbook, OrderbookUpdate], request_snapshot: bool = True) -> bool:
        """
        Merge a snapshot or diff into the stored book.

        A full Orderbook is treated as a snapshot.

        Returns:
            True if the merged book was stored and published

        Raises:
            UnknownInstrumentError: If the venue does not trade that asset class
        """
        if isinstance(update, Orderbook):
            update = OrderbookUpdate.from_orderbook(update)
        self._check_asset_class(update.venue, update.asset_class)
        key = market_key(update.venue, update.instrument, update.asset_class)

        crossed = False
        async with self._key_lock(key):
            with self._lock:
                state = self._records.get(key)

            if update.kind == OrderbookUpdateKind.SNAPSHOT:
                bids = _apply_levels({}, update.bids)
                asks = _apply_levels({}, update.asks)
            elif state is None or state.stale:
                logger.debug(f"Dropping orderbook diff for {update.venue} {update.instrument}: no valid snapshot")
                return False
            else:
                bids = _apply_levels(state.bids, update.bids)
                asks = _apply_levels(state.asks, update.asks)

            if state is None:
                state = _BookState(update.venue, update.instrument, update.asset_class)

            if _is_crossed(bids, asks):
                crossed = True
                with self._lock:
                    state.stale = True
                    self._records[key] = state
                logger.warning(
                    f"Orderbook for {update.venue} {update.instrument} {update.asset_class.value} "
                    f"crossed after {update.kind.value}; marked stale"
                )
            else:
                unchanged = not state.stale and bids == state.bids and asks == state.asks
                with self._lock:
                    state.bids = bids
                    state.asks = asks
                    state.stale = False
                    state.last_updated = update.last_updated
                    self._records[key] = state
                    book = state.to_orderbook()
                if not unchanged:
                    await self._publish(key, update.venue, book)
                    return True
                return False

        if crossed and request_snapshot:
            await self._refresh(update.venue, update.instrument, update.asset_class)
        return False

    async def _refresh(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> None:
        exchange = self._exchanges.get(venue) if self._exchanges is not None else None
        if exchange is None or not exchange.supports("orderbook"):
            logger.warning(f"Cannot request orderbook snapshot for {venue} {instrument}: not available")
            return
        self.snapshot_requests += 1
        try:
            book = await exchange.update_orderbook(instrument, asset_class)
        except Exception as e:
            logger.error(f"Orderbook snapshot request to {venue} failed: {e}")
            return
        await self.process(OrderbookUpdate.from_orderbook(book), request_snapshot=False)

    def get(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> Orderbook:
        """
        Raises:
            UnknownInstrumentError: If no book is stored for the key
        """
        with self._lock:
            state = self._records.get(market_key(venue, instrument, asset_class))
            if state is None:
                raise UnknownInstrumentError(f"no orderbook for {venue} {instrument} {asset_class.value}")
            return state.to_orderbook()

    def is_stale(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> bool:
        return self.get(venue, instrument, asset_class).stale

    def subscribe(self, venue: str, instrument: Instrument, asset_class: AssetClass) -> Pipe:
        return self._dispatcher.subscribe(self._topic(market_key(venue, instrument, asset_class)))


# ============================================
# Holdings
# ============================================

class HoldingsRegistry(_TopicRegistry[Holdings]):
    """Account holdings per venue, replaced as a whole."""

    kind = Holdings

    async def process(self, holdings: Holdings) -> bool:
        venue = holdings.venue
        async with self._key_lock(venue):
            with self._lock:
                previous = self._records.get(venue)
                self._records[venue] = holdings.model_copy(deep=True)
            if previous is not None and previous.accounts == holdings.accounts:
                return False
            await self._publish(venue, venue, holdings.model_copy(deep=True))
        return True

    def get(self, venue: str) -> Holdings:
        """
        Raises:
            UnknownInstrumentError: If no holdings are stored for the venue
        """
        with self._lock:
            holdings = self._records.get(venue.lower())
            if holdings is None:
                raise UnknownInstrumentError(f"no holdings for {venue}")
            return holdings.model_copy(deep=True)

    def list(self) -> List[Holdings]:
        with self._lock:
            return [h.model_copy(deep=True) for h in self._records.values()]

    def subscribe(self, venue: str) -> Pipe:
        return self.subscribe_venue(venue)
