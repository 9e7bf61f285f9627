"""
Unit Tests for the Market-Data Registries

These tests verify that:
- Tickers are stored per key, stale updates are ignored and unchanged
  prices are not republished
- Orderbooks merge snapshots and diffs, remove zero-amount levels and
  never publish a crossed book
- Holdings replace the whole venue record

Run with:
    pytest tests/unit/test_market_data.py -v
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from core.errors import UnknownInstrumentError
from core.exchange_manager import ExchangeManager
from core.schemas import (
    AssetClass,
    Balance,
    Holdings,
    Instrument,
    OrderbookLevel,
    OrderbookUpdate,
    OrderbookUpdateKind,
    SubAccount,
)
from services.dispatcher import Dispatcher
from services.market_data import HoldingsRegistry, OrderbookRegistry, TickerRegistry
from tests.fake_exchange import FakeExchange, make_book, make_ticker

BTC = Instrument.parse("BTC-USDT")
PERP = AssetClass.PERPETUAL_SWAP


def diff(bids=(), asks=()):
    return OrderbookUpdate(
        venue="fake",
        instrument=BTC,
        asset_class=PERP,
        kind=OrderbookUpdateKind.DIFF,
        bids=[OrderbookLevel(price=p, amount=a) for p, a in bids],
        asks=[OrderbookLevel(price=p, amount=a) for p, a in asks],
    )


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def dispatcher():
    d = Dispatcher(max_workers=2, jobs_limit=20, pipe_buffer=20)
    await d.start()
    yield d
    await d.stop()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def exchanges(exchange):
    manager = ExchangeManager(exchange_classes={})
    manager.add(exchange)
    return manager


# ============================================
# Tickers
# ============================================

class TestTickerRegistry:
    """Tests for TickerRegistry"""

    @pytest.mark.asyncio
    async def test_process_stores_copy(self, dispatcher, exchanges):
        """Verify get returns the stored ticker and callers cannot mutate it"""
        tickers = TickerRegistry(dispatcher, exchanges)
        await tickers.process(make_ticker(last=100.0))

        stored = tickers.get("FAKE", BTC, PERP)
        assert stored.last == 100.0
        stored.last = 1.0
        assert tickers.get("fake", BTC, PERP).last == 100.0

    @pytest.mark.asyncio
    async def test_missing_ticker_raises(self, dispatcher, exchanges):
        """Verify an unknown key raises UnknownInstrumentError"""
        tickers = TickerRegistry(dispatcher, exchanges)
        with pytest.raises(UnknownInstrumentError):
            tickers.get("fake", BTC, PERP)

    @pytest.mark.asyncio
    async def test_unsupported_asset_class_rejected(self, dispatcher, exchanges):
        """Verify a ticker for an asset class the venue does not trade is refused"""
        tickers = TickerRegistry(dispatcher, exchanges)
        with pytest.raises(UnknownInstrumentError):
            await tickers.process(make_ticker(asset_class=AssetClass.OPTION))

    @pytest.mark.asyncio
    async def test_older_update_ignored(self, dispatcher, exchanges):
        """Verify an update older than the stored ticker is dropped"""
        tickers = TickerRegistry(dispatcher, exchanges)
        newer = make_ticker(last=101.0)
        older = make_ticker(last=99.0, last_updated=newer.last_updated - timedelta(seconds=5))

        assert await tickers.process(newer)
        assert not await tickers.process(older)
        assert tickers.get("fake", BTC, PERP).last == 101.0

    @pytest.mark.asyncio
    async def test_subscriber_receives_changes_only(self, dispatcher, exchanges):
        """Verify a timestamp-only update is stored but not published"""
        tickers = TickerRegistry(dispatcher, exchanges)
        pipe = tickers.subscribe("fake", BTC, PERP)
        first = make_ticker(last=100.0)
        same = first.model_copy(update={"last_updated": first.last_updated + timedelta(seconds=1)})

        assert await tickers.process(first)
        assert not await tickers.process(same)
        assert await tickers.process(make_ticker(last=102.0, last_updated=same.last_updated))

        received = [await asyncio.wait_for(pipe.recv(), 1.0) for _ in range(2)]
        assert [t.last for t in received] == [100.0, 102.0]
        assert tickers.get("fake", BTC, PERP).last_updated == same.last_updated

    @pytest.mark.asyncio
    async def test_venue_subscription(self, dispatcher, exchanges):
        """Verify the venue topic carries every instrument of the venue"""
        tickers = TickerRegistry(dispatcher, exchanges)
        pipe = tickers.subscribe_venue("fake")

        await tickers.process(make_ticker(pair="BTC-USDT"))
        await tickers.process(make_ticker(pair="ETH-USDT", last=10.0))

        received = [await asyncio.wait_for(pipe.recv(), 1.0) for _ in range(2)]
        assert {str(t.instrument) for t in received} == {"BTC-USDT", "ETH-USDT"}
        assert len(tickers.get_venue("fake")) == 2


# ============================================
# Orderbooks
# ============================================

class TestOrderbookRegistry:
    """Tests for OrderbookRegistry"""

    @pytest.mark.asyncio
    async def test_snapshot_sorted(self, dispatcher, exchanges):
        """Verify a snapshot is stored with bids descending and asks ascending"""
        books = OrderbookRegistry(dispatcher, exchanges)
        await books.process(make_book(bids=((98.0, 1.0), (99.0, 2.0)), asks=((102.0, 1.0), (101.0, 3.0))))

        book = books.get("fake", BTC, PERP)
        assert [lvl.price for lvl in book.bids] == [99.0, 98.0]
        assert [lvl.price for lvl in book.asks] == [101.0, 102.0]
        assert not book.stale

    @pytest.mark.asyncio
    async def test_diff_updates_and_removes_levels(self, dispatcher, exchanges):
        """Verify a diff replaces amounts and amount 0 removes the level"""
        books = OrderbookRegistry(dispatcher, exchanges)
        await books.process(make_book(bids=((99.0, 1.0), (98.0, 1.0)), asks=((101.0, 1.0),)))

        assert await books.process(diff(bids=((99.0, 5.0), (98.0, 0.0)), asks=((100.5, 2.0),)))

        book = books.get("fake", BTC, PERP)
        assert [(lvl.price, lvl.amount) for lvl in book.bids] == [(99.0, 5.0)]
        assert [lvl.price for lvl in book.asks] == [100.5, 101.0]

    @pytest.mark.asyncio
    async def test_diff_without_snapshot_dropped(self, dispatcher, exchanges):
        """Verify a diff for an unknown book is not stored"""
        books = OrderbookRegistry(dispatcher, exchanges)

        assert not await books.process(diff(bids=((99.0, 1.0),)))
        with pytest.raises(UnknownInstrumentError):
            books.get("fake", BTC, PERP)

    @pytest.mark.asyncio
    async def test_crossed_diff_marks_stale_and_requests_snapshot(self, dispatcher, exchanges, exchange):
        """Verify a crossing diff is discarded and a fresh snapshot is fetched"""
        books = OrderbookRegistry(dispatcher, exchanges)
        await books.process(make_book(bids=((99.0, 1.0),), asks=((101.0, 1.0),)))
        exchange.books[BTC] = make_book(bids=((99.5, 1.0),), asks=((100.5, 1.0),))

        assert not await books.process(diff(bids=((102.0, 1.0),)))

        assert books.snapshot_requests == 1
        assert ("update_orderbook", BTC, PERP) in exchange.calls
        book = books.get("fake", BTC, PERP)
        assert not book.stale
        assert book.best_bid == 99.5
        assert book.best_ask == 100.5

    @pytest.mark.asyncio
    async def test_crossed_book_stays_stale_without_snapshot(self, dispatcher, exchanges):
        """Verify a crossed book keeps its last consistent levels and drops diffs"""
        books = OrderbookRegistry(dispatcher, exchanges)
        await books.process(make_book(bids=((99.0, 1.0),), asks=((101.0, 1.0),)))

        await books.process(diff(asks=((98.0, 1.0),)), request_snapshot=False)

        assert books.is_stale("fake", BTC, PERP)
        book = books.get("fake", BTC, PERP)
        assert book.best_ask == 101.0
        assert not await books.process(diff(bids=((99.0, 2.0),)))

    @pytest.mark.asyncio
    async def test_crossed_book_never_published(self, dispatcher, exchanges):
        """Verify subscribers only ever see uncrossed books"""
        books = OrderbookRegistry(dispatcher, exchanges)
        pipe = books.subscribe("fake", BTC, PERP)
        await books.process(make_book())
        await books.process(diff(bids=((200.0, 1.0),)), request_snapshot=False)
        await books.process(make_book(bids=((99.0, 3.0),)))

        received = [await asyncio.wait_for(pipe.recv(), 1.0) for _ in range(2)]
        assert all(not b.is_crossed() for b in received)
        assert received[-1].bids[0].amount == 3.0
        await asyncio.sleep(0.01)
        assert pipe.pending() == 0


# ============================================
# Holdings
# ============================================

class TestHoldingsRegistry:
    """Tests for HoldingsRegistry"""

    @pytest.mark.asyncio
    async def test_replace_whole_record(self, dispatcher, exchanges):
        """Verify a new holdings record replaces the previous one"""
        holdings = HoldingsRegistry(dispatcher, exchanges)
        pipe = holdings.subscribe("fake")

        await holdings.process(Holdings(venue="fake", accounts=[
            SubAccount(id="a", currencies=[Balance(currency="btc", total=1.0)]),
        ]))
        assert not await holdings.process(Holdings(venue="fake", accounts=[
            SubAccount(id="a", currencies=[Balance(currency="BTC", total=1.0)]),
        ]))
        await holdings.process(Holdings(venue="fake", accounts=[
            SubAccount(id="b", currencies=[Balance(currency="ETH", total=2.0)]),
        ]))

        stored = holdings.get("FAKE")
        assert [a.id for a in stored.accounts] == ["b"]
        received = [await asyncio.wait_for(pipe.recv(), 1.0) for _ in range(2)]
        assert [h.accounts[0].id for h in received] == ["a", "b"]

    def test_missing_venue_raises(self, exchanges):
        """Verify an unknown venue raises UnknownInstrumentError"""
        holdings = HoldingsRegistry(Dispatcher(), exchanges)
        with pytest.raises(UnknownInstrumentError):
            holdings.get("fake")
