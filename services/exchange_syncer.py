"""
Exchange Syncer

Keeps the ticker and orderbook registries fresh over REST. Every interval it
walks the enabled adapters, and for each configured pair asks the adapter
for a fresh ticker and orderbook snapshot and feeds them to the registries.

Venues whose adapter streams over websocket are skipped; their stream
handlers feed the registries directly.
"""

from typing import Dict, Optional

from core.config import ExchangeSyncerConfig
from core.exchange_interface import ExchangeInterface
from core.exchange_manager import ExchangeManager
from core.schemas import Instrument
from services.market_data import OrderbookRegistry, TickerRegistry
from services.subsystem import PeriodicSubsystem


class ExchangeSyncer(PeriodicSubsystem):
    """REST market-data refresher, managed as the `exchange_syncer` subsystem."""

    name = "exchange_syncer"
    tick_on_start = True

    def __init__(
        self,
        exchanges: ExchangeManager,
        tickers: TickerRegistry,
        orderbooks: OrderbookRegistry,
        config: Optional[ExchangeSyncerConfig] = None,
    ) -> None:
        config = config or ExchangeSyncerConfig()
        super().__init__(interval=config.sync_interval)
        self.config = config
        self.exchanges = exchanges
        self.tickers = tickers
        self.orderbooks = orderbooks

    async def _prepare(self) -> None:
        if not (self.config.sync_ticker or self.config.sync_orderbook):
            raise ValueError("exchange syncer has nothing to sync")

    async def _tick(self) -> None:
        await self.sync_all()

    async def sync_all(self) -> Dict[str, int]:
        """
        Refresh every configured pair of every enabled adapter.

        Returns:
            Number of records processed per venue
        """
        counts: Dict[str, int] = {}
        for exchange in self.exchanges.list_enabled():
            if exchange.supports("websocket") and exchange.is_websocket_enabled():
                continue
            counts[exchange.get_name()] = await self.sync_exchange(exchange)
        return counts

    async def sync_exchange(self, exchange: ExchangeInterface) -> int:
        name = exchange.get_name()
        asset_class = self.config.asset_class
        if not exchange.supports_asset_class(asset_class):
            self.logger.debug(f"{name} does not support {asset_class.value}, skipping")
            return 0

        processed = 0
        for symbol in self.config.pairs.get(name.lower(), []):
            instrument = Instrument.parse(symbol)
            if self.config.sync_ticker and exchange.supports("ticker"):
                try:
                    ticker = await exchange.update_ticker(instrument, asset_class)
                    await self.tickers.process(ticker)
                    processed += 1
                except Exception as e:
                    self.logger.error(f"{name} {instrument} ticker sync failed: {e}")
            if self.config.sync_orderbook and exchange.supports("orderbook"):
                try:
                    book = await exchange.update_orderbook(instrument, asset_class)
                    await self.orderbooks.process(book)
                    processed += 1
                except Exception as e:
                    self.logger.error(f"{name} {instrument} orderbook sync failed: {e}")
        return processed
