"""
Engine - Root Object of the Runtime Core

The Engine is built from a Settings instance and owns every component:
the exchange registry, the dispatcher, the market-data registries, all
subsystems and the facade. Components receive what they need at
construction; none of them reads global state, so several engines can live
in one process (tests do this).

Startup Order:
    dispatch -> internet_monitor -> ntp_timekeeper -> database ->
    communications -> exchange_syncer -> portfolio -> orders -> gctscript

Shutdown runs in reverse and then shuts the adapters down.

Example:
    engine = Engine(Settings())
    await engine.start()
    await engine.facade.set("database", True)
    await engine.stop()
"""

from typing import Dict, List, Optional, Union

from core.config import Settings, validate_configuration
from core.exchange_interface import StreamingCapable, channel
from core.exchange_manager import ExchangeManager
from core.logging import get_logger
from core.schemas import Instrument, Orderbook, OrderbookUpdate, Ticker
from services.communications import CommunicationsManager
from services.connection import ConnectionMonitor
from services.database import DatabaseManager
from services.dispatcher import Dispatcher
from services.exchange_syncer import ExchangeSyncer
from services.facade import SubsystemFacade
from services.market_data import HoldingsRegistry, OrderbookRegistry, TickerRegistry
from services.order_manager import OrderManager
from services.portfolio import PortfolioManager
from services.scripting import ScriptManager
from services.subsystem import Subsystem
from services.timekeeper import NTPManager, PromptCallable

logger = get_logger(__name__)


class Engine:
    """
    Owns and wires every runtime component.

    Attributes:
        settings: Configuration the engine was built from
        exchanges: Exchange registry
        dispatcher: Pub/sub bus
        tickers / orderbooks / holdings: Market-data registries
        facade: Name-based subsystem control
    """

    def __init__(
        self,
        settings: Settings,
        exchanges: Optional[ExchangeManager] = None,
        ntp_prompt: Optional[PromptCallable] = None,
    ) -> None:
        self.settings = settings
        self.exchanges = exchanges if exchanges is not None else ExchangeManager()

        dispatch = settings.dispatch
        self.dispatcher = Dispatcher(dispatch.max_workers, dispatch.jobs_limit, dispatch.pipe_buffer)
        self.tickers = TickerRegistry(self.dispatcher, self.exchanges)
        self.orderbooks = OrderbookRegistry(self.dispatcher, self.exchanges)
        self.holdings = HoldingsRegistry(self.dispatcher, self.exchanges)

        self.connection_monitor = ConnectionMonitor(settings.connection_monitor)
        self.ntp = NTPManager(settings.ntp_client, prompt=ntp_prompt)
        self.database = DatabaseManager(settings.database, settings.data_dir)
        self.communications = CommunicationsManager(
            settings.communications,
            dispatcher=self.dispatcher,
            sources=[self._holdings_source(e.name) for e in settings.exchanges if e.enabled],
        )
        self.syncer = ExchangeSyncer(self.exchanges, self.tickers, self.orderbooks, settings.exchange_syncer)
        self.portfolio = PortfolioManager(self.exchanges, self.holdings, settings.portfolio)
        self.orders = OrderManager(self.exchanges, settings.order_manager)
        self.scripts = ScriptManager(
            settings.scripting,
            services={
                "exchanges": self.exchanges,
                "tickers": self.tickers,
                "orderbooks": self.orderbooks,
                "holdings": self.holdings,
                "orders": self.orders,
            },
        )

        self.subsystems: Dict[str, Subsystem] = {
            s.name: s for s in (
                self.dispatcher,
                self.connection_monitor,
                self.ntp,
                self.database,
                self.communications,
                self.syncer,
                self.portfolio,
                self.orders,
                self.scripts,
            )
        }
        self.facade = SubsystemFacade(
            self.subsystems,
            settings.remote_control,
            validator=lambda: validate_configuration(self.settings),
        )

    def _holdings_source(self, venue: str):
        return lambda: self.holdings.subscribe_venue(venue)

    async def route_stream_value(self, value: Union[Ticker, Orderbook, OrderbookUpdate]) -> None:
        """Data handler installed on streaming adapters."""
        if isinstance(value, Ticker):
            await self.tickers.process(value)
        elif isinstance(value, (Orderbook, OrderbookUpdate)):
            await self.orderbooks.process(value)
        else:
            raise TypeError(f"unexpected stream value {type(value).__name__}")

    async def _start_streams(self) -> None:
        syncer = self.settings.exchange_syncer
        for exchange in self.exchanges.get_exchanges_with_feature("websocket"):
            if not isinstance(exchange, StreamingCapable) or not exchange.is_websocket_enabled():
                continue
            exchange.set_data_handler(self.route_stream_value)
            channels = []
            for pair in syncer.pairs.get(exchange.get_name().lower(), []):
                instrument = Instrument.parse(pair)
                if syncer.sync_ticker:
                    channels.append(channel("ticker", instrument))
                if syncer.sync_orderbook:
                    channels.append(channel("orderbook", instrument))
            try:
                await exchange.subscribe(channels)
                logger.info(f"{exchange.get_name()} streaming {len(channels)} channels")
            except Exception as e:
                logger.error(f"{exchange.get_name()} stream subscription failed: {e}")

    def _enabled_at_start(self) -> List[str]:
        s = self.settings
        flags = {
            "dispatch": s.dispatch.enabled,
            "internet_monitor": s.connection_monitor.enabled,
            "ntp_timekeeper": s.ntp_client.enabled,
            "database": s.database.enabled,
            "communications": s.communications.enabled,
            "exchange_syncer": s.exchange_syncer.enabled,
            "portfolio": s.portfolio.enabled,
            "orders": s.order_manager.enabled,
            "gctscript": s.scripting.enabled,
        }
        return [name for name in self.subsystems if flags[name]]

    async def start(self) -> None:
        """
        Load and initialise adapters, then start every enabled subsystem.

        A subsystem that fails to start is logged; the rest still start.
        """
        logger.info("Engine starting...")
        if not len(self.exchanges):
            self.exchanges.load_exchanges(e for e in self.settings.exchanges if e.enabled)
        await self.exchanges.initialize_all()
        await self._start_streams()

        for name in self._enabled_at_start():
            try:
                await self.subsystems[name].start()
            except Exception as e:
                logger.error(f"Subsystem {name} failed to start: {e}")

        if self.scripts.is_running():
            await self.scripts.autoload()
        logger.info(f"Engine started. Running subsystems: {[n for n, r in self.facade.list_subsystems().items() if r]}")

    async def stop(self) -> None:
        logger.info("Engine shutting down...")
        for subsystem in reversed(list(self.subsystems.values())):
            if not subsystem.is_running():
                continue
            try:
                await subsystem.stop()
            except Exception as e:
                logger.error(f"Subsystem {subsystem.name} failed to stop: {e}")
        await self.exchanges.shutdown_all()
        logger.info("Engine stopped.")
