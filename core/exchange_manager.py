"""
Exchange Manager - Registry of Loaded Venue Adapters

The ExchangeManager exclusively owns adapter instances. Every other
component borrows an adapter by name for the duration of a call.

Design Rules:
    - Names are unique case-insensitively ("Binance" collides with "binance")
    - All operations are safe for concurrent use
    - Listings return a snapshot; callers may iterate while others add/remove
    - The registry lock is never held while calling into an adapter: handles
      are copied out under the lock, then used after it is released

Example Usage:
    manager = ExchangeManager()
    manager.load_exchanges(settings.exchanges)
    await manager.initialize_all()

    exchange = manager.get_exchange("binance")
    ticker = await exchange.update_ticker(Instrument.parse("BTC-USDT"), AssetClass.PERPETUAL_SWAP)

    await manager.shutdown_all()
"""

import threading
from typing import Dict, Iterable, List, Optional, Type

from core.config import ExchangeConfig
from core.errors import ConfigInvalidError, ExchangeAlreadyLoadedError, UnknownVenueError
from core.exchange_interface import ExchangeInterface
from core.logging import get_logger

logger = get_logger(__name__)


def _default_exchange_classes() -> Dict[str, Type[ExchangeInterface]]:
    # Import here to avoid circular imports; adapters import from core
    from exchanges.binance import BinanceExchange

    return {
        "binance": BinanceExchange,
    }


class ExchangeManager:
    """
    Thread-safe registry of venue adapters.

    Attributes:
        exchange_classes: Factory table used by load_exchange(), name -> class

    Example:
        >>> manager = ExchangeManager()
        >>> manager.add(BinanceExchange())
        >>> manager.get("BINANCE")
        <BinanceExchange(name='binance')>
        >>> manager.remove("binance")
        True
        >>> manager.remove("binance")
        False
    """

    def __init__(self, exchange_classes: Optional[Dict[str, Type[ExchangeInterface]]] = None):
        self._lock = threading.RLock()
        self._exchanges: Dict[str, ExchangeInterface] = {}
        self._exchange_classes = exchange_classes
        logger.debug("ExchangeManager created")

    @property
    def exchange_classes(self) -> Dict[str, Type[ExchangeInterface]]:
        if self._exchange_classes is None:
            self._exchange_classes = _default_exchange_classes()
        return self._exchange_classes

    # ============================================
    # Registry Operations
    # ============================================

    def add(self, exchange: ExchangeInterface) -> None:
        """
        Insert an adapter.

        Raises:
            ExchangeAlreadyLoadedError: If an adapter with the same name
                (case-insensitive) is already registered
        """
        key = exchange.get_name().lower()
        with self._lock:
            if key in self._exchanges:
                raise ExchangeAlreadyLoadedError(exchange.get_name())
            self._exchanges[key] = exchange
        logger.info(f"Exchange {exchange.get_name()} loaded")

    def get(self, name: str) -> Optional[ExchangeInterface]:
        with self._lock:
            return self._exchanges.get(name.lower())

    def get_exchange(self, name: str) -> ExchangeInterface:
        """
        Get an adapter by name.

        Raises:
            UnknownVenueError: If no adapter with that name is loaded
        """
        exchange = self.get(name)
        if exchange is None:
            raise UnknownVenueError(name)
        return exchange

    def get_enabled_exchange(self, name: str) -> ExchangeInterface:
        """
        Get an adapter by name, refusing disabled ones.

        Raises:
            UnknownVenueError: If the adapter is absent or disabled
        """
        exchange = self.get_exchange(name)
        if not exchange.is_enabled():
            raise UnknownVenueError(name, "is disabled")
        return exchange

    def has_exchange(self, name: str) -> bool:
        with self._lock:
            return name.lower() in self._exchanges

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._exchanges.pop(name.lower(), None)
        if removed is not None:
            logger.info(f"Exchange {removed.get_name()} removed")
        return removed is not None

    def list(self) -> List[ExchangeInterface]:
        with self._lock:
            return list(self._exchanges.values())

    def list_enabled(self) -> List[ExchangeInterface]:
        return [e for e in self.list() if e.is_enabled()]

    def list_exchanges(self, enabled_only: bool = False) -> List[str]:
        exchanges = self.list_enabled() if enabled_only else self.list()
        return [e.get_name() for e in exchanges]

    # ============================================
    # Loading
    # ============================================

    def load_exchange(self, config: ExchangeConfig) -> ExchangeInterface:
        """
        Create an adapter from its configuration and register it.

        The adapter receives a snapshot of the configuration via setup().

        Raises:
            ConfigInvalidError: If no adapter class exists for the name
            ExchangeAlreadyLoadedError: If the name is already loaded
        """
        cls = self.exchange_classes.get(config.name.lower())
        if cls is None:
            raise ConfigInvalidError(f"exchange '{config.name}' is not supported")
        exchange = cls()
        exchange.setup(config.model_dump(mode="json"))
        self.add(exchange)
        return exchange

    def load_exchanges(self, configs: Iterable[ExchangeConfig]) -> None:
        for config in configs:
            self.load_exchange(config)

    async def unload(self, name: str) -> bool:
        exchange = self.get(name)
        if exchange is None or not self.remove(name):
            return False
        await exchange.shutdown()
        return True

    # ============================================
    # Lifecycle Management
    # ============================================

    async def initialize_all(self) -> None:
        """
        Initialize every enabled adapter.

        One failing adapter is logged and disabled; the rest still initialize.
        """
        logger.info("Initializing all exchanges...")
        for exchange in self.list_enabled():
            try:
                await exchange.initialize()
                logger.info(f"✓ {exchange.get_name()} initialized successfully")
            except Exception as e:
                logger.error(f"✗ Failed to initialize {exchange.get_name()}: {e}")
                exchange.set_enabled(False)

    async def shutdown_all(self) -> None:
        logger.info("Shutting down all exchanges...")
        for exchange in self.list():
            try:
                await exchange.shutdown()
                logger.debug(f"{exchange.get_name()} shut down")
            except Exception as e:
                logger.error(f"✗ Error shutting down {exchange.get_name()}: {e}")

    async def health_check_all(self) -> Dict[str, bool]:
        health_status = {}
        for exchange in self.list_enabled():
            try:
                health_status[exchange.get_name()] = await exchange.health_check()
            except Exception as e:
                logger.error(f"Health check failed for {exchange.get_name()}: {e}")
                health_status[exchange.get_name()] = False
        return health_status

    # ============================================
    # Capability Queries
    # ============================================

    def get_exchanges_with_feature(self, feature: str, enabled_only: bool = True) -> List[ExchangeInterface]:
        """
        Example:
            >>> [e.get_name() for e in manager.get_exchanges_with_feature("orderbook")]
            ['binance']
        """
        exchanges = self.list_enabled() if enabled_only else self.list()
        return [e for e in exchanges if e.supports(feature)]

    def get_exchange_capabilities(self, name: str) -> Dict[str, bool]:
        return dict(self.get_exchange(name).capabilities)

    def __repr__(self) -> str:
        return f"<ExchangeManager(exchanges={self.list_exchanges()})>"

    def __len__(self) -> int:
        with self._lock:
            return len(self._exchanges)
