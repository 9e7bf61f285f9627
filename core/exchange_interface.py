"""
Exchange Interface - Capability Contract for All Venue Adapters

This module defines the contract the runtime core expects from every venue
adapter. The core never talks to a venue directly: it resolves an adapter
from the exchange registry and calls the methods declared here.

Design Philosophy:
    The contract is split into small capability groups. An adapter inherits
    ExchangeInterface plus only the groups it actually implements, and
    declares the matching feature flags in `capabilities`. The core checks
    the flag before every call, so an adapter never has to stub methods it
    does not support.

Capability Groups:
    TickerCapable      - fetch_ticker / update_ticker
    OrderbookCapable   - fetch_orderbook / update_orderbook
    AccountCapable     - fetch_account_info
    OrderCapable       - submit / cancel / cancel-all / query orders
    DepositCapable     - get_deposit_address
    StreamingCapable   - websocket subscribe / unsubscribe / flush

Example:
    class MyVenue(ExchangeInterface, TickerCapable):
        name = "myvenue"
        capabilities = {"ticker": True}

        async def fetch_ticker(self, instrument, asset_class):
            ...
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from core.errors import CapabilityNotSupportedError
from core.schemas import (
    AssetClass,
    CancelAllResponse,
    Holdings,
    Instrument,
    OrderCancel,
    OrderDetail,
    Orderbook,
    OrderbookUpdate,
    OrdersRequest,
    OrderSubmit,
    SubmitResponse,
    Ticker,
)

# Every flag the core consults before calling into an adapter
FEATURES = (
    "ticker",
    "orderbook",
    "account_info",
    "submit_order",
    "cancel_order",
    "cancel_all_orders",
    "get_order",
    "active_orders",
    "order_history",
    "deposit_address",
    "websocket",
)

# Channels passed to StreamingCapable.subscribe are "<kind>:<instrument>"
CHANNEL_KINDS = ("ticker", "orderbook")

DataHandler = Callable[[Union[Ticker, Orderbook, OrderbookUpdate]], Awaitable[None]]


def channel(kind: str, instrument: Instrument) -> str:
    """
    Example:
        >>> channel("orderbook", Instrument.parse("BTC-USDT"))
        'orderbook:BTC-USDT'
    """
    if kind not in CHANNEL_KINDS:
        raise ValueError(f"unknown channel kind '{kind}'")
    return f"{kind}:{instrument.base}-{instrument.quote}"


def parse_channel(value: str) -> Tuple[str, Instrument]:
    kind, _, pair = value.partition(":")
    if kind not in CHANNEL_KINDS or not pair:
        raise ValueError(f"invalid channel '{value}'")
    return kind, Instrument.parse(pair)


class ExchangeInterface(ABC):
    """
    Base class for venue adapters: identity, feature flags and lifecycle.

    Class Attributes:
        name: Unique venue identifier (compared case-insensitively)
        capabilities: Feature flags, see FEATURES
        asset_classes: Asset classes the adapter supports

    The adapter receives a configuration snapshot through setup(); it never
    holds a reference back to the configuration that created it.
    """

    name: str
    capabilities: Dict[str, bool] = {}
    asset_classes: FrozenSet[AssetClass] = frozenset({AssetClass.SPOT})

    def __init__(self) -> None:
        self._enabled = True
        self._config: Dict[str, Any] = {}

    # ============================================
    # Identity
    # ============================================

    def get_name(self) -> str:
        return self.name

    def is_enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def supported_asset_classes(self) -> FrozenSet[AssetClass]:
        return frozenset(self.asset_classes)

    def supports_asset_class(self, asset_class: AssetClass) -> bool:
        return asset_class in self.supported_asset_classes()

    def supports(self, feature: str) -> bool:
        """
        Check if this adapter supports a feature.

        Example:
            >>> if exchange.supports("orderbook"):
            ...     book = await exchange.update_orderbook(pair, AssetClass.SPOT)
        """
        return self.capabilities.get(feature, False)

    # ============================================
    # Lifecycle
    # ============================================

    def setup(self, config: Dict[str, Any]) -> None:
        """
        Apply a configuration snapshot.

        The snapshot is copied; later changes to the caller's dict do not
        leak into the adapter.
        """
        self._config = dict(config)
        self._enabled = bool(self._config.get("enabled", True))
        classes = self._config.get("asset_classes")
        if classes:
            self.asset_classes = frozenset(AssetClass(c) for c in classes)

    def config_snapshot(self) -> Dict[str, Any]:
        return dict(self._config)

    async def initialize(self) -> None:
        """Open sessions and connections. Default does nothing."""

    async def shutdown(self) -> None:
        """Close sessions and connections. Must not raise."""

    async def health_check(self) -> bool:
        """Lightweight reachability probe. Default returns True."""
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}')>"


# ============================================
# Capability Groups
# ============================================

class TickerCapable(ABC):
    @abstractmethod
    async def fetch_ticker(self, instrument: Instrument, asset_class: AssetClass) -> Ticker:
        """Return the adapter's cached ticker, refreshing it if absent."""

    @abstractmethod
    async def update_ticker(self, instrument: Instrument, asset_class: AssetClass) -> Ticker:
        """Fetch a fresh ticker from the venue."""


class OrderbookCapable(ABC):
    @abstractmethod
    async def fetch_orderbook(self, instrument: Instrument, asset_class: AssetClass) -> Orderbook:
        """Return the adapter's cached book, refreshing it if absent."""

    @abstractmethod
    async def update_orderbook(self, instrument: Instrument, asset_class: AssetClass) -> Orderbook:
        """Fetch a fresh full snapshot from the venue."""


class AccountCapable(ABC):
    @abstractmethod
    async def fetch_account_info(self) -> Holdings:
        ...


class OrderCapable(ABC):
    @abstractmethod
    async def submit_order(self, request: OrderSubmit) -> SubmitResponse:
        ...

    @abstractmethod
    async def cancel_order(self, request: OrderCancel) -> Optional[OrderDetail]:
        """
        Cancel one order.

        Returns the venue's view of the order at cancel time when the venue
        reports it (used to record partial fills), otherwise None.
        """

    @abstractmethod
    async def cancel_all_orders(self, request: OrderCancel) -> CancelAllResponse:
        ...

    @abstractmethod
    async def get_order_info(self, order_id: str) -> OrderDetail:
        ...

    @abstractmethod
    async def get_active_orders(self, request: OrdersRequest) -> List[OrderDetail]:
        ...

    @abstractmethod
    async def get_order_history(self, request: OrdersRequest) -> List[OrderDetail]:
        ...


class DepositCapable(ABC):
    @abstractmethod
    async def get_deposit_address(self, currency: str, account_id: str = "") -> str:
        ...


class StreamingCapable(ABC):
    """
    Push-based market data.

    Streamed values (Ticker, Orderbook, OrderbookUpdate) are handed to the
    data handler the owner installed; the adapter never touches registries.
    """

    data_handler: Optional[DataHandler] = None

    def set_data_handler(self, handler: Optional[DataHandler]) -> None:
        self.data_handler = handler

    @abstractmethod
    def is_websocket_enabled(self) -> bool:
        ...

    @abstractmethod
    async def subscribe(self, channels: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def unsubscribe(self, channels: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def flush_channels(self) -> None:
        """Resubscribe if the subscribed pairs or endpoints changed."""


# ============================================
# Helpers
# ============================================

def require_capability(exchange: ExchangeInterface, feature: str) -> None:
    """
    Raise before calling an adapter method whose flag is false.

    Raises:
        CapabilityNotSupportedError: If the adapter does not declare the feature
    """
    if not exchange.supports(feature):
        raise CapabilityNotSupportedError(exchange.get_name(), feature)
