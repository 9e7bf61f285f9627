"""
Normalized Data Schemas

This module defines Pydantic models for every value that flows through the
runtime core: instruments, market data records, orders and subsystem status.

Key Principle:
    Whichever venue produced a value, it is normalized into these schemas
    before it reaches a registry, the dispatcher or a subscriber. Consumers
    never see venue-specific payloads.

Models:
    - Instrument: Tradable pair (base, quote, display delimiter)
    - Ticker: Last/bid/ask snapshot for an instrument
    - Orderbook / OrderbookUpdate: Depth snapshot and incremental changes
    - Holdings: Per-venue account balances
    - OrderSubmit / OrderDetail / OrderCancel: Order lifecycle records
    - SubsystemStatus / RPCEndpoint / ScriptStatus: Control surface replies
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils.time import current_utc_datetime


# ============================================
# Enumerations
# ============================================

class AssetClass(str, Enum):
    """Market segment an instrument trades in."""

    SPOT = "spot"
    MARGIN = "margin"
    FUTURES = "futures"
    PERPETUAL_SWAP = "perpetual_swap"
    INDEX = "index"
    BINARY = "binary"
    OPTION = "option"
    DOWNSIDE_FUTURE = "downside_future"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
    BID = "bid"
    ASK = "ask"
    LONG = "long"
    SHORT = "short"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"
    POST_ONLY = "post_only"
    IMMEDIATE_OR_CANCEL = "immediate_or_cancel"
    FILL_OR_KILL = "fill_or_kill"


# Order types that rest on the book at a price the caller chose
PRICED_ORDER_TYPES = frozenset({
    OrderType.LIMIT,
    OrderType.STOP_LIMIT,
    OrderType.POST_ONLY,
    OrderType.IMMEDIATE_OR_CANCEL,
    OrderType.FILL_OR_KILL,
})


class OrderStatus(str, Enum):
    NEW = "new"
    OPEN = "open"
    PENDING_CANCEL = "pending_cancel"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    PARTIALLY_CANCELLED = "partially_cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.PARTIALLY_CANCELLED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})

_STATUS_RANK = {
    OrderStatus.UNKNOWN: 0,
    OrderStatus.NEW: 0,
    OrderStatus.OPEN: 1,
    OrderStatus.PENDING_CANCEL: 1,
    OrderStatus.PARTIALLY_FILLED: 2,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """
    Check whether an order may move from one status to another.

    Statuses only ever move toward a terminal state: a terminal order never
    changes again, and a live order never moves back to a lower rank.

    Example:
        >>> can_transition(OrderStatus.OPEN, OrderStatus.FILLED)
        True
        >>> can_transition(OrderStatus.PARTIALLY_FILLED, OrderStatus.OPEN)
        False
    """
    if current in TERMINAL_STATUSES:
        return False
    if target in TERMINAL_STATUSES:
        return True
    return _STATUS_RANK[target] >= _STATUS_RANK[current]


class OrderbookUpdateKind(str, Enum):
    SNAPSHOT = "snapshot"
    DIFF = "diff"


# ============================================
# Instrument
# ============================================

_DELIMITERS = ("-", "_", "/", ":")


class Instrument(BaseModel):
    """
    Tradable pair identifier.

    Equality and hashing are case-insensitive on base/quote (both are stored
    upper-cased); the delimiter is a display hint only.

    Example:
        >>> Instrument.parse("btc-usdt") == Instrument(base="BTC", quote="USDT", delimiter="/")
        True
        >>> str(Instrument.parse("eth_usd"))
        'ETH_USD'
    """

    model_config = ConfigDict(frozen=True)

    base: str = Field(..., min_length=1)
    quote: str = Field(..., min_length=1)
    delimiter: str = Field(default="-", max_length=1)

    @field_validator("base", "quote")
    @classmethod
    def validate_code(cls, v: str) -> str:
        """Ensure currency codes are uppercase"""
        return v.strip().upper()

    @classmethod
    def parse(cls, value: str) -> "Instrument":
        for delimiter in _DELIMITERS:
            if delimiter in value:
                base, _, quote = value.partition(delimiter)
                return cls(base=base, quote=quote, delimiter=delimiter)
        raise ValueError(f"cannot split '{value}' into base and quote")

    @property
    def symbol(self) -> str:
        """Venue-style concatenated symbol (e.g., BTCUSDT)."""
        return f"{self.base}{self.quote}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Instrument):
            return NotImplemented
        return self.base == other.base and self.quote == other.quote

    def __hash__(self) -> int:
        return hash((self.base, self.quote))

    def __str__(self) -> str:
        return f"{self.base}{self.delimiter}{self.quote}"


# ============================================
# Market Data Records
# ============================================

class BaseMarketModel(BaseModel):
    """
    Fields shared by every per-instrument market data record.

    Attributes:
        venue: Source venue name (lowercase)
        instrument: Tradable pair
        asset_class: Market segment the instrument belongs to
        last_updated: Time of the venue update in UTC
    """

    venue: str = Field(..., description="Source venue name (lowercase)")
    instrument: Instrument
    asset_class: AssetClass
    last_updated: datetime = Field(default_factory=current_utc_datetime)

    @field_validator("venue")
    @classmethod
    def validate_venue(cls, v: str) -> str:
        """Ensure venue is lowercase"""
        return v.lower()


class Ticker(BaseMarketModel):
    """
    Ticker snapshot for one instrument.

    Example:
        >>> Ticker(
        ...     venue="bitfinex",
        ...     instrument=Instrument.parse("BTC-USD"),
        ...     asset_class=AssetClass.SPOT,
        ...     last=100.0,
        ... )
    """

    last: float = Field(default=0.0, ge=0)
    bid: float = Field(default=0.0, ge=0)
    ask: float = Field(default=0.0, ge=0)
    high: float = Field(default=0.0, ge=0)
    low: float = Field(default=0.0, ge=0)
    volume: float = Field(default=0.0, ge=0)
    all_time_high: float = Field(default=0.0, ge=0)


class OrderbookLevel(BaseModel):
    price: float = Field(..., gt=0)
    amount: float = Field(..., ge=0)
    order_count: Optional[int] = None
    id: Optional[str] = None


class Orderbook(BaseMarketModel):
    """
    Depth snapshot: bids sorted descending, asks sorted ascending.

    A stale book failed an integrity check and is waiting for a fresh
    snapshot from its venue; its levels are the last consistent state.
    `sequence` is the venue update id the snapshot reflects, when the venue
    reports one.
    """

    bids: List[OrderbookLevel] = Field(default_factory=list)
    asks: List[OrderbookLevel] = Field(default_factory=list)
    stale: bool = False
    sequence: Optional[int] = None

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    def is_crossed(self) -> bool:
        if not self.bids or not self.asks:
            return False
        return self.bids[0].price >= self.asks[0].price


class OrderbookUpdate(BaseMarketModel):
    """
    Change to an orderbook.

    A snapshot replaces the whole book. A diff merges level by level:
    amount 0 removes the level at that price, anything else replaces it.
    Updates whose producer cannot tell the two apart are diffs.
    """

    kind: OrderbookUpdateKind = OrderbookUpdateKind.DIFF
    bids: List[OrderbookLevel] = Field(default_factory=list)
    asks: List[OrderbookLevel] = Field(default_factory=list)

    @classmethod
    def from_orderbook(cls, book: Orderbook) -> "OrderbookUpdate":
        return cls(
            venue=book.venue,
            instrument=book.instrument,
            asset_class=book.asset_class,
            last_updated=book.last_updated,
            kind=OrderbookUpdateKind.SNAPSHOT,
            bids=book.bids,
            asks=book.asks,
        )


class Balance(BaseModel):
    currency: str
    total: float = Field(default=0.0, ge=0)
    hold: float = Field(default=0.0, ge=0)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class SubAccount(BaseModel):
    id: str = ""
    currencies: List[Balance] = Field(default_factory=list)


class Holdings(BaseModel):
    """Account balances for one venue, replaced as a whole on every update."""

    venue: str
    accounts: List[SubAccount] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=current_utc_datetime)

    @field_validator("venue")
    @classmethod
    def validate_venue(cls, v: str) -> str:
        return v.lower()


# ============================================
# Orders
# ============================================

class OrderSubmit(BaseModel):
    """
    Order submission request.

    Validation here covers only shape (positive amount, price present for
    priced order types); local trading policy is enforced by the order
    manager.
    """

    instrument: Instrument
    asset_class: AssetClass = AssetClass.SPOT
    side: OrderSide
    type: OrderType
    amount: float = Field(..., gt=0)
    price: float = Field(default=0.0, ge=0)
    client_order_id: Optional[str] = None
    account_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_price(self) -> "OrderSubmit":
        if self.type in PRICED_ORDER_TYPES and self.price <= 0:
            raise ValueError(f"order price must be set for {self.type.value} orders")
        return self


class SubmitResponse(BaseModel):
    """What an adapter returns after placing an order."""

    order_id: str = ""
    is_order_placed: bool = False
    fully_matched: bool = False


class SubmitResult(BaseModel):
    """What the order manager returns after a successful submission."""

    internal_order_id: str
    venue_order_id: str
    is_order_placed: bool
    fully_matched: bool


class OrderCancel(BaseModel):
    venue: str
    order_id: str
    instrument: Optional[Instrument] = None
    asset_class: Optional[AssetClass] = None
    side: Optional[OrderSide] = None
    account_id: Optional[str] = None
    client_order_id: Optional[str] = None


class OrderDetail(BaseModel):
    """
    Order record.

    Invariant: executed_amount + remaining_amount <= amount.
    """

    internal_order_id: str = ""
    order_id: str = ""
    venue: str
    instrument: Instrument
    asset_class: AssetClass = AssetClass.SPOT
    side: OrderSide
    type: OrderType
    price: float = Field(default=0.0, ge=0)
    amount: float = Field(..., ge=0)
    executed_amount: float = Field(default=0.0, ge=0)
    remaining_amount: float = Field(default=0.0, ge=0)
    status: OrderStatus = OrderStatus.NEW
    date: datetime = Field(default_factory=current_utc_datetime)
    last_updated: datetime = Field(default_factory=current_utc_datetime)
    client_order_id: Optional[str] = None
    account_id: Optional[str] = None

    @field_validator("venue")
    @classmethod
    def validate_venue(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def validate_amounts(self) -> "OrderDetail":
        # Small tolerance for venues reporting float sums
        if self.executed_amount + self.remaining_amount > self.amount * (1 + 1e-9):
            raise ValueError(
                f"executed ({self.executed_amount}) + remaining ({self.remaining_amount}) "
                f"exceeds amount ({self.amount})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OrdersRequest(BaseModel):
    """Filter for active-order and order-history queries. Empty means all."""

    instruments: List[Instrument] = Field(default_factory=list)
    asset_class: Optional[AssetClass] = None
    side: Optional[OrderSide] = None
    type: Optional[OrderType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class CancelAllResponse(BaseModel):
    status: Dict[str, str] = Field(default_factory=dict)


# ============================================
# Control Surface
# ============================================

class SubsystemState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SubsystemStatus(BaseModel):
    name: str
    state: SubsystemState
    started_at: Optional[datetime] = None
    start_count: int = 0
    stop_count: int = 0

    @property
    def running(self) -> bool:
        return self.state == SubsystemState.RUNNING


class RPCEndpoint(BaseModel):
    started: bool
    listen_address: str


class ScriptStatus(BaseModel):
    id: str
    name: str
    path: str
    next_run: Optional[datetime] = None
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
