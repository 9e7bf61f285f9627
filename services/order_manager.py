"""
Order Manager

Validates orders against local trading policy, submits them through the
venue adapter with a retry budget for transient failures, and tracks every
order it placed in an in-memory store keyed by venue.

Policy (OrderManagerConfig):
    enforce_limit_config       only limit-family (priced) order types
    allow_market_orders        market orders allowed at all
    limit_amount               per-order max amount, 0 = no cap
    allowed_pairs              instruments allowed, empty = all
    allowed_exchanges          venues allowed, empty = all
    order_submission_retries   extra attempts after a transient failure
    cancel_orders_on_shutdown  cancel every live order when stopping

Retries back off 250ms, 500ms, 1s, ... capped at 5s. Errors that are not
transient (policy, venue rejections, unknown orders) are raised at once.

Example:
    manager = OrderManager(exchange_manager, settings.order_manager)
    await manager.start()

    result = await manager.submit("binance", OrderSubmit(
        instrument=Instrument.parse("BTC-USDT"),
        side=OrderSide.BUY,
        type=OrderType.LIMIT,
        amount=0.1,
        price=50000,
    ))
    await manager.cancel("binance", result.internal_order_id)
"""

import asyncio
import contextlib
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from core.config import OrderManagerConfig
from core.errors import (
    NotStartedError,
    PermanentError,
    PolicyViolationError,
    UnknownOrderError,
    is_transient,
)
from core.exchange_interface import require_capability
from core.exchange_manager import ExchangeManager
from core.schemas import (
    PRICED_ORDER_TYPES,
    Instrument,
    OrderCancel,
    OrderDetail,
    OrdersRequest,
    OrderStatus,
    OrderSubmit,
    OrderType,
    SubmitResult,
    can_transition,
)
from core.utils.time import current_utc_datetime
from services.subsystem import Subsystem

INITIAL_BACKOFF = 0.25
MAX_BACKOFF = 5.0


class OrderManager(Subsystem):
    """
    Order submission and tracking, managed as the `orders` subsystem.

    Attributes:
        config: Policy configuration
    """

    name = "orders"

    def __init__(
        self,
        exchanges: ExchangeManager,
        config: Optional[OrderManagerConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__()
        self.exchanges = exchanges
        self.config = config or OrderManagerConfig()
        self._sleep = sleep
        self._store: Dict[str, List[OrderDetail]] = {}
        self._store_lock = threading.RLock()
        self._reconcile_task: Optional[asyncio.Task] = None

    # ============================================
    # Lifecycle
    # ============================================

    async def _start(self) -> None:
        if self.config.reconcile_interval > 0:
            self._reconcile_task = asyncio.create_task(self._reconcile_loop(), name="orders_reconcile")

    async def _stop(self) -> None:
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconcile_task
            self._reconcile_task = None

        if self.config.cancel_orders_on_shutdown:
            self.logger.info("Cancelling all live orders before shutdown")
            results = await self._cancel_all()
            failed = {k: v for k, v in results.items() if v != "Success"}
            if failed:
                self.logger.error(f"Failed to cancel {len(failed)} orders on shutdown: {failed}")

    def _require_running(self) -> None:
        if not self.is_running():
            raise NotStartedError(self.name)

    # ============================================
    # Policy
    # ============================================

    def validate(self, venue: str, request: OrderSubmit) -> None:
        """
        Check an order against local policy.

        Raises:
            PolicyViolationError: Naming the first rule the order breaks
        """
        cfg = self.config
        if cfg.enforce_limit_config and request.type not in PRICED_ORDER_TYPES:
            raise PolicyViolationError(
                "enforce_limit_config", f"{request.type.value} orders are not allowed, limit orders only"
            )
        if not cfg.allow_market_orders and request.type == OrderType.MARKET:
            raise PolicyViolationError("allow_market_orders", "market orders are not allowed")
        if cfg.limit_amount > 0 and request.amount > cfg.limit_amount:
            raise PolicyViolationError(
                "limit_amount", f"order amount {request.amount} exceeds limit {cfg.limit_amount}"
            )
        if cfg.allowed_pairs:
            allowed = {Instrument.parse(p) for p in cfg.allowed_pairs}
            if request.instrument not in allowed:
                raise PolicyViolationError("allowed_pairs", f"order pair {request.instrument} is not allowed")
        if cfg.allowed_exchanges:
            allowed_venues = {v.lower() for v in cfg.allowed_exchanges}
            if venue.lower() not in allowed_venues:
                raise PolicyViolationError("allowed_exchanges", f"order exchange {venue} is not allowed")

    # ============================================
    # Submission
    # ============================================

    async def submit(self, venue: str, request: OrderSubmit) -> SubmitResult:
        """
        Validate, place and record an order.

        Raises:
            NotStartedError: If the manager is not running
            UnknownVenueError: If the venue is not loaded or disabled
            PolicyViolationError: If the order breaks local policy
            CapabilityNotSupportedError: If the adapter cannot place orders
            Exception: The last attempt's error once the retry budget is spent
        """
        self._require_running()
        exchange = self.exchanges.get_enabled_exchange(venue)
        self.validate(venue, request)
        require_capability(exchange, "submit_order")

        attempts = self.config.order_submission_retries + 1
        delay = INITIAL_BACKOFF
        for attempt in range(1, attempts + 1):
            try:
                response = await exchange.submit_order(request)
                break
            except Exception as e:
                if not is_transient(e) or attempt == attempts:
                    self.logger.error(f"Order submission to {venue} failed after {attempt} attempt(s): {e}")
                    raise
                self.logger.warning(
                    f"Order submission to {venue} failed (attempt {attempt}/{attempts}), retrying in {delay}s: {e}"
                )
                await self._sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF)

        if not response.is_order_placed:
            raise PermanentError(f"{venue} did not place the order")

        filled = response.fully_matched
        detail = OrderDetail(
            internal_order_id=str(uuid.uuid4()),
            order_id=response.order_id,
            venue=exchange.get_name(),
            instrument=request.instrument,
            asset_class=request.asset_class,
            side=request.side,
            type=request.type,
            price=request.price,
            amount=request.amount,
            executed_amount=request.amount if filled else 0.0,
            remaining_amount=0.0 if filled else request.amount,
            status=OrderStatus.FILLED if filled else OrderStatus.NEW,
            client_order_id=request.client_order_id,
            account_id=request.account_id,
        )
        self._add(detail)
        self.logger.info(
            f"Order {detail.internal_order_id} placed on {detail.venue}: {request.side.value} "
            f"{request.amount} {request.instrument} @ {request.price or 'market'} ({detail.status.value})"
        )
        return SubmitResult(
            internal_order_id=detail.internal_order_id,
            venue_order_id=detail.order_id,
            is_order_placed=True,
            fully_matched=filled,
        )

    # ============================================
    # Cancellation
    # ============================================

    async def cancel(self, venue: str, order_id: str) -> OrderDetail:
        """
        Cancel an order by internal or venue order id.

        Raises:
            NotStartedError: If the manager is not running
            UnknownOrderError: If the store holds no such order for the venue
            PermanentError: If the order is already terminal
        """
        self._require_running()
        return await self._cancel(venue, order_id)

    async def _cancel(self, venue: str, order_id: str) -> OrderDetail:
        order = self._find(venue, order_id)
        if order.is_terminal:
            raise PermanentError(f"order {order.internal_order_id} is already {order.status.value}")

        exchange = self.exchanges.get_enabled_exchange(venue)
        require_capability(exchange, "cancel_order")
        reply = await exchange.cancel_order(OrderCancel(
            venue=order.venue,
            order_id=order.order_id,
            instrument=order.instrument,
            asset_class=order.asset_class,
            side=order.side,
            account_id=order.account_id,
            client_order_id=order.client_order_id,
        ))

        if reply is not None and reply.executed_amount > 0:
            updated = self._update(
                order,
                status=OrderStatus.PARTIALLY_CANCELLED,
                executed_amount=reply.executed_amount,
                remaining_amount=reply.remaining_amount,
            )
        else:
            updated = self._update(order, status=OrderStatus.CANCELLED)
        self.logger.info(f"Order {order.internal_order_id} on {venue} {updated.status.value}")
        return updated

    async def cancel_all(self, venue: Optional[str] = None) -> Dict[str, str]:
        """
        Cancel every live order, optionally for one venue only.

        Returns:
            internal order id -> "Success" or "Failed: <reason>"
        """
        self._require_running()
        return await self._cancel_all(venue)

    async def _cancel_all(self, venue: Optional[str] = None) -> Dict[str, str]:
        results: Dict[str, str] = {}
        for order in self.get_orders(venue):
            if order.is_terminal:
                continue
            try:
                await self._cancel(order.venue, order.internal_order_id)
                results[order.internal_order_id] = "Success"
            except Exception as e:
                self.logger.error(f"Failed to cancel order {order.internal_order_id} on {order.venue}: {e}")
                results[order.internal_order_id] = f"Failed: {e}"
        return results

    # ============================================
    # Reconciliation
    # ============================================

    async def reconcile(self, venue: str) -> Dict[str, int]:
        """
        Sync the store with the venue's active orders.

        Unknown active orders are added, known ones updated. Live orders the
        venue no longer reports are marked cancelled, never removed.

        Returns:
            Counts of added, updated and cancelled orders
        """
        self._require_running()
        exchange = self.exchanges.get_enabled_exchange(venue)
        require_capability(exchange, "active_orders")
        active = await exchange.get_active_orders(OrdersRequest())
        venue_key = exchange.get_name().lower()

        counts = {"added": 0, "updated": 0, "cancelled": 0}
        reported = set()
        for remote in active:
            reported.add(remote.order_id)
            try:
                local = self._find(venue_key, remote.order_id)
            except UnknownOrderError:
                self._add(remote.model_copy(update={
                    "internal_order_id": str(uuid.uuid4()),
                    "venue": venue_key,
                }))
                counts["added"] += 1
                continue
            try:
                applied = self._apply_remote(local, remote)
            except ValidationError as e:
                self.logger.error(f"Skipping venue report for order {local.internal_order_id} on {venue}: {e}")
                continue
            if applied:
                counts["updated"] += 1

        for local in self.get_orders(venue_key):
            if local.is_terminal or local.order_id in reported:
                continue
            self._update(local, status=OrderStatus.CANCELLED)
            counts["cancelled"] += 1

        self.logger.debug(f"Reconciled {venue}: {counts}")
        return counts

    def _apply_remote(self, local: OrderDetail, remote: OrderDetail) -> bool:
        changes = {}
        if remote.status != local.status and can_transition(local.status, remote.status):
            changes["status"] = remote.status
        if remote.executed_amount != local.executed_amount or remote.remaining_amount != local.remaining_amount:
            changes["executed_amount"] = remote.executed_amount
            changes["remaining_amount"] = remote.remaining_amount
        if not changes or local.is_terminal:
            return False
        self._update(local, **changes)
        return True

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reconcile_interval)
            for exchange in self.exchanges.get_exchanges_with_feature("active_orders"):
                try:
                    await self.reconcile(exchange.get_name())
                except Exception as e:
                    self.logger.error(f"Order reconciliation for {exchange.get_name()} failed: {e}")

    # ============================================
    # Store
    # ============================================

    def _add(self, order: OrderDetail) -> None:
        with self._store_lock:
            self._store.setdefault(order.venue, []).append(order)

    def _find(self, venue: str, order_id: str) -> OrderDetail:
        with self._store_lock:
            for order in self._store.get(venue.lower(), []):
                if order_id in (order.internal_order_id, order.order_id):
                    return order
        raise UnknownOrderError(venue, order_id)

    def _update(self, order: OrderDetail, **changes: Any) -> OrderDetail:
        """Replace a stored order, re-validating amounts; status never moves backwards."""
        with self._store_lock:
            orders = self._store.get(order.venue, [])
            for i, current in enumerate(orders):
                if current.internal_order_id != order.internal_order_id:
                    continue
                status = changes.get("status", current.status)
                if status != current.status and not can_transition(current.status, status):
                    self.logger.warning(
                        f"Ignoring status change {current.status.value} -> {status.value} "
                        f"for order {current.internal_order_id}"
                    )
                    return current.model_copy()
                data = current.model_dump()
                data.update(changes, last_updated=current_utc_datetime())
                updated = OrderDetail.model_validate(data)
                orders[i] = updated
                return updated.model_copy()
        raise UnknownOrderError(order.venue, order.internal_order_id)

    def get_orders(self, venue: Optional[str] = None) -> List[OrderDetail]:
        with self._store_lock:
            if venue is not None:
                return [o.model_copy() for o in self._store.get(venue.lower(), [])]
            return [o.model_copy() for orders in self._store.values() for o in orders]

    def get_order(self, internal_order_id: str) -> OrderDetail:
        """
        Raises:
            UnknownOrderError: If no stored order has that internal id
        """
        with self._store_lock:
            for orders in self._store.values():
                for order in orders:
                    if order.internal_order_id == internal_order_id:
                        return order.model_copy()
        raise UnknownOrderError("any", internal_order_id)
