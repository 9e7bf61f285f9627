"""
Binance WebSocket Client

This module provides async WebSocket streaming for Binance Futures real-time data.
It handles:
- One multiplexed connection for every subscribed stream
- Live SUBSCRIBE / UNSUBSCRIBE requests
- Automatic reconnection with exponential backoff, resubscribing on reconnect
- Graceful shutdown

Supported Streams:
    - Best bid/ask: {symbol}@bookTicker
    - Depth diffs:  {symbol}@depth@100ms

WebSocket Documentation:
    https://binance-docs.github.io/apidocs/futures/en/#websocket-market-streams

Usage:
    async def on_message(msg):
        print(msg["e"])

    client = BinanceWebSocketClient(on_message=on_message)
    client.start()
    await client.subscribe(["btcusdt@bookTicker"])
    ...
    await client.stop()
"""

import asyncio
import contextlib
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

import websockets

from core.logging import get_logger

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


def book_ticker_stream(symbol: str) -> str:
    return f"{symbol.lower()}@bookTicker"


def depth_stream(symbol: str) -> str:
    return f"{symbol.lower()}@depth@100ms"


class BinanceWebSocketClient:
    """
    Async WebSocket client for Binance Futures streams.

    Raw JSON events are handed to `on_message`; normalization is the
    caller's job.

    Attributes:
        url: Stream endpoint
        streams: Streams that should be subscribed (survives reconnects)
        max_reconnect_delay: Maximum delay between reconnection attempts (seconds)

    Notes:
        - Stream names are lowercase symbol + "@" + stream type
        - Subscriptions requested while disconnected are sent on the next connect
    """

    BASE_URL = "wss://fstream.binance.com/ws"

    def __init__(
        self,
        on_message: MessageHandler,
        url: Optional[str] = None,
        max_reconnect_delay: int = 30
    ):
        self.url = url or self.BASE_URL
        self.on_message = on_message
        self.max_reconnect_delay = max_reconnect_delay
        self.streams: Set[str] = set()

        self.ws = None
        self._task: Optional[asyncio.Task] = None
        self._is_running = False
        self._reconnect_attempt = 0
        self._request_id = 0

        self.logger = get_logger(__name__)

    @property
    def connected(self) -> bool:
        return self.ws is not None

    # ============================================
    # Lifecycle
    # ============================================

    def start(self) -> None:
        if self._task is not None:
            return
        self._is_running = True
        self._task = asyncio.create_task(self._run(), name="binance_ws")

    async def stop(self) -> None:
        """Stop the listener and close the connection. Safe to call twice."""
        self._is_running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._close()

    async def _close(self) -> None:
        if self.ws is not None:
            ws, self.ws = self.ws, None
            await ws.close()
            self.logger.debug(f"WebSocket closed ({self.url})")

    # ============================================
    # Subscriptions
    # ============================================

    async def _send(self, method: str, streams: Iterable[str]) -> None:
        params = sorted(streams)
        if not params or self.ws is None:
            return
        self._request_id += 1
        await self.ws.send(json.dumps({"method": method, "params": params, "id": self._request_id}))
        self.logger.info(f"{method} {params}")

    async def subscribe(self, streams: Iterable[str]) -> None:
        new = set(streams) - self.streams
        self.streams |= new
        await self._send("SUBSCRIBE", new)

    async def unsubscribe(self, streams: Iterable[str]) -> None:
        gone = set(streams) & self.streams
        self.streams -= gone
        await self._send("UNSUBSCRIBE", gone)

    async def flush(self, streams: Iterable[str]) -> None:
        """Bring the live subscription set in line with `streams`."""
        wanted = set(streams)
        await self.unsubscribe(self.streams - wanted)
        await self.subscribe(wanted)

    # ============================================
    # Message Streaming with Auto-Reconnect
    # ============================================

    async def _run(self) -> None:
        """
        Connect, resubscribe and pump messages until stopped.

        Reconnection Strategy:
            Attempt N waits min(2^(N-1), max_reconnect_delay) seconds.
        """
        while self._is_running:
            try:
                self.ws = await websockets.connect(self.url)
                self._reconnect_attempt = 0
                self.logger.info(f"✓ Connected to {self.url}")
                await self._send("SUBSCRIBE", self.streams)

                async for message in self.ws:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        self.logger.warning(f"Received invalid JSON from Binance: {str(message)[:100]}")
                        continue

                    # Replies to SUBSCRIBE / UNSUBSCRIBE: {"result": null, "id": 1}
                    if "e" not in data:
                        self.logger.debug(f"Control reply: {data}")
                        continue
                    await self.on_message(data)

                self.logger.warning("WebSocket closed by server")

            except asyncio.CancelledError:
                self.logger.info("WebSocket listener cancelled")
                raise

            except Exception as e:
                self.logger.error(f"Binance WebSocket error: {e}")

            self.ws = None
            if self._is_running:
                self._reconnect_attempt += 1
                delay = min(2 ** (self._reconnect_attempt - 1), self.max_reconnect_delay)
                self.logger.warning(f"Reconnecting in {delay}s... (attempt {self._reconnect_attempt})")
                await asyncio.sleep(delay)

        self.logger.info(f"WebSocket listener stopped for {self.url}")
