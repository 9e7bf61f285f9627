"""
Communications Manager

Pushes event summaries to external relayers. Events come from explicit
push_event() calls and from dispatcher pipes the manager subscribes to on
start (by default, holdings changes of every venue).

Relayers:
    log      writes events to the application log
    webhook  POSTs events as JSON to `webhook_url`

A relayer that fails to connect or to deliver is logged and skipped; relayer
errors never reach the caller.
"""

import asyncio
import contextlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, Field

from core.config import CommunicationsConfig
from core.logging import get_logger
from core.utils.time import current_utc_datetime
from services.dispatcher import Dispatcher, Pipe
from services.subsystem import Subsystem


class Event(BaseModel):
    type: str
    message: str
    timestamp: datetime = Field(default_factory=current_utc_datetime)


# ============================================
# Relayers
# ============================================

class Relayer(ABC):
    name: str

    def __init__(self, config: CommunicationsConfig) -> None:
        self.config = config
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    @abstractmethod
    async def push_event(self, event: Event) -> None:
        ...


class LogRelayer(Relayer):
    name = "log"

    def __init__(self, config: CommunicationsConfig) -> None:
        super().__init__(config)
        self.logger = get_logger("communications.log")

    async def push_event(self, event: Event) -> None:
        self.logger.info(f"[{event.type}] {event.message}")


class WebhookRelayer(Relayer):
    name = "webhook"

    def __init__(self, config: CommunicationsConfig) -> None:
        super().__init__(config)
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if not self.config.webhook_url:
            raise ValueError("webhook relayer enabled without webhook_url")
        self._client = httpx.AsyncClient(timeout=self.config.webhook_timeout)
        self.connected = True

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.connected = False

    async def push_event(self, event: Event) -> None:
        response = await self._client.post(self.config.webhook_url, json=event.model_dump(mode="json"))
        response.raise_for_status()


RELAYERS: Dict[str, Type[Relayer]] = {
    LogRelayer.name: LogRelayer,
    WebhookRelayer.name: WebhookRelayer,
}


def summarize(value: Any) -> Event:
    """Turn a dispatcher record into an event."""
    venue = getattr(value, "venue", "")
    if hasattr(value, "accounts"):
        currencies = sorted({b.currency for a in value.accounts for b in a.currencies})
        return Event(type="holdings", message=f"{venue} holdings updated: {', '.join(currencies) or 'empty'}")
    if hasattr(value, "last"):
        return Event(type="ticker", message=f"{venue} {value.instrument} last {value.last}")
    return Event(type=type(value).__name__.lower(), message=str(value))


# ============================================
# Manager
# ============================================

class CommunicationsManager(Subsystem):
    """
    Event relay, managed as the `communications` subsystem.

    Attributes:
        relayers: Relayers built from the config on start (or injected)
    """

    name = "communications"

    def __init__(
        self,
        config: Optional[CommunicationsConfig] = None,
        dispatcher: Optional[Dispatcher] = None,
        sources: Optional[List[Callable[[], Pipe]]] = None,
        relayers: Optional[List[Relayer]] = None,
    ) -> None:
        super().__init__()
        self.config = config or CommunicationsConfig()
        self.dispatcher = dispatcher
        self.sources = list(sources or [])
        self._injected = relayers
        self.relayers: List[Relayer] = []
        self._pipes: List[Pipe] = []
        self._tasks: List[asyncio.Task] = []

    async def _start(self) -> None:
        if self._injected is not None:
            self.relayers = list(self._injected)
        else:
            self.relayers = []
            for name in self.config.relayers:
                cls = RELAYERS.get(name)
                if cls is None:
                    raise ValueError(f"unknown relayer '{name}'")
                self.relayers.append(cls(self.config))
        if not self.relayers:
            raise ValueError("no communication relayers enabled")

        for relayer in self.relayers:
            try:
                await relayer.connect()
                self.logger.debug(f"Communications: {relayer.name} is enabled and online.")
            except Exception as e:
                self.logger.error(f"Communications: {relayer.name} failed to connect. Err: {e}")

        for source in self.sources:
            try:
                pipe = source()
            except Exception as e:
                self.logger.error(f"Communications: cannot subscribe to event source: {e}")
                continue
            self._pipes.append(pipe)
            self._tasks.append(asyncio.create_task(self._relay(pipe), name="communications_relay"))

    async def _stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        if self.dispatcher is not None:
            for pipe in self._pipes:
                self.dispatcher.release(pipe)
        self._pipes = []
        for relayer in self.relayers:
            try:
                await relayer.disconnect()
            except Exception as e:
                self.logger.error(f"Communications: {relayer.name} failed to disconnect. Err: {e}")

    async def _relay(self, pipe: Pipe) -> None:
        async for value in pipe:
            await self.push_event(summarize(value))

    async def push_event(self, event: Event) -> None:
        for relayer in self.relayers:
            if not relayer.connected:
                continue
            try:
                await relayer.push_event(event)
            except Exception as e:
                self.logger.error(
                    f"Communications error - push_event() in relayer {relayer.name} with {event.type}. Err {e}"
                )

    def get_status(self) -> Dict[str, Dict[str, bool]]:
        return {r.name: {"enabled": True, "connected": r.connected} for r in self.relayers}
