"""
Subsystem Lifecycle

Every long-running service (dispatcher, probes, order manager, script pool,
syncers) follows the same four-state protocol:

    stopped  -> starting   start() entered
    starting -> running    initialisation succeeded
    starting -> stopped    initialisation failed, start() raises
    running  -> stopping   stop() entered
    stopping -> stopped    cleanup complete

start() raises AlreadyStartedError unless the state is `stopped`; stop()
raises NotStartedError unless the state is `running`. Both decisions are a
single compare-and-swap on the state, so concurrent callers get
deterministic outcomes.

Subclasses implement `_start()` / `_stop()`. PeriodicSubsystem adds the
shared probe pattern: one worker task, a shutdown event and a fixed interval.
"""

import asyncio
import contextlib
import threading
from datetime import datetime
from typing import Optional

from core.errors import AlreadyStartedError, NotStartedError, StartFailedError, StopFailedError
from core.logging import get_logger, log_subsystem_event
from core.schemas import SubsystemState, SubsystemStatus
from core.utils.time import current_utc_datetime


class Subsystem:
    """
    Base class implementing the lifecycle state machine.

    Attributes:
        name: Subsystem name used by the control surface
        state: Current SubsystemState

    Example:
        >>> class Heartbeat(Subsystem):
        ...     name = "heartbeat"
        ...     async def _start(self):
        ...         ...
        >>> hb = Heartbeat()
        >>> await hb.start()
        >>> await hb.start()   # raises AlreadyStartedError
    """

    name: str = "subsystem"

    def __init__(self) -> None:
        self._state = SubsystemState.STOPPED
        self._state_lock = threading.Lock()
        self._started_at: Optional[datetime] = None
        self._start_count = 0
        self._stop_count = 0
        self.logger = get_logger(f"services.{self.name}")

    # ============================================
    # State
    # ============================================

    def _compare_and_swap(self, expected: SubsystemState, new: SubsystemState) -> bool:
        with self._state_lock:
            if self._state != expected:
                return False
            self._state = new
            return True

    def _set_state(self, new: SubsystemState) -> None:
        with self._state_lock:
            self._state = new

    @property
    def state(self) -> SubsystemState:
        return self._state

    def is_running(self) -> bool:
        return self._state == SubsystemState.RUNNING

    def status(self) -> SubsystemStatus:
        return SubsystemStatus(
            name=self.name,
            state=self._state,
            started_at=self._started_at,
            start_count=self._start_count,
            stop_count=self._stop_count,
        )

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """
        Start the subsystem.

        Raises:
            AlreadyStartedError: If the subsystem is not stopped
            StartFailedError: If initialisation failed (state returns to stopped)
        """
        if not self._compare_and_swap(SubsystemState.STOPPED, SubsystemState.STARTING):
            raise AlreadyStartedError(self.name)

        log_subsystem_event(self.name, "starting...")
        try:
            await self._start()
        except StartFailedError:
            self._set_state(SubsystemState.STOPPED)
            raise
        except asyncio.CancelledError:
            self._set_state(SubsystemState.STOPPED)
            raise
        except Exception as e:
            self._set_state(SubsystemState.STOPPED)
            log_subsystem_event(self.name, "start failed", str(e))
            raise StartFailedError(self.name, str(e)) from e

        self._started_at = current_utc_datetime()
        self._start_count += 1
        self._set_state(SubsystemState.RUNNING)
        self.logger.info(f"{self.name} started.")

    async def stop(self) -> None:
        """
        Stop the subsystem.

        Raises:
            NotStartedError: If the subsystem is not running
            StopFailedError: If cleanup raised (the subsystem is still stopped)
        """
        if not self._compare_and_swap(SubsystemState.RUNNING, SubsystemState.STOPPING):
            raise NotStartedError(self.name)

        log_subsystem_event(self.name, "shutting down...")
        try:
            await self._stop()
        except Exception as e:
            log_subsystem_event(self.name, "stop failed", str(e))
            raise StopFailedError(self.name, str(e)) from e
        finally:
            self._stop_count += 1
            self._started_at = None
            self._set_state(SubsystemState.STOPPED)
        self.logger.info(f"{self.name} stopped.")

    async def _start(self) -> None:
        """Initialise resources. Raising aborts the start."""

    async def _stop(self) -> None:
        """Release resources."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', state='{self._state.value}')>"


class PeriodicSubsystem(Subsystem):
    """
    Subsystem with a single worker that wakes every `interval` seconds.

    The worker sleeps on the shutdown event with a timeout; a timeout is a
    tick, the event being set is shutdown. stop() sets the event and waits
    for the worker, cancelling it if a tick overruns `stop_grace` seconds.
    With `tick_on_start` the worker ticks once before its first wait.
    """

    stop_grace: float = 5.0
    tick_on_start: bool = False

    def __init__(self, interval: float) -> None:
        super().__init__()
        self.interval = interval
        self._shutdown: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def _start(self) -> None:
        await self._prepare()
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"{self.name}_worker")

    async def _stop(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()
        if self._task is not None:
            done, _ = await asyncio.wait({self._task}, timeout=self.stop_grace)
            if not done:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None
        await self._cleanup()

    async def _run(self) -> None:
        self.logger.debug(f"{self.name} worker started")
        if self.tick_on_start:
            await self._safe_tick()
        while True:
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self._safe_tick()
        self.logger.debug(f"{self.name} worker exited")

    async def _safe_tick(self) -> None:
        try:
            await self._tick()
        except Exception as e:
            self.logger.error(f"{self.name} check failed: {e}")

    async def _prepare(self) -> None:
        """Runs before the worker is created. Raising aborts the start."""

    async def _tick(self) -> None:
        """One periodic unit of work."""

    async def _cleanup(self) -> None:
        """Runs after the worker exited."""
