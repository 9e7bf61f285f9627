"""
NTP Time Keeper

Compares the local clock against an NTP pool on every interval and logs when
the offset leaves the allowed window [-allowed_negative_difference,
+allowed_difference].

Levels:
    disabled     the subsystem refuses to start
    prompt_once  the first out-of-window offset asks the operator (through
                 an injected prompt callable) whether to warn, alert or
                 disable checks for the rest of the run; the initial check
                 at start is retried up to retry_limit times
    alert        out-of-window offsets log at ERROR
    warn         out-of-window offsets log at WARNING
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from core.config import NTPClientConfig, NTPLevel
from core.utils.ntp import fetch_ntp_time
from core.utils.time import current_utc_datetime
from services.subsystem import PeriodicSubsystem

# (offset seconds) -> "warn" | "alert" | "disable"; may block, runs in a thread
PromptCallable = Callable[[float], str]
FetchCallable = Callable[[List[str], float], Awaitable[datetime]]

PROMPT_CHOICES = {
    "warn": NTPLevel.WARN,
    "alert": NTPLevel.ALERT,
    "disable": NTPLevel.DISABLED,
}


class NTPManager(PeriodicSubsystem):
    """
    Time-sync probe, managed as the `ntp_timekeeper` subsystem.

    Attributes:
        level: Current reaction level (may change after the prompt)
        in_sync: Result of the latest successful check
        last_offset: Latest observed offset in seconds (server - local)
    """

    name = "ntp_timekeeper"

    def __init__(
        self,
        config: Optional[NTPClientConfig] = None,
        prompt: Optional[PromptCallable] = None,
        fetcher: Optional[FetchCallable] = None,
        clock: Callable[[], datetime] = current_utc_datetime,
    ) -> None:
        config = config or NTPClientConfig()
        super().__init__(interval=config.check_interval)
        self.config = config
        self.level = config.level
        self.in_sync = True
        self.last_offset: Optional[float] = None
        self._prompt = prompt
        self._fetch = fetcher or fetch_ntp_time
        self._clock = clock
        self._prompt_pending = False

    async def _prepare(self) -> None:
        self.level = self.config.level
        if self.level == NTPLevel.DISABLED:
            raise ValueError("NTP client disabled")
        if not self.config.pool:
            raise ValueError("NTP pool is empty")

        self._prompt_pending = self.level == NTPLevel.PROMPT_ONCE
        if not self._prompt_pending:
            return

        # UDP queries fail transiently; retry the initial check before giving up
        for attempt in range(1, self.config.retry_limit + 1):
            try:
                await self.check_time()
                return
            except ConnectionError as e:
                if attempt == self.config.retry_limit:
                    raise
                self.logger.debug(f"Initial NTP check attempt {attempt} failed: {e}")

    async def _tick(self) -> None:
        if self.level == NTPLevel.DISABLED:
            return
        await self.check_time()

    async def check_time(self) -> float:
        """
        Query the pool once and react to the offset.

        Returns:
            Offset in seconds, positive when the local clock is behind

        Raises:
            ConnectionError: If no server in the pool answered
        """
        server_time = await self._fetch(self.config.pool, self.config.query_timeout)
        local_time = self._clock()
        offset = (server_time - local_time).total_seconds()
        self.last_offset = offset

        allowed = self.config.allowed_difference
        allowed_negative = -self.config.allowed_negative_difference
        if allowed_negative <= offset <= allowed:
            if not self.in_sync:
                self.logger.info(f"Time back in sync (offset {offset:+.3f}s)")
            self.in_sync = True
            return offset

        self.in_sync = False
        message = (
            f"Time out of sync (NTP): {server_time} | (local): {local_time} | "
            f"(difference): {offset:+.3f}s | (allowed): +{allowed}s / {allowed_negative}s"
        )
        if self.level == NTPLevel.ALERT:
            self.logger.error(message)
        else:
            self.logger.warning(message)

        if self._prompt_pending:
            self._prompt_pending = False
            await self._ask_operator(offset)
        return offset

    async def _ask_operator(self, offset: float) -> None:
        if self._prompt is None:
            self.level = NTPLevel.WARN
            self.logger.info("No operator prompt available, NTP drift will be logged as warnings")
            return
        answer = await asyncio.to_thread(self._prompt, offset)
        choice = PROMPT_CHOICES.get(str(answer).strip().lower())
        if choice is None:
            self.logger.warning(f"Unrecognised NTP prompt answer '{answer}', keeping warnings")
            choice = NTPLevel.WARN
        self.level = choice
        if choice == NTPLevel.DISABLED:
            self.logger.info("NTP checks disabled for the rest of the run")
        else:
            self.logger.info(f"NTP drift will be reported at level '{choice.value}'")
