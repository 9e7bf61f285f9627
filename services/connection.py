"""
Internet Connectivity Monitor

Periodically resolves a list of DNS names and fetches a list of public HTTP
targets. The host is considered online when at least one DNS lookup and at
least one HTTP fetch succeed in the same check.

Other components read `monitor.online`; transitions are logged once.
"""

import asyncio
from typing import List, Optional

import httpx

from core.config import ConnectionMonitorConfig
from services.subsystem import PeriodicSubsystem


class ConnectionMonitor(PeriodicSubsystem):
    """
    Connectivity probe, managed as the `internet_monitor` subsystem.

    Attributes:
        online: Result of the latest check
        dns_list: Names resolved on every check
        public_domain_list: Hosts fetched over HTTPS on every check
    """

    name = "internet_monitor"

    def __init__(self, config: Optional[ConnectionMonitorConfig] = None) -> None:
        config = config or ConnectionMonitorConfig()
        super().__init__(interval=config.check_interval)
        self.dns_list: List[str] = list(config.dns_list)
        self.public_domain_list: List[str] = list(config.public_domain_list)
        self.http_timeout = config.http_timeout
        self._online = False
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def online(self) -> bool:
        return self._online

    async def _prepare(self) -> None:
        if not self.dns_list or not self.public_domain_list:
            raise ValueError("connection monitor needs at least one DNS name and one public domain")
        self._client = httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=False)
        await self._tick()

    async def _cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._online = False

    async def _tick(self) -> None:
        dns_ok = await self._any_succeeds([self._resolve(host) for host in self.dns_list])
        http_ok = dns_ok and await self._any_succeeds([self._probe(host) for host in self.public_domain_list])
        self._set_online(dns_ok and http_ok)

    @staticmethod
    async def _any_succeeds(checks: list) -> bool:
        results = await asyncio.gather(*checks, return_exceptions=True)
        return any(r is True for r in results)

    def _set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            self.logger.info("Internet connectivity is back online")
        else:
            self.logger.warning("Internet connectivity lost")

    async def _resolve(self, host: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.getaddrinfo(host, None), timeout=self.http_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug(f"DNS lookup for {host} failed: {e}")
            return False
        return True

    async def _probe(self, host: str) -> bool:
        url = host if "://" in host else f"https://{host}"
        try:
            await self._client.head(url)
        except httpx.HTTPError as e:
            self.logger.debug(f"HTTP probe of {url} failed: {e}")
            return False
        return True
