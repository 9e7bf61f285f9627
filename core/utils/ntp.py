"""
Minimal SNTP Client

Queries an NTP server over UDP (RFC 4330 client mode) and returns the
server's transmit time as a UTC datetime. Servers are given as "host" or
"host:port"; a pool is tried in order until one answers.

Usage:
    from core.utils.ntp import fetch_ntp_time

    server_time = await fetch_ntp_time(["0.pool.ntp.org:123", "pool.ntp.org:123"])
"""

import asyncio
import struct
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from core.logging import get_logger

logger = get_logger(__name__)

# Seconds between 1900-01-01 (NTP epoch) and 1970-01-01 (Unix epoch)
NTP_EPOCH_OFFSET = 2208988800
NTP_PACKET = struct.Struct("!12I")


def _split_address(server: str) -> Tuple[str, int]:
    host, _, port = server.rpartition(":")
    if not host:
        return server, 123
    return host, int(port)


class _SNTPProtocol(asyncio.DatagramProtocol):
    def __init__(self, answer: asyncio.Future):
        self.answer = answer

    def connection_made(self, transport):
        # LI = 0, VN = 3, Mode = 3 (client)
        request = bytearray(48)
        request[0] = 0x1B
        transport.sendto(bytes(request))

    def datagram_received(self, data, addr):
        if not self.answer.done():
            self.answer.set_result(data)

    def error_received(self, exc):
        if not self.answer.done():
            self.answer.set_exception(exc)


def decode_transmit_time(packet: bytes) -> datetime:
    """Extract the transmit timestamp from an SNTP reply."""
    if len(packet) < 48:
        raise ValueError(f"short NTP reply ({len(packet)} bytes)")
    fields = NTP_PACKET.unpack(packet[:48])
    seconds, fraction = fields[10], fields[11]
    if seconds == 0:
        raise ValueError("NTP reply carries no transmit time")
    unix = seconds - NTP_EPOCH_OFFSET + fraction / 2**32
    return datetime.fromtimestamp(unix, tz=timezone.utc)


async def query_server(server: str, timeout: float = 2.0) -> datetime:
    host, port = _split_address(server)
    loop = asyncio.get_running_loop()
    answer = loop.create_future()
    transport, _ = await loop.create_datagram_endpoint(
        lambda: _SNTPProtocol(answer), remote_addr=(host, port)
    )
    try:
        packet = await asyncio.wait_for(answer, timeout)
    finally:
        transport.close()
    return decode_transmit_time(packet)


async def fetch_ntp_time(pool: List[str], timeout: float = 2.0) -> datetime:
    """
    Return the time reported by the first server in the pool that answers.

    Raises:
        ConnectionError: If no server in the pool answered
    """
    last_error: Optional[BaseException] = None
    for server in pool:
        try:
            return await query_server(server, timeout)
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"NTP server {server} failed: {e}")
            last_error = e
    raise ConnectionError(f"no NTP server in pool answered: {last_error}")
