"""Console discovery and the power-on magic packet."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from . import packets
from .crypto import ConsoleCertificate, KeyExchangeError, load_console_certificate
from .packets import DecodeError, DiscoveryRequest, DiscoveryResponse, PowerOnRequest
from .transport import CONSOLE_PORT, Address, UdpTransport

logger = logging.getLogger(__name__)

BROADCAST_ADDRESS = "255.255.255.255"

T = TypeVar("T")


@dataclass
class ConsoleInfo:
    """A console that answered a discovery request."""

    address: str
    name: str
    uuid: str
    live_id: str
    certificate: ConsoleCertificate
    flags: int = 0
    last_error: int = 0

    @classmethod
    def from_response(cls, address: str, response: DiscoveryResponse) -> "ConsoleInfo":
        certificate = load_console_certificate(response.certificate)
        return cls(
            address=address,
            name=response.name,
            uuid=response.uuid,
            live_id=certificate.live_id,
            certificate=certificate,
            flags=response.flags,
            last_error=response.last_error,
        )

    def matches(self, live_id: Optional[str]) -> bool:
        return not live_id or self.live_id.lower() == live_id.lower()

    def __str__(self) -> str:
        return f"{self.name} ({self.live_id}) at {self.address}"


async def request_with_retries(
    send: Callable[[], None],
    waiter: Awaitable[T],
    *,
    attempts: int,
    interval: float,
) -> T:
    """Call *send* up to *attempts* times until *waiter* completes.

    Raises :class:`asyncio.TimeoutError` once every attempt goes unanswered.
    """

    future = asyncio.ensure_future(waiter)
    try:
        for attempt in range(1, attempts + 1):
            send()
            try:
                return await asyncio.wait_for(asyncio.shield(future), interval)
            except asyncio.TimeoutError:
                logger.debug("No answer after attempt %d/%d", attempt, attempts)
        raise asyncio.TimeoutError
    finally:
        if not future.done():
            future.cancel()


async def discover_consoles(
    *,
    address: str = BROADCAST_ADDRESS,
    attempts: int = 3,
    interval: float = 1.0,
) -> List[ConsoleInfo]:
    """Broadcast discovery requests and collect every console that answers."""

    found: Dict[str, ConsoleInfo] = {}

    def on_datagram(data: bytes, source: Address) -> None:
        try:
            packet = packets.decode(data)
        except DecodeError as exc:
            logger.debug("Dropping datagram from %s: %s", source, exc)
            return
        if not isinstance(packet, DiscoveryResponse):
            return
        try:
            console = ConsoleInfo.from_response(source[0], packet)
        except KeyExchangeError as exc:
            logger.debug("Ignoring console at %s: %s", source[0], exc)
            return
        if console.live_id not in found:
            logger.info("Discovered %s", console)
        found[console.live_id] = console

    transport = UdpTransport(on_datagram)
    await transport.bind()
    try:
        request = packets.encode(DiscoveryRequest())
        for _ in range(attempts):
            transport.send(request, (address, CONSOLE_PORT))
            await asyncio.sleep(interval)
    finally:
        transport.close()
    return list(found.values())


async def send_power_on(
    transport: UdpTransport,
    live_id: str,
    address: str,
    *,
    attempts: int = 5,
    delay: float = 0.5,
) -> None:
    """Send power-on packets to *address* and the broadcast address.

    Nothing acknowledges these; callers poll discovery to confirm the
    console came up.
    """

    payload = packets.encode(PowerOnRequest(live_id=live_id))
    targets = [(address, CONSOLE_PORT)]
    if address != BROADCAST_ADDRESS:
        targets.append((BROADCAST_ADDRESS, CONSOLE_PORT))
    for attempt in range(attempts):
        for target in targets:
            transport.send(payload, target)
        if attempt < attempts - 1:
            await asyncio.sleep(delay)
    logger.info("Sent %d power-on packets for %s", attempts * len(targets), live_id)
