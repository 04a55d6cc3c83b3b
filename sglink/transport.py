"""UDP transport for console sessions.

Pure datagram I/O: no ordering, delivery or protocol knowledge.  Inbound
datagrams are handed to a callback on the event loop and socket level
failures are reported once through an error callback.
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

CONSOLE_PORT = 5050
MAX_DATAGRAM = 2048

Address = Tuple[str, int]
DatagramHandler = Callable[[bytes, Address], None]
ErrorHandler = Callable[[Exception], None]


class TransportError(Exception):
    """Raised when the socket can no longer be used."""


class _DatagramProtocol(asyncio.DatagramProtocol):
    """Bridges asyncio datagram callbacks to :class:`UdpTransport`."""

    def __init__(self, owner: "UdpTransport") -> None:
        self.owner = owner

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self.owner._deliver(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("UDP error: %s", exc)
        self.owner._fail(TransportError(str(exc)))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self.owner._fail(TransportError(str(exc)))


class UdpTransport:
    """One bound UDP socket owned by a single session."""

    def __init__(
        self,
        on_datagram: DatagramHandler,
        on_error: Optional[ErrorHandler] = None,
        *,
        local_addr: Address = ("0.0.0.0", 0),
        broadcast: bool = True,
    ) -> None:
        self._on_datagram = on_datagram
        self._on_error = on_error
        self._local_addr = local_addr
        self._broadcast = broadcast
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._closing = False

    @property
    def bound(self) -> bool:
        return self._transport is not None

    @property
    def local_address(self) -> Optional[Address]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    async def bind(self) -> None:
        if self._transport is not None:
            return
        if self._closing:
            raise TransportError("transport already closed")
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        if self._broadcast:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        try:
            sock.bind(self._local_addr)
        except OSError as exc:
            sock.close()
            raise TransportError(f"cannot bind {self._local_addr}: {exc}") from exc
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramProtocol(self), sock=sock
        )
        logger.debug("UDP transport bound to %s", self.local_address)

    def send(self, data: bytes, address: Address) -> None:
        """Queue *data* for *address*; never blocks."""
        if self._transport is None or self._transport.is_closing():
            raise TransportError("transport is not bound")
        self._transport.sendto(data, address)

    def close(self) -> None:
        self._closing = True
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def _deliver(self, data: bytes, address: Address) -> None:
        try:
            self._on_datagram(data, address)
        except Exception:
            logger.exception("Error handling datagram from %s", address)

    def _fail(self, exc: Exception) -> None:
        if self._closing:
            return
        if self._on_error is not None:
            self._on_error(exc)
