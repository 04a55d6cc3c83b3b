"""High level console client and the ``sglink`` command line tool."""
from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .channels import CommandError
from .discovery import BROADCAST_ADDRESS, ConsoleInfo, discover_consoles, send_power_on
from .session import (
    ConnectError,
    DeviceInfoHandler,
    DisconnectedHandler,
    ErrorHandler,
    Session,
    SessionClosed,
    SessionConfig,
    SessionState,
    StateHandler,
)
from .state import DeviceState, StateTracker
from .transport import UdpTransport


@dataclass
class ClientConfig:
    address: str = BROADCAST_ADDRESS
    live_id: Optional[str] = None
    userhash: str = ""
    jwt: str = ""
    display_name: str = "sglink"
    discovery_attempts: int = 3
    heartbeat_interval: float = 3.0
    command_timeout: float = 5.0
    power_on_attempts: int = 5
    power_on_delay: float = 0.5

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            address=self.address,
            live_id=self.live_id,
            userhash=self.userhash,
            jwt=self.jwt,
            display_name=self.display_name,
            discovery_attempts=self.discovery_attempts,
            heartbeat_interval=self.heartbeat_interval,
            command_timeout=self.command_timeout,
            power_on_attempts=self.power_on_attempts,
            power_on_delay=self.power_on_delay,
        )


class ConsoleClient:
    """Connect/command API for one console.

    The client outlives individual sessions: each :meth:`connect` builds
    a fresh :class:`~sglink.session.Session` sharing one
    :class:`~sglink.state.StateTracker`, so the last known state survives
    a reconnect.  Reconnecting after a failure is left to the caller.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport_factory: Callable[..., UdpTransport] = UdpTransport,
    ) -> None:
        self.config = config
        self.tracker = StateTracker()
        self._transport_factory = transport_factory
        self._session: Optional[Session] = None
        self._connecting: Optional[asyncio.Task] = None
        self._device_info_handler: Optional[DeviceInfoHandler] = None
        self._state_handler: Optional[StateHandler] = None
        self._disconnected_handler: Optional[DisconnectedHandler] = None
        self._error_handler: Optional[ErrorHandler] = None

    async def __aenter__(self) -> "ConsoleClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.disconnect()

    @property
    def state(self) -> DeviceState:
        return self.tracker.state

    @property
    def session_state(self) -> SessionState:
        if self._session is None:
            return SessionState.DISCONNECTED
        return self._session.state

    @property
    def console(self) -> Optional[ConsoleInfo]:
        return self._session.console if self._session else None

    def register_device_info_handler(self, handler: DeviceInfoHandler) -> None:
        self._device_info_handler = handler

    def register_state_handler(self, handler: StateHandler) -> None:
        self._state_handler = handler

    def register_disconnected_handler(self, handler: DisconnectedHandler) -> None:
        self._disconnected_handler = handler

    def register_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handler = handler

    async def connect(self) -> None:
        """Connect, or join a connect already under way and share its outcome."""
        if self._connecting is None:
            if self.session_state is SessionState.AUTHENTICATED:
                return
            self._session = self._new_session()
            self._connecting = asyncio.ensure_future(self._session.connect())
            self._connecting.add_done_callback(self._connect_done)
        await asyncio.shield(self._connecting)

    def _new_session(self) -> Session:
        session = Session(
            self.config.session_config(),
            self.tracker,
            transport_factory=self._transport_factory,
        )
        session.register_device_info_handler(self._handle_device_info)
        session.register_state_handler(self._handle_state)
        session.register_disconnected_handler(self._handle_disconnected)
        session.register_error_handler(self._handle_error)
        return session

    def _connect_done(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None
        # every caller already saw the outcome through shield
        if not task.cancelled():
            task.exception()

    def disconnect(self) -> None:
        if self._session is not None:
            self._session.disconnect()

    async def power_on(self) -> None:
        """Fire power-on packets; poll discovery afterwards to confirm."""
        live_id = self.config.live_id
        if not live_id and self.console is not None:
            live_id = self.console.live_id
        if not live_id:
            raise ValueError("powering on needs the console live id")
        address = self.console.address if self.console is not None else self.config.address
        transport = self._transport_factory(lambda data, source: None)
        await transport.bind()
        try:
            await send_power_on(
                transport,
                live_id,
                address,
                attempts=self.config.power_on_attempts,
                delay=self.config.power_on_delay,
            )
        finally:
            transport.close()

    def power_off(self) -> None:
        if self._session is None:
            raise CommandError("not connected")
        self._session.power_off()

    async def send_command(
        self, channel: str, command: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        if self._session is None:
            raise CommandError("not connected")
        return await self._session.send_command(channel, command, params)

    def _handle_device_info(self, firmware: str, locale: str) -> None:
        if self._device_info_handler:
            self._device_info_handler(firmware, locale)

    def _handle_state(self, state: DeviceState) -> None:
        if self._state_handler:
            self._state_handler(state)

    def _handle_disconnected(self, reason: Exception) -> None:
        if self._disconnected_handler:
            self._disconnected_handler(reason)

    def _handle_error(self, kind: str, detail: str) -> None:
        if self._error_handler:
            self._error_handler(kind, detail)


# ----------------------------------------------------------------------
# Command line
# ----------------------------------------------------------------------


def parse_params(values: List[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for value in values:
        if "=" not in value:
            raise argparse.ArgumentTypeError(f"expected key=value, got {value!r}")
        key, raw = value.split("=", 1)
        params[key] = int(raw) if raw.lstrip("-").isdigit() else raw
    return params


async def _discover(args: argparse.Namespace) -> int:
    consoles = await discover_consoles(address=args.address, attempts=args.attempts)
    if not consoles:
        logging.info("No consoles found")
        return 1
    for console in consoles:
        print(f"{console.live_id}\t{console.address}\t{console.name}")
    return 0


async def _power_on(args: argparse.Namespace) -> int:
    client = ConsoleClient(ClientConfig(address=args.address, live_id=args.live_id))
    await client.power_on()
    return 0


async def _watch(args: argparse.Namespace) -> int:
    client = ConsoleClient(ClientConfig(address=args.address, live_id=args.live_id))
    finished = asyncio.Event()
    client.register_device_info_handler(
        lambda firmware, locale: logging.info("Firmware %s, locale %s", firmware, locale)
    )
    client.register_state_handler(lambda state: logging.info("State: %s", state))
    client.register_disconnected_handler(lambda reason: finished.set())
    await client.connect()
    try:
        await finished.wait()
    finally:
        client.disconnect()
    return 0


async def _send(args: argparse.Namespace) -> int:
    params = parse_params(args.param)
    config = ClientConfig(address=args.address, live_id=args.live_id)
    async with ConsoleClient(config) as client:
        result = await client.send_command(args.channel, args.command, params)
    if result is not None:
        print(result)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="sglink", description="Local console control client")
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="action", required=True)

    discover = subparsers.add_parser("discover", help="find consoles on the local network")
    discover.add_argument("--address", default=BROADCAST_ADDRESS)
    discover.add_argument("--attempts", type=int, default=3)
    discover.set_defaults(handler=_discover)

    power_on = subparsers.add_parser("power-on", help="wake a console")
    power_on.add_argument("--address", default=BROADCAST_ADDRESS)
    power_on.add_argument("--live-id", required=True)
    power_on.set_defaults(handler=_power_on)

    watch = subparsers.add_parser("watch", help="connect and log state changes")
    watch.add_argument("--address", required=True)
    watch.add_argument("--live-id")
    watch.set_defaults(handler=_watch)

    send = subparsers.add_parser("send", help="send one command")
    send.add_argument("--address", required=True)
    send.add_argument("--live-id")
    send.add_argument("--param", action="append", default=[], metavar="KEY=VALUE")
    send.add_argument("channel")
    send.add_argument("command")
    send.set_defaults(handler=_send)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        return 130
    except (ConnectError, CommandError, SessionClosed, argparse.ArgumentTypeError) as exc:
        logging.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
