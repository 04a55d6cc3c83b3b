"""Session state machine for one console.

A :class:`Session` drives a single connection attempt through
``DISCOVERING -> CONNECTING -> CONNECTED -> AUTHENTICATED`` and owns the
UDP socket, the session keys and both sequence counters for its whole
life.  Once it reaches ``DISCONNECTED`` again it is spent; callers create
a fresh instance to reconnect.

Everything runs on the event loop: datagrams arrive through the
transport callback, timers are tasks, and the only suspension points are
the discovery response, the connect response, the authentication ack and
correlated command responses.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import packets
from .channels import ChannelManager, CommandError
from .crypto import (
    AuthError,
    KeyExchangeError,
    ReplayError,
    SequenceWindow,
    SessionCrypto,
    generate_keypair,
)
from .discovery import BROADCAST_ADDRESS, ConsoleInfo, request_with_retries
from .messages import (
    ACK_CHANNEL_ID,
    CORE_CHANNEL_ID,
    Ack,
    ConsoleStatus,
    Disconnect,
    DisconnectReason,
    LocalJoin,
    MessageType,
    PowerOff,
)
from .packets import (
    ConnectRequest,
    ConnectResponse,
    DecodeError,
    DiscoveryRequest,
    DiscoveryResponse,
    MessageHeader,
    MessagePacket,
    PacketType,
)
from .state import DeviceState, StateTracker, StatusUpdate
from .transport import CONSOLE_PORT, Address, TransportError, UdpTransport

logger = logging.getLogger(__name__)

DeviceInfoHandler = Callable[[str, str], None]
StateHandler = Callable[[DeviceState], None]
DisconnectedHandler = Callable[[Exception], None]
ErrorHandler = Callable[[str, str], None]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class ConnectError(Exception):
    """Base class for failures that end a session attempt."""


class DiscoveryTimeout(ConnectError):
    pass


class HandshakeFailed(ConnectError):
    pass


class HandshakeTimeout(ConnectError):
    pass


class AuthRejected(ConnectError):
    pass


class ConnectionLost(ConnectError):
    pass


class SessionClosed(Exception):
    """Raised into every pending await when the session shuts down."""


@dataclass
class SessionConfig:
    address: str = BROADCAST_ADDRESS
    live_id: Optional[str] = None
    port: int = CONSOLE_PORT
    userhash: str = ""
    jwt: str = ""
    display_name: str = "sglink"
    discovery_attempts: int = 3
    discovery_interval: float = 1.0
    connect_attempts: int = 3
    connect_interval: float = 1.0
    auth_timeout: float = 5.0
    heartbeat_interval: float = 3.0
    heartbeat_misses: int = 3
    command_timeout: float = 5.0
    fragment_timeout: float = 5.0
    power_on_attempts: int = 5
    power_on_delay: float = 0.5


class Session:
    """One connection attempt to one console, from discovery to teardown."""

    def __init__(
        self,
        config: SessionConfig,
        tracker: Optional[StateTracker] = None,
        *,
        transport_factory: Callable[..., UdpTransport] = UdpTransport,
    ) -> None:
        self.config = config
        self.tracker = tracker or StateTracker()
        self._transport_factory = transport_factory
        self._transport: Optional[UdpTransport] = None
        self._remote: Address = (config.address, config.port)
        self._state = SessionState.DISCONNECTED
        self._started = False
        self._closed = False
        self._close_reason: Optional[Exception] = None

        self._console: Optional[ConsoleInfo] = None
        self._crypto: Optional[SessionCrypto] = None
        self._participant_id = 0
        self._outbound = itertools.count(1)
        self._inbound = SequenceWindow()
        self._last_inbound = 0.0

        self._waiters: Dict[PacketType, asyncio.Future] = {}
        self._ack_waiters: Dict[int, asyncio.Future] = {}
        self._deferred: List[MessagePacket] = []
        self._tasks: List[asyncio.Task] = []
        self._device_info_sent = False

        self.channels = ChannelManager(
            self.send_message,
            self._on_status,
            command_timeout=config.command_timeout,
            fragment_timeout=config.fragment_timeout,
        )

        self._device_info_handler: Optional[DeviceInfoHandler] = None
        self._state_handler: Optional[StateHandler] = None
        self._disconnected_handler: Optional[DisconnectedHandler] = None
        self._error_handler: Optional[ErrorHandler] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def console(self) -> Optional[ConsoleInfo]:
        return self._console

    @property
    def participant_id(self) -> int:
        return self._participant_id

    @property
    def close_reason(self) -> Optional[Exception]:
        return self._close_reason

    def register_device_info_handler(self, handler: DeviceInfoHandler) -> None:
        self._device_info_handler = handler

    def register_state_handler(self, handler: StateHandler) -> None:
        self._state_handler = handler

    def register_disconnected_handler(self, handler: DisconnectedHandler) -> None:
        self._disconnected_handler = handler

    def register_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handler = handler

    async def connect(self) -> None:
        """Discover, handshake and authenticate; raises a :class:`ConnectError` on failure."""
        if self._started:
            raise ConnectError("session already used; create a new one to reconnect")
        self._started = True
        self._transport = self._transport_factory(self._on_datagram, self._on_transport_error)
        try:
            await self._transport.bind()
            await self._discover()
            await self._handshake()
            await self._authenticate()
        except (ConnectError, SessionClosed) as exc:
            self._terminate(exc)
            raise
        except TransportError as exc:
            error = ConnectionLost(str(exc))
            self._terminate(error)
            raise error from exc
        except asyncio.CancelledError:
            self._terminate(SessionClosed("connect cancelled"))
            raise
        self._start_timers()
        self._replay_deferred()

    def disconnect(self) -> None:
        """Best-effort notify the console, then tear everything down."""
        if not self._started:
            self._started = self._closed = True
            return
        if self._closed:
            return
        if self._crypto is not None and self._state in (SessionState.CONNECTED, SessionState.AUTHENTICATED):
            try:
                self.send_message(Disconnect(reason=DisconnectReason.APP_CLOSE))
            except (TransportError, SessionClosed) as exc:
                logger.debug("Could not notify console of disconnect: %s", exc)
        self._terminate(SessionClosed("disconnected by caller"))

    def power_off(self) -> None:
        self._require_authenticated()
        assert self._console is not None
        logger.info("Powering off %s", self._console)
        self.send_message(PowerOff(live_id=self._console.live_id))

    async def send_command(self, channel: str, command: str, params: Optional[dict] = None):
        """Send *command* on *channel*; fails fast when not authenticated."""
        self._require_authenticated()
        try:
            return await self.channels.send(channel, command, params)
        except TransportError as exc:
            self._terminate(ConnectionLost(str(exc)))
            raise CommandError(f"transport failed while sending {command!r}") from exc

    def send_message(
        self,
        message,
        *,
        channel_id: int = CORE_CHANNEL_ID,
        need_ack: bool = False,
    ) -> int:
        """Encrypt and send one payload; returns the sequence number it used."""
        if self._crypto is None or self._state not in (SessionState.CONNECTED, SessionState.AUTHENTICATED):
            raise SessionClosed(f"cannot send while {self._state.value}")
        sequence = next(self._outbound)
        header = MessageHeader(
            sequence=sequence,
            message_type=message.MESSAGE_TYPE,
            channel_id=channel_id,
            source_participant=self._participant_id,
            need_ack=need_ack,
        )
        self._send_raw(packets.encode(MessagePacket(header, message.pack()), self._crypto))
        return sequence

    def _require_authenticated(self) -> None:
        if self._state is not SessionState.AUTHENTICATED:
            raise CommandError(f"session is {self._state.value}, not authenticated")

    # ------------------------------------------------------------------
    # Connection phases
    # ------------------------------------------------------------------
    async def _discover(self) -> None:
        self._set_state(SessionState.DISCOVERING)
        request = packets.encode(DiscoveryRequest())
        future = self._expect(PacketType.DISCOVERY_RESPONSE)
        try:
            self._console = await request_with_retries(
                lambda: self._send_raw(request),
                future,
                attempts=self.config.discovery_attempts,
                interval=self.config.discovery_interval,
            )
        except asyncio.TimeoutError:
            raise DiscoveryTimeout(f"no console answered discovery at {self.config.address}") from None
        finally:
            self._waiters.pop(PacketType.DISCOVERY_RESPONSE, None)
        self._remote = (self._console.address, self.config.port)
        logger.info("Found %s", self._console)

    async def _handshake(self) -> None:
        assert self._console is not None
        self._set_state(SessionState.CONNECTING)
        private_key, public_key = generate_keypair()
        try:
            self._crypto = SessionCrypto.from_handshake(private_key, self._console.certificate.public_key)
        except (KeyExchangeError, ValueError) as exc:
            raise HandshakeFailed(f"key exchange failed: {exc}") from exc
        request = ConnectRequest(
            sg_uuid=uuid.uuid4().bytes,
            public_key=public_key,
            iv=SessionCrypto.random_iv(),
            userhash=self.config.userhash,
            jwt=self.config.jwt,
        )
        datagram = packets.encode(request, self._crypto)
        future = self._expect(PacketType.CONNECT_RESPONSE)
        try:
            response: ConnectResponse = await request_with_retries(
                lambda: self._send_raw(datagram),
                future,
                attempts=self.config.connect_attempts,
                interval=self.config.connect_interval,
            )
        except asyncio.TimeoutError:
            raise HandshakeTimeout("no connect response from console") from None
        finally:
            self._waiters.pop(PacketType.CONNECT_RESPONSE, None)
        if response.connect_result != 0:
            raise HandshakeFailed(f"console refused connection (result {response.connect_result})")
        self._participant_id = response.participant_id
        self._set_state(SessionState.CONNECTED)

    async def _authenticate(self) -> None:
        join = LocalJoin(display_name=self.config.display_name)
        sequence = self.send_message(join, need_ack=True)
        future = asyncio.get_running_loop().create_future()
        self._ack_waiters[sequence] = future
        try:
            accepted = await asyncio.wait_for(future, self.config.auth_timeout)
        except asyncio.TimeoutError:
            raise HandshakeTimeout("console did not acknowledge authentication") from None
        finally:
            self._ack_waiters.pop(sequence, None)
        if not accepted:
            raise AuthRejected("console rejected authentication")
        self._last_inbound = asyncio.get_running_loop().time()
        self._device_info_sent = False
        self.tracker.reset_for_session()
        self._set_state(SessionState.AUTHENTICATED)

    def _expect(self, packet_type: PacketType) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[packet_type] = future
        return future

    def _replay_deferred(self) -> None:
        deferred, self._deferred = self._deferred, []
        for packet in deferred:
            if self._state is not SessionState.AUTHENTICATED:
                return
            self._route(packet)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _start_timers(self) -> None:
        self._tasks.append(asyncio.ensure_future(self._heartbeat_loop()))
        self._tasks.append(asyncio.ensure_future(self._sweep_loop()))

    async def _heartbeat_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.heartbeat_interval
        allowed_silence = interval * self.config.heartbeat_misses
        while self._state is SessionState.AUTHENTICATED:
            await asyncio.sleep(interval)
            silence = loop.time() - self._last_inbound
            if silence >= allowed_silence:
                logger.warning("No traffic from console for %.1fs", silence)
                self._terminate(ConnectionLost(f"no traffic for {silence:.1f}s"))
                return
            try:
                self.send_message(
                    Ack(low_watermark=self._inbound.low_watermark),
                    channel_id=ACK_CHANNEL_ID,
                    need_ack=True,
                )
            except TransportError as exc:
                self._terminate(ConnectionLost(f"heartbeat failed: {exc}"))
                return

    async def _sweep_loop(self) -> None:
        interval = self.config.fragment_timeout / 2
        while self._state is SessionState.AUTHENTICATED:
            await asyncio.sleep(interval)
            self.channels.fragments.sweep()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _on_datagram(self, data: bytes, source: Address) -> None:
        if self._closed:
            return
        try:
            packet_type = packets.packet_type_of(data)
        except DecodeError as exc:
            logger.debug("Dropping datagram from %s: %s", source, exc)
            return
        if packet_type == PacketType.DISCOVERY_RESPONSE:
            self._handle_discovery_response(data, source)
        elif packet_type == PacketType.CONNECT_RESPONSE:
            self._handle_connect_response(data)
        elif packet_type == PacketType.MESSAGE:
            self._handle_message(data)
        else:
            logger.debug("Ignoring packet 0x%04x from %s", packet_type, source)

    def _handle_discovery_response(self, data: bytes, source: Address) -> None:
        future = self._waiters.get(PacketType.DISCOVERY_RESPONSE)
        if future is None or future.done():
            return
        try:
            response = packets.decode(data)
            console = ConsoleInfo.from_response(source[0], response)
        except (DecodeError, KeyExchangeError) as exc:
            logger.debug("Dropping discovery response from %s: %s", source, exc)
            return
        assert isinstance(response, DiscoveryResponse)
        if not console.matches(self.config.live_id):
            logger.debug("Ignoring %s, waiting for %s", console, self.config.live_id)
            return
        future.set_result(console)

    def _handle_connect_response(self, data: bytes) -> None:
        future = self._waiters.get(PacketType.CONNECT_RESPONSE)
        if future is None or future.done() or self._crypto is None:
            return
        try:
            response = packets.decode(data, self._crypto)
        except (DecodeError, AuthError) as exc:
            logger.debug("Dropping connect response: %s", exc)
            return
        future.set_result(response)

    def _handle_message(self, data: bytes) -> None:
        if self._crypto is None or self._state not in (SessionState.CONNECTED, SessionState.AUTHENTICATED):
            logger.debug("Dropping message received while %s", self._state.value)
            return
        try:
            packet = packets.decode(data, self._crypto)
        except (DecodeError, AuthError) as exc:
            logger.debug("Dropping message: %s", exc)
            return
        assert isinstance(packet, MessagePacket)
        header = packet.header
        self._last_inbound = asyncio.get_running_loop().time()
        if header.need_ack:
            self._send_ack(header.sequence)
        try:
            self._inbound.check_and_update(header.sequence)
        except ReplayError as exc:
            logger.debug("Dropping message: %s", exc)
            return
        if header.message_type == MessageType.ACK and not header.is_fragment:
            self._handle_ack(packet)
        elif self._state is SessionState.CONNECTED:
            self._deferred.append(packet)
        else:
            self._route(packet)

    def _send_ack(self, sequence: int) -> None:
        ack = Ack(low_watermark=max(self._inbound.low_watermark, sequence), processed=[sequence])
        try:
            self.send_message(ack, channel_id=ACK_CHANNEL_ID)
        except TransportError as exc:
            logger.debug("Could not acknowledge %d: %s", sequence, exc)

    def _handle_ack(self, packet: MessagePacket) -> None:
        try:
            ack = Ack.unpack(packet.payload)
        except DecodeError as exc:
            logger.debug("Dropping malformed ack: %s", exc)
            return
        for sequence in ack.processed:
            self._resolve_ack(sequence, True)
        for sequence in ack.rejected:
            self._resolve_ack(sequence, False)

    def _resolve_ack(self, sequence: int, accepted: bool) -> None:
        future = self._ack_waiters.get(sequence)
        if future is not None and not future.done():
            future.set_result(accepted)

    def _route(self, packet: MessagePacket) -> None:
        header = packet.header
        if header.message_type == MessageType.DISCONNECT and not header.is_fragment:
            try:
                message = Disconnect.unpack(packet.payload)
            except DecodeError as exc:
                logger.debug("Dropping malformed disconnect: %s", exc)
                return
            try:
                reason = DisconnectReason(message.reason).name.lower()
            except ValueError:
                reason = str(message.reason)
            logger.info("Console closed the session (%s)", reason)
            self._terminate(ConnectionLost(f"console disconnected ({reason})"))
            return
        self.channels.dispatch(packet)

    def _on_status(self, update: StatusUpdate, status: Optional[ConsoleStatus]) -> None:
        if status is not None and not self._device_info_sent:
            self._device_info_sent = True
            logger.info("Console firmware %s, locale %s", status.firmware, status.locale)
            if self._device_info_handler:
                self._device_info_handler(status.firmware, status.locale)
        snapshot = self.tracker.apply(update)
        if snapshot is not None and self._state_handler:
            self._state_handler(snapshot)

    def _on_transport_error(self, exc: Exception) -> None:
        if self._state is SessionState.DISCOVERING:
            # broadcast probes routinely bounce off unreachable hosts
            logger.debug("Ignoring transport error while discovering: %s", exc)
            return
        self._terminate(ConnectionLost(f"transport failed: {exc}"))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("Session %s -> %s", self._state.value, state.value)
            self._state = state

    def _send_raw(self, data: bytes) -> None:
        if self._transport is None:
            raise TransportError("session has no transport")
        self._transport.send(data, self._remote)

    def _terminate(self, reason: Exception) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        was_authenticated = self._state is SessionState.AUTHENTICATED
        self._set_state(SessionState.DISCONNECTED)

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks.clear()

        closed = reason if isinstance(reason, SessionClosed) else SessionClosed(str(reason))
        for future in list(self._waiters.values()) + list(self._ack_waiters.values()):
            if not future.done():
                future.set_exception(reason)
        self._waiters.clear()
        self._ack_waiters.clear()
        self.channels.close_all(closed)
        self._deferred.clear()
        if self._transport is not None:
            self._transport.close()
        self._crypto = None

        if isinstance(reason, ConnectError):
            logger.info("Session ended: %s", reason)
            if self._error_handler:
                self._error_handler(type(reason).__name__, str(reason))
        else:
            logger.info("Session closed")
        offline = self.tracker.mark_offline()
        if offline is not None and was_authenticated and self._state_handler:
            self._state_handler(offline)
        if self._disconnected_handler:
            self._disconnected_handler(reason)
