"""Logical channels multiplexed over an authenticated session.

Channels are opened lazily through ``StartChannelRequest`` on the core
channel; the console answers with the channel id to address afterwards.
Commands are a closed set per channel and are validated before anything
goes on the wire.  Inbound messages are reassembled from fragments and
routed either to the status sink or to the pending-request table.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from .messages import (
    CORE_CHANNEL_ID,
    ConsoleStatus,
    Fragment,
    GameDvrRecord,
    Gamepad,
    GamepadButton,
    Json,
    MediaCommand,
    MediaCommandResult,
    MediaControlCommand,
    MediaStateMessage,
    MessageType,
    StartChannelRequest,
    StartChannelResponse,
    StopChannel,
    TitleLaunch,
    decode_payload,
)
from .packets import DecodeError, MessagePacket
from .state import StatusUpdate

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when a command cannot be sent or gets no usable answer."""


class ChannelName(str, Enum):
    INPUT = "input"
    MEDIA = "media"
    TV_REMOTE = "tv-remote"


CORE = "core"

SERVICE_UUIDS: Dict[ChannelName, uuid.UUID] = {
    ChannelName.INPUT: uuid.UUID("fa20b8ca-66fb-46e0-adb6-0b978a59d35f"),
    ChannelName.MEDIA: uuid.UUID("48a9ca24-eb6d-4e12-8c43-d57469edd3cd"),
    ChannelName.TV_REMOTE: uuid.UUID("d451e3b3-60bb-4c71-b3db-f994b1aca3a7"),
}

GAMEPAD_COMMANDS: Dict[str, GamepadButton] = {
    "clear": GamepadButton.CLEAR,
    "enroll": GamepadButton.ENROLL,
    "nexus": GamepadButton.NEXUS,
    "menu": GamepadButton.MENU,
    "view": GamepadButton.VIEW,
    "a": GamepadButton.A,
    "b": GamepadButton.B,
    "x": GamepadButton.X,
    "y": GamepadButton.Y,
    "up": GamepadButton.DPAD_UP,
    "down": GamepadButton.DPAD_DOWN,
    "left": GamepadButton.DPAD_LEFT,
    "right": GamepadButton.DPAD_RIGHT,
    "left_shoulder": GamepadButton.LEFT_SHOULDER,
    "right_shoulder": GamepadButton.RIGHT_SHOULDER,
    "left_thumbstick": GamepadButton.LEFT_THUMBSTICK,
    "right_thumbstick": GamepadButton.RIGHT_THUMBSTICK,
}

MEDIA_COMMANDS: Dict[str, MediaControlCommand] = {
    "play": MediaControlCommand.PLAY,
    "pause": MediaControlCommand.PAUSE,
    "play_pause": MediaControlCommand.PLAY_PAUSE,
    "stop": MediaControlCommand.STOP,
    "record": MediaControlCommand.RECORD,
    "next_track": MediaControlCommand.NEXT_TRACK,
    "previous_track": MediaControlCommand.PREVIOUS_TRACK,
    "fast_forward": MediaControlCommand.FAST_FORWARD,
    "rewind": MediaControlCommand.REWIND,
    "channel_up": MediaControlCommand.CHANNEL_UP,
    "channel_down": MediaControlCommand.CHANNEL_DOWN,
    "back": MediaControlCommand.BACK,
    "view": MediaControlCommand.VIEW,
    "menu": MediaControlCommand.MENU,
    "seek": MediaControlCommand.SEEK,
}

# tv-remote commands: SendKey buttons plus the informational requests
TV_REMOTE_KEYS: Dict[str, str] = {
    "volume_up": "btn.vol_up",
    "volume_down": "btn.vol_down",
    "mute": "btn.vol_mute",
    "channel_up": "btn.ch_up",
    "channel_down": "btn.ch_down",
    "power": "btn.power",
    "input": "btn.input",
    "guide": "btn.guide",
    "back": "btn.back",
}
TV_REMOTE_REQUESTS: Dict[str, str] = {
    "configuration": "GetConfiguration",
    "headend": "GetHeadendInfo",
    "live_tv": "GetLiveTVInfo",
}

CORE_COMMANDS = ("launch", "record")

SendMessage = Callable[..., int]
StatusSink = Callable[[StatusUpdate, Optional[ConsoleStatus]], None]


@dataclass
class Channel:
    name: ChannelName
    channel_id: int

    @property
    def service(self) -> uuid.UUID:
        return SERVICE_UUIDS[self.name]


class FragmentBuffer:
    """Collects fragments until every sequence of a message is present."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._entries: Dict[Tuple[int, int, int], Tuple[Dict[int, bytes], float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(
        self,
        message_type: int,
        sequence: int,
        fragment: Fragment,
        now: Optional[float] = None,
    ) -> Optional[bytes]:
        begin, end = fragment.sequence_begin, fragment.sequence_end
        if not begin <= sequence < end:
            logger.debug("Fragment %d outside its range %d-%d", sequence, begin, end)
            return None
        now = time.monotonic() if now is None else now
        key = (message_type, begin, end)
        pieces, created = self._entries.get(key, ({}, now))
        pieces[sequence] = fragment.data
        if len(pieces) == end - begin:
            del self._entries[key]
            return b"".join(pieces[seq] for seq in range(begin, end))
        self._entries[key] = (pieces, created)
        return None

    def sweep(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        expired = [
            key for key, (_, created) in self._entries.items() if now - created > self.timeout
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Dropped %d incomplete fragment sets", len(expired))
        return len(expired)


class ChannelManager:
    """Channel table, command builders and response correlation for one session."""

    def __init__(
        self,
        send_message: SendMessage,
        on_status: StatusSink,
        *,
        command_timeout: float = 5.0,
        fragment_timeout: float = 5.0,
    ) -> None:
        self._send_message = send_message
        self._on_status = on_status
        self.command_timeout = command_timeout
        self.fragments = FragmentBuffer(fragment_timeout)
        self._channels: Dict[ChannelName, Channel] = {}
        self._opening: Dict[ChannelName, asyncio.Future] = {}
        self._open_waiters: Dict[ChannelName, int] = {}
        self._open_requests: Dict[int, ChannelName] = {}
        self._pending: Dict[Hashable, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._msgid_prefix = uuid.uuid4().hex[:8]
        self._builders: Dict[ChannelName, Callable[[int, str, Dict[str, Any]], Awaitable[Any]]] = {
            ChannelName.INPUT: self._send_input,
            ChannelName.MEDIA: self._send_media,
            ChannelName.TV_REMOTE: self._send_tv_remote,
        }
        self._handlers: Dict[MessageType, Callable[[Any], None]] = {
            MessageType.START_CHANNEL_RESPONSE: self._handle_start_channel,
            MessageType.CONSOLE_STATUS: self._handle_console_status,
            MessageType.MEDIA_STATE: self._handle_media_state,
            MessageType.MEDIA_COMMAND_RESULT: self._handle_media_result,
            MessageType.JSON: self._handle_json,
        }

    # ------------------------------------------------------------------
    # Channel table
    # ------------------------------------------------------------------
    @property
    def channels(self) -> Dict[ChannelName, Channel]:
        return dict(self._channels)

    def channel_id(self, name: ChannelName) -> Optional[int]:
        channel = self._channels.get(name)
        return channel.channel_id if channel else None

    async def open(self, name) -> int:
        """Return the id of channel *name*, opening it on first use."""
        name = self._channel_name(name)
        channel = self._channels.get(name)
        if channel is not None:
            return channel.channel_id
        future = self._opening.get(name)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            request_id = next(self._request_ids)
            self._opening[name] = future
            self._open_requests[request_id] = name
            logger.debug("Opening %s channel (request %d)", name.value, request_id)
            self._send_message(
                StartChannelRequest(request_id=request_id, service=SERVICE_UUIDS[name].bytes),
                channel_id=CORE_CHANNEL_ID,
                need_ack=True,
            )
        self._open_waiters[name] = self._open_waiters.get(name, 0) + 1
        try:
            return await asyncio.wait_for(asyncio.shield(future), self.command_timeout)
        except asyncio.TimeoutError:
            raise CommandError(f"timed out opening {name.value} channel") from None
        finally:
            self._leave_open(name, future)

    def close(self, channel_id: int) -> None:
        for name, channel in list(self._channels.items()):
            if channel.channel_id == channel_id:
                del self._channels[name]
                self._send_message(StopChannel(channel_id=channel_id), channel_id=CORE_CHANNEL_ID)
                logger.debug("Closed %s channel %d", name.value, channel_id)
                return
        raise CommandError(f"channel {channel_id} is not open")

    def close_all(self, reason: Exception) -> None:
        """Drop every channel id and fail everything still waiting."""
        self._channels.clear()
        self._open_requests.clear()
        waiting = list(self._opening.values()) + list(self._pending.values())
        self._opening.clear()
        self._pending.clear()
        for future in waiting:
            if not future.done():
                future.set_exception(reason)

    def _leave_open(self, name: ChannelName, future: asyncio.Future) -> None:
        # the request stays outstanding while anyone still waits on it
        remaining = self._open_waiters.get(name, 0) - 1
        if remaining > 0:
            self._open_waiters[name] = remaining
            return
        self._open_waiters.pop(name, None)
        if self._opening.get(name) is future:
            self._forget_open(name)

    def _forget_open(self, name: ChannelName) -> None:
        future = self._opening.pop(name, None)
        if future is not None and not future.done():
            future.cancel()
        for request_id, pending in list(self._open_requests.items()):
            if pending is name:
                del self._open_requests[request_id]

    @staticmethod
    def _channel_name(name) -> ChannelName:
        try:
            return ChannelName(name)
        except ValueError:
            raise CommandError(f"unknown channel {name!r}") from None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def validate(self, channel: str, command: str) -> None:
        if channel == CORE:
            known = CORE_COMMANDS
        else:
            name = self._channel_name(channel)
            if name is ChannelName.INPUT:
                known = GAMEPAD_COMMANDS
            elif name is ChannelName.MEDIA:
                known = MEDIA_COMMANDS
            else:
                known = {**TV_REMOTE_KEYS, **TV_REMOTE_REQUESTS}
        if command not in known:
            raise CommandError(f"unknown {channel} command {command!r}")

    async def send(self, channel: str, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        params = dict(params or {})
        self.validate(channel, command)
        if channel == CORE:
            return self._send_core(command, params)
        name = self._channel_name(channel)
        channel_id = await self.open(name)
        return await self._builders[name](channel_id, command, params)

    def _send_core(self, command: str, params: Dict[str, Any]) -> None:
        if command == "launch":
            uri = params.get("uri")
            if not uri:
                raise CommandError("launch needs a 'uri' parameter")
            self._send_message(TitleLaunch(uri=uri, location=int(params.get("location", 0))))
        else:
            seconds = int(params.get("seconds", 60))
            self._send_message(GameDvrRecord(start_delta=-seconds, end_delta=0))

    async def _send_input(self, channel_id: int, command: str, params: Dict[str, Any]) -> None:
        stamp = int(time.time() * 1000)
        self._send_message(
            Gamepad(buttons=GAMEPAD_COMMANDS[command], timestamp=stamp), channel_id=channel_id
        )
        self._send_message(
            Gamepad(buttons=GamepadButton.CLEAR, timestamp=stamp + 1), channel_id=channel_id
        )

    async def _send_media(
        self, channel_id: int, command: str, params: Dict[str, Any]
    ) -> MediaCommandResult:
        request_id = next(self._request_ids)
        future = self._register(("media", request_id))
        self._send_message(
            MediaCommand(
                request_id=request_id,
                command=MEDIA_COMMANDS[command],
                title_id=int(params.get("title_id", 0)),
                seek_position=params.get("position"),
            ),
            channel_id=channel_id,
        )
        result = await self._await_response(("media", request_id), future, command)
        if result.result != 0:
            raise CommandError(f"console rejected media command {command!r} ({result.result})")
        return result

    async def _send_tv_remote(
        self, channel_id: int, command: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        msgid = f"{self._msgid_prefix}.{next(self._request_ids)}"
        if command in TV_REMOTE_KEYS:
            body = {
                "msgid": msgid,
                "request": "SendKey",
                "params": {
                    "button_id": TV_REMOTE_KEYS[command],
                    "device_id": params.get("device_id"),
                },
            }
        else:
            body = {"msgid": msgid, "request": TV_REMOTE_REQUESTS[command], "params": params or None}
        future = self._register(("json", msgid))
        self._send_message(Json(text=json.dumps(body)), channel_id=channel_id)
        return await self._await_response(("json", msgid), future, command)

    def _register(self, key: Hashable) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        return future

    async def _await_response(self, key: Hashable, future: asyncio.Future, command: str) -> Any:
        try:
            return await asyncio.wait_for(future, self.command_timeout)
        except asyncio.TimeoutError:
            raise CommandError(f"timed out waiting for {command!r} response") from None
        finally:
            self._pending.pop(key, None)

    def _resolve(self, key: Hashable, value: Any) -> bool:
        future = self._pending.pop(key, None)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def dispatch(self, packet: MessagePacket) -> None:
        header = packet.header
        payload = packet.payload
        try:
            if header.is_fragment:
                payload = self.fragments.add(
                    header.message_type, header.sequence, Fragment.unpack(payload)
                )
                if payload is None:
                    return
            message = decode_payload(header.message_type, payload)
        except DecodeError as exc:
            logger.debug("Dropping message %d: %s", header.sequence, exc)
            return
        handler = self._handlers.get(message.MESSAGE_TYPE)
        if handler is None:
            logger.debug("No handler for %s", message.MESSAGE_TYPE.name)
            return
        handler(message)

    def _handle_start_channel(self, message: StartChannelResponse) -> None:
        name = self._open_requests.pop(message.request_id, None)
        if name is None:
            logger.debug("Unsolicited channel response %d", message.request_id)
            return
        future = self._opening.pop(name, None)
        if message.result != 0:
            error = CommandError(f"console refused {name.value} channel ({message.result})")
            if future is not None and not future.done():
                future.set_exception(error)
            return
        self._channels[name] = Channel(name=name, channel_id=message.channel_id)
        logger.debug("Opened %s channel as %d", name.value, message.channel_id)
        if future is not None and not future.done():
            future.set_result(message.channel_id)

    def _handle_console_status(self, message: ConsoleStatus) -> None:
        self._on_status(StatusUpdate.from_console_status(message), message)

    def _handle_media_state(self, message: MediaStateMessage) -> None:
        self._on_status(StatusUpdate.from_media_state(message), None)

    def _handle_media_result(self, message: MediaCommandResult) -> None:
        if not self._resolve(("media", message.request_id), message):
            logger.debug("Unmatched media command result %d", message.request_id)

    def _handle_json(self, message: Json) -> None:
        try:
            body = json.loads(message.text)
        except ValueError:
            logger.debug("Dropping malformed JSON message")
            return
        if not isinstance(body, dict):
            return
        msgid = body.get("msgid")
        if isinstance(msgid, str) and self._resolve(("json", msgid), body):
            return
        update = StatusUpdate.from_json(body)
        if update is not None:
            self._on_status(update, None)
