"""Payloads carried inside message packets.

Each payload is a dataclass bound to one :class:`MessageType` with a
``pack``/``unpack`` pair.  :func:`decode_payload` resolves a type code
through :data:`PAYLOADS`; codes outside the closed set raise
:class:`~sglink.packets.UnknownPacketType`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Dict, List, Optional, Tuple, Type

from .packets import Reader, UnknownPacketType, Writer

CORE_CHANNEL_ID = 0
ACK_CHANNEL_ID = 0x1000000000000000

ALL_CAPABILITIES = 0xFFFFFFFFFFFFFFFF


class MessageType(IntEnum):
    ACK = 0x01
    LOCAL_JOIN = 0x03
    JSON = 0x1C
    CONSOLE_STATUS = 0x1E
    TITLE_LAUNCH = 0x23
    START_CHANNEL_REQUEST = 0x26
    START_CHANNEL_RESPONSE = 0x27
    STOP_CHANNEL = 0x28
    DISCONNECT = 0x2A
    GAME_DVR_RECORD = 0x38
    POWER_OFF = 0x39
    MEDIA_COMMAND = 0xF01
    MEDIA_COMMAND_RESULT = 0xF02
    MEDIA_STATE = 0xF03
    GAMEPAD = 0xF0A


class DisconnectReason(IntEnum):
    UNSPECIFIED = 0
    ERROR = 1
    POWER_OFF = 2
    MAINTENANCE = 3
    APP_CLOSE = 4
    SIGN_OUT = 5
    REBOOT = 6
    DISABLED = 7
    LOW_POWER = 8


class PlaybackStatus(IntEnum):
    CLOSED = 0
    CHANGING = 1
    STOPPED = 2
    PLAYING = 3
    PAUSED = 4


class SoundLevel(IntEnum):
    MUTED = 0
    LOW = 1
    FULL = 2


class MediaControlCommand(IntEnum):
    PLAY = 2
    PAUSE = 4
    PLAY_PAUSE = 8
    STOP = 16
    RECORD = 32
    NEXT_TRACK = 64
    PREVIOUS_TRACK = 128
    FAST_FORWARD = 256
    REWIND = 512
    CHANNEL_UP = 1024
    CHANNEL_DOWN = 2048
    BACK = 4096
    VIEW = 8192
    MENU = 16384
    SEEK = 32768


class GamepadButton(IntEnum):
    CLEAR = 0
    ENROLL = 1
    NEXUS = 2
    MENU = 4
    VIEW = 8
    A = 16
    B = 32
    X = 64
    Y = 128
    DPAD_UP = 256
    DPAD_DOWN = 512
    DPAD_LEFT = 1024
    DPAD_RIGHT = 2048
    LEFT_SHOULDER = 4096
    RIGHT_SHOULDER = 8192
    LEFT_THUMBSTICK = 16384
    RIGHT_THUMBSTICK = 32768


@dataclass
class Ack:
    low_watermark: int = 0
    processed: List[int] = field(default_factory=list)
    rejected: List[int] = field(default_factory=list)

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.ACK

    def pack(self) -> bytes:
        writer = Writer().u32(self.low_watermark).u32(len(self.processed))
        for sequence in self.processed:
            writer.u32(sequence)
        writer.u32(len(self.rejected))
        for sequence in self.rejected:
            writer.u32(sequence)
        return writer.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "Ack":
        reader = Reader(data)
        low_watermark = reader.u32()
        processed = [reader.u32() for _ in range(reader.u32())]
        rejected = [reader.u32() for _ in range(reader.u32())]
        return cls(low_watermark=low_watermark, processed=processed, rejected=rejected)


@dataclass
class LocalJoin:
    display_name: str = "sglink"
    device_type: int = 0x08
    native_width: int = 1080
    native_height: int = 1920
    dpi_x: int = 96
    dpi_y: int = 96
    capabilities: int = ALL_CAPABILITIES
    client_version: int = 15
    os_major: int = 6
    os_minor: int = 2

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.LOCAL_JOIN

    def pack(self) -> bytes:
        return (
            Writer()
            .u16(self.device_type)
            .u16(self.native_width)
            .u16(self.native_height)
            .u16(self.dpi_x)
            .u16(self.dpi_y)
            .u64(self.capabilities)
            .u32(self.client_version)
            .u32(self.os_major)
            .u32(self.os_minor)
            .sgstring(self.display_name)
            .getvalue()
        )

    @classmethod
    def unpack(cls, data: bytes) -> "LocalJoin":
        reader = Reader(data)
        return cls(
            device_type=reader.u16(),
            native_width=reader.u16(),
            native_height=reader.u16(),
            dpi_x=reader.u16(),
            dpi_y=reader.u16(),
            capabilities=reader.u64(),
            client_version=reader.u32(),
            os_major=reader.u32(),
            os_minor=reader.u32(),
            display_name=reader.sgstring(),
        )


@dataclass
class Json:
    text: str

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.JSON

    def pack(self) -> bytes:
        return Writer().sgstring(self.text).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "Json":
        return cls(text=Reader(data).sgstring())


@dataclass
class ActiveTitle:
    title_id: int
    aum: str
    has_focus: bool = False
    location: int = 0
    product_id: bytes = bytes(16)
    sandbox_id: bytes = bytes(16)

    def pack_into(self, writer: Writer) -> None:
        disposition = (int(self.has_focus) << 15) | (self.location & 0x7FFF)
        writer.u32(self.title_id).u16(disposition).raw(self.product_id).raw(self.sandbox_id)
        writer.sgstring(self.aum)

    @classmethod
    def read_from(cls, reader: Reader) -> "ActiveTitle":
        title_id = reader.u32()
        disposition = reader.u16()
        return cls(
            title_id=title_id,
            has_focus=bool(disposition & 0x8000),
            location=disposition & 0x7FFF,
            product_id=reader.raw(16),
            sandbox_id=reader.raw(16),
            aum=reader.sgstring(),
        )


@dataclass
class ConsoleStatus:
    major_version: int
    minor_version: int
    build_number: int
    locale: str
    active_titles: List[ActiveTitle] = field(default_factory=list)
    live_tv_provider: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.CONSOLE_STATUS

    @property
    def firmware(self) -> str:
        return f"{self.major_version}.{self.minor_version}.{self.build_number}"

    @property
    def focused_title(self) -> Optional[ActiveTitle]:
        for title in self.active_titles:
            if title.has_focus:
                return title
        return self.active_titles[0] if self.active_titles else None

    def pack(self) -> bytes:
        writer = (
            Writer()
            .u32(self.live_tv_provider)
            .u32(self.major_version)
            .u32(self.minor_version)
            .u32(self.build_number)
            .sgstring(self.locale)
            .u16(len(self.active_titles))
        )
        for title in self.active_titles:
            title.pack_into(writer)
        return writer.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "ConsoleStatus":
        reader = Reader(data)
        live_tv_provider = reader.u32()
        major = reader.u32()
        minor = reader.u32()
        build = reader.u32()
        locale = reader.sgstring()
        titles = [ActiveTitle.read_from(reader) for _ in range(reader.u16())]
        return cls(
            major_version=major,
            minor_version=minor,
            build_number=build,
            locale=locale,
            active_titles=titles,
            live_tv_provider=live_tv_provider,
        )


@dataclass
class TitleLaunch:
    uri: str
    location: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.TITLE_LAUNCH

    def pack(self) -> bytes:
        return Writer().u16(self.location).sgstring(self.uri).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "TitleLaunch":
        reader = Reader(data)
        location = reader.u16()
        return cls(uri=reader.sgstring(), location=location)


@dataclass
class StartChannelRequest:
    request_id: int
    service: bytes
    title_id: int = 0
    activity_id: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.START_CHANNEL_REQUEST

    def pack(self) -> bytes:
        return (
            Writer()
            .u32(self.request_id)
            .u32(self.title_id)
            .raw(self.service)
            .u32(self.activity_id)
            .getvalue()
        )

    @classmethod
    def unpack(cls, data: bytes) -> "StartChannelRequest":
        reader = Reader(data)
        request_id = reader.u32()
        title_id = reader.u32()
        return cls(
            request_id=request_id,
            title_id=title_id,
            service=reader.raw(16),
            activity_id=reader.u32(),
        )


@dataclass
class StartChannelResponse:
    request_id: int
    channel_id: int
    result: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.START_CHANNEL_RESPONSE

    def pack(self) -> bytes:
        return Writer().u32(self.request_id).u64(self.channel_id).u32(self.result).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "StartChannelResponse":
        reader = Reader(data)
        return cls(request_id=reader.u32(), channel_id=reader.u64(), result=reader.u32())


@dataclass
class StopChannel:
    channel_id: int

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.STOP_CHANNEL

    def pack(self) -> bytes:
        return Writer().u64(self.channel_id).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "StopChannel":
        return cls(channel_id=Reader(data).u64())


@dataclass
class Disconnect:
    reason: int = DisconnectReason.UNSPECIFIED
    error_code: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.DISCONNECT

    def pack(self) -> bytes:
        return Writer().u32(self.reason).u32(self.error_code).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "Disconnect":
        reader = Reader(data)
        return cls(reason=reader.u32(), error_code=reader.u32())


@dataclass
class GameDvrRecord:
    start_delta: int = -60
    end_delta: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.GAME_DVR_RECORD

    def pack(self) -> bytes:
        return Writer().i32(self.start_delta).i32(self.end_delta).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "GameDvrRecord":
        reader = Reader(data)
        return cls(start_delta=reader.i32(), end_delta=reader.i32())


@dataclass
class PowerOff:
    live_id: str

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.POWER_OFF

    def pack(self) -> bytes:
        return Writer().sgstring(self.live_id).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "PowerOff":
        return cls(live_id=Reader(data).sgstring())


@dataclass
class MediaCommand:
    request_id: int
    command: int
    title_id: int = 0
    seek_position: Optional[int] = None

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.MEDIA_COMMAND

    def pack(self) -> bytes:
        writer = Writer().u64(self.request_id).u32(self.title_id).u32(self.command)
        if self.command == MediaControlCommand.SEEK:
            writer.u64(self.seek_position or 0)
        return writer.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "MediaCommand":
        reader = Reader(data)
        request_id = reader.u64()
        title_id = reader.u32()
        command = reader.u32()
        seek_position = reader.u64() if command == MediaControlCommand.SEEK else None
        return cls(
            request_id=request_id,
            command=command,
            title_id=title_id,
            seek_position=seek_position,
        )


@dataclass
class MediaCommandResult:
    request_id: int
    result: int = 0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.MEDIA_COMMAND_RESULT

    def pack(self) -> bytes:
        return Writer().u64(self.request_id).u32(self.result).getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "MediaCommandResult":
        reader = Reader(data)
        return cls(request_id=reader.u64(), result=reader.u32())


@dataclass
class MediaStateMessage:
    title_id: int
    aum: str = ""
    asset_id: str = ""
    media_type: int = 0
    sound_level: int = SoundLevel.FULL
    enabled_commands: int = 0
    playback_status: int = PlaybackStatus.CLOSED
    rate: float = 0.0
    position: int = 0
    media_start: int = 0
    media_end: int = 0
    min_seek: int = 0
    max_seek: int = 0
    metadata: List[Tuple[str, str]] = field(default_factory=list)

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.MEDIA_STATE

    def pack(self) -> bytes:
        writer = (
            Writer()
            .u32(self.title_id)
            .sgstring(self.aum)
            .sgstring(self.asset_id)
            .u16(self.media_type)
            .u16(self.sound_level)
            .u32(self.enabled_commands)
            .u16(self.playback_status)
            .f32(self.rate)
            .u64(self.position)
            .u64(self.media_start)
            .u64(self.media_end)
            .u64(self.min_seek)
            .u64(self.max_seek)
            .u16(len(self.metadata))
        )
        for name, value in self.metadata:
            writer.sgstring(name).sgstring(value)
        return writer.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "MediaStateMessage":
        reader = Reader(data)
        message = cls(
            title_id=reader.u32(),
            aum=reader.sgstring(),
            asset_id=reader.sgstring(),
            media_type=reader.u16(),
            sound_level=reader.u16(),
            enabled_commands=reader.u32(),
            playback_status=reader.u16(),
            rate=reader.f32(),
            position=reader.u64(),
            media_start=reader.u64(),
            media_end=reader.u64(),
            min_seek=reader.u64(),
            max_seek=reader.u64(),
        )
        message.metadata = [(reader.sgstring(), reader.sgstring()) for _ in range(reader.u16())]
        return message


@dataclass
class Gamepad:
    buttons: int = GamepadButton.CLEAR
    timestamp: int = 0
    left_trigger: float = 0.0
    right_trigger: float = 0.0
    left_thumbstick_x: float = 0.0
    left_thumbstick_y: float = 0.0
    right_thumbstick_x: float = 0.0
    right_thumbstick_y: float = 0.0

    MESSAGE_TYPE: ClassVar[MessageType] = MessageType.GAMEPAD

    def pack(self) -> bytes:
        return (
            Writer()
            .u64(self.timestamp)
            .u16(self.buttons)
            .f32(self.left_trigger)
            .f32(self.right_trigger)
            .f32(self.left_thumbstick_x)
            .f32(self.left_thumbstick_y)
            .f32(self.right_thumbstick_x)
            .f32(self.right_thumbstick_y)
            .getvalue()
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Gamepad":
        reader = Reader(data)
        timestamp = reader.u64()
        return cls(
            timestamp=timestamp,
            buttons=reader.u16(),
            left_trigger=reader.f32(),
            right_trigger=reader.f32(),
            left_thumbstick_x=reader.f32(),
            left_thumbstick_y=reader.f32(),
            right_thumbstick_x=reader.f32(),
            right_thumbstick_y=reader.f32(),
        )


@dataclass
class Fragment:
    """One slice of a message split across several sequence numbers."""

    sequence_begin: int
    sequence_end: int
    data: bytes

    def pack(self) -> bytes:
        return (
            Writer()
            .u32(self.sequence_begin)
            .u32(self.sequence_end)
            .prefixed_bytes(self.data)
            .getvalue()
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Fragment":
        reader = Reader(data)
        return cls(
            sequence_begin=reader.u32(),
            sequence_end=reader.u32(),
            data=reader.prefixed_bytes(),
        )


PAYLOADS: Dict[MessageType, Type] = {
    cls.MESSAGE_TYPE: cls
    for cls in (
        Ack,
        LocalJoin,
        Json,
        ConsoleStatus,
        TitleLaunch,
        StartChannelRequest,
        StartChannelResponse,
        StopChannel,
        Disconnect,
        GameDvrRecord,
        PowerOff,
        MediaCommand,
        MediaCommandResult,
        MediaStateMessage,
        Gamepad,
    )
}


def message_type_of(code: int) -> MessageType:
    try:
        return MessageType(code)
    except ValueError:
        raise UnknownPacketType(f"unknown message type 0x{code:03x}") from None


def decode_payload(code: int, data: bytes):
    return PAYLOADS[message_type_of(code)].unpack(data)
