"""Wire codec for the console's simple and message packet families.

Every datagram starts with a 2 byte type code.  Codes found in
:data:`SIMPLE_PACKETS` are parsed with their fixed layout, ``0xD00D``
is a sequenced, channel addressed message packet whose body is
encrypted and integrity tagged.  The codec keeps no state between
calls; key material is handed in through a
:class:`~sglink.crypto.SessionCrypto` where a layout needs one.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, Dict, Optional, Tuple, Type, Union

from .crypto import BLOCK_SIZE, PUBLIC_KEY_SIZE, TAG_SIZE, AuthError, SessionCrypto, padded_size

PROTECTED_HEADER_SIZE = 8
MESSAGE_HEADER_SIZE = 26

MESSAGE_VERSION = 2
CONNECT_VERSION = 2

CLIENT_TYPE_XBOX_ONE = 0x01
CLIENT_TYPE_ANDROID = 0x08

PUBLIC_KEY_TYPE_P256 = 0x00


class DecodeError(Exception):
    """Raised when a datagram cannot be turned into a packet."""


class Truncated(DecodeError):
    """Raised when a buffer ends before the layout it claims to carry."""


class UnknownPacketType(DecodeError):
    """Raised for type codes the codec has no layout for."""


class MissingField(DecodeError):
    """Raised when a packet lacks a field its layout requires."""


class PacketType(IntEnum):
    CONNECT_REQUEST = 0xCC00
    CONNECT_RESPONSE = 0xCC01
    DISCOVERY_REQUEST = 0xDD00
    DISCOVERY_RESPONSE = 0xDD01
    POWER_ON_REQUEST = 0xDD02
    MESSAGE = 0xD00D


# ---------------------------------------------------------------------------
# Primitive readers and writers
# ---------------------------------------------------------------------------


class Reader:
    """Bounds checked big-endian reader over a byte buffer."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = bytes(data)
        self.offset = offset

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if size < 0 or end > len(self._data):
            raise Truncated(
                f"needed {size} bytes at offset {self.offset}, buffer holds {len(self._data)}"
            )
        chunk = self._data[self.offset : end]
        self.offset = end
        return chunk

    def _unpack(self, fmt: str) -> Union[int, float]:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def u16(self) -> int:
        return int(self._unpack(">H"))

    def u32(self) -> int:
        return int(self._unpack(">I"))

    def i32(self) -> int:
        return int(self._unpack(">i"))

    def u64(self) -> int:
        return int(self._unpack(">Q"))

    def f32(self) -> float:
        return float(self._unpack(">f"))

    def raw(self, size: int) -> bytes:
        return self._take(size)

    def sgstring(self) -> str:
        """Read a u16 length prefixed UTF-8 string followed by a NUL byte."""
        length = self.u16()
        text = self._take(length)
        self._take(1)
        try:
            return text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid UTF-8 string: {exc}") from exc

    def prefixed_bytes(self) -> bytes:
        return self._take(self.u16())

    def remaining(self) -> bytes:
        return self._take(len(self._data) - self.offset)

    @property
    def at_end(self) -> bool:
        return self.offset >= len(self._data)


class Writer:
    """Big-endian writer mirroring :class:`Reader`."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def u16(self, value: int) -> "Writer":
        self._buffer += struct.pack(">H", value)
        return self

    def u32(self, value: int) -> "Writer":
        self._buffer += struct.pack(">I", value)
        return self

    def i32(self, value: int) -> "Writer":
        self._buffer += struct.pack(">i", value)
        return self

    def u64(self, value: int) -> "Writer":
        self._buffer += struct.pack(">Q", value)
        return self

    def f32(self, value: float) -> "Writer":
        self._buffer += struct.pack(">f", value)
        return self

    def raw(self, value: bytes) -> "Writer":
        self._buffer += value
        return self

    def sgstring(self, value: str) -> "Writer":
        encoded = value.encode("utf-8")
        if len(encoded) > 0xFFFF:
            raise ValueError("string too long for a u16 length prefix")
        self.u16(len(encoded))
        self._buffer += encoded + b"\x00"
        return self

    def prefixed_bytes(self, value: bytes) -> "Writer":
        if len(value) > 0xFFFF:
            raise ValueError("blob too long for a u16 length prefix")
        self.u16(len(value))
        self._buffer += value
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


# ---------------------------------------------------------------------------
# Simple packets
# ---------------------------------------------------------------------------


@dataclass
class DiscoveryRequest:
    flags: int = 0
    client_type: int = CLIENT_TYPE_ANDROID
    min_version: int = 0
    max_version: int = 2

    TYPE: ClassVar[PacketType] = PacketType.DISCOVERY_REQUEST
    REQUIRED: ClassVar[Tuple[str, ...]] = ()


@dataclass
class DiscoveryResponse:
    name: Optional[str] = None
    uuid: Optional[str] = None
    certificate: Optional[bytes] = None
    flags: int = 0
    client_type: int = CLIENT_TYPE_XBOX_ONE
    last_error: int = 0

    TYPE: ClassVar[PacketType] = PacketType.DISCOVERY_RESPONSE
    REQUIRED: ClassVar[Tuple[str, ...]] = ("name", "uuid", "certificate")


@dataclass
class PowerOnRequest:
    live_id: Optional[str] = None

    TYPE: ClassVar[PacketType] = PacketType.POWER_ON_REQUEST
    REQUIRED: ClassVar[Tuple[str, ...]] = ("live_id",)


@dataclass
class ConnectRequest:
    sg_uuid: Optional[bytes] = None
    public_key: Optional[bytes] = None
    iv: Optional[bytes] = None
    userhash: str = ""
    jwt: str = ""
    request_num: int = 0
    group_start: int = 0
    group_end: int = 1
    public_key_type: int = PUBLIC_KEY_TYPE_P256

    TYPE: ClassVar[PacketType] = PacketType.CONNECT_REQUEST
    REQUIRED: ClassVar[Tuple[str, ...]] = ("sg_uuid", "public_key", "iv")


@dataclass
class ConnectResponse:
    iv: Optional[bytes] = None
    connect_result: int = 0
    pairing_state: int = 0
    participant_id: int = 0

    TYPE: ClassVar[PacketType] = PacketType.CONNECT_RESPONSE
    REQUIRED: ClassVar[Tuple[str, ...]] = ("iv",)


SimplePacket = Union[DiscoveryRequest, DiscoveryResponse, PowerOnRequest, ConnectRequest, ConnectResponse]

SIMPLE_PACKETS: Dict[int, Type] = {
    cls.TYPE: cls
    for cls in (DiscoveryRequest, DiscoveryResponse, PowerOnRequest, ConnectRequest, ConnectResponse)
}


# ---------------------------------------------------------------------------
# Message packets
# ---------------------------------------------------------------------------


@dataclass
class MessageHeader:
    sequence: int
    message_type: int
    channel_id: int = 0
    source_participant: int = 0
    target_participant: int = 0
    need_ack: bool = False
    is_fragment: bool = False
    version: int = MESSAGE_VERSION
    protected_length: int = field(default=0, compare=False)

    def flags(self) -> int:
        return (
            ((self.version & 0x3) << 14)
            | (int(self.need_ack) << 13)
            | (int(self.is_fragment) << 12)
            | (self.message_type & 0x0FFF)
        )

    def pack(self) -> bytes:
        return (
            Writer()
            .u16(PacketType.MESSAGE)
            .u16(self.protected_length)
            .u32(self.sequence)
            .u32(self.target_participant)
            .u32(self.source_participant)
            .u16(self.flags())
            .u64(self.channel_id)
            .getvalue()
        )

    @classmethod
    def unpack(cls, data: bytes) -> "MessageHeader":
        reader = Reader(data)
        if reader.u16() != PacketType.MESSAGE:
            raise UnknownPacketType("not a message packet")
        protected_length = reader.u16()
        sequence = reader.u32()
        target = reader.u32()
        source = reader.u32()
        flags = reader.u16()
        channel_id = reader.u64()
        return cls(
            sequence=sequence,
            message_type=flags & 0x0FFF,
            channel_id=channel_id,
            source_participant=source,
            target_participant=target,
            need_ack=bool(flags & (1 << 13)),
            is_fragment=bool(flags & (1 << 12)),
            version=flags >> 14,
            protected_length=protected_length,
        )


@dataclass
class MessagePacket:
    header: MessageHeader
    payload: bytes = b""

    TYPE: ClassVar[PacketType] = PacketType.MESSAGE


Packet = Union[SimplePacket, MessagePacket]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _require(packet, names: Tuple[str, ...]) -> None:
    missing = [name for name in names if getattr(packet, name) is None]
    if missing:
        raise MissingField(f"{type(packet).__name__} missing {', '.join(missing)}")


def _require_crypto(packet, crypto: Optional[SessionCrypto]) -> SessionCrypto:
    if crypto is None:
        raise MissingField(f"{type(packet).__name__} needs session keys")
    return crypto


def _simple_header(packet_type: PacketType, unprotected: bytes, version: int = 0) -> bytes:
    return Writer().u16(packet_type).u16(len(unprotected)).u16(version).getvalue()


def _protected_header(packet_type: PacketType, unprotected: bytes, protected_length: int) -> bytes:
    return (
        Writer()
        .u16(packet_type)
        .u16(len(unprotected))
        .u16(protected_length)
        .u16(CONNECT_VERSION)
        .getvalue()
    )


def _seal(
    packet_type: PacketType,
    unprotected: bytes,
    protected: bytes,
    iv: bytes,
    crypto: SessionCrypto,
) -> bytes:
    body = (
        _protected_header(packet_type, unprotected, len(protected))
        + unprotected
        + crypto.encrypt(iv, protected)
    )
    return body + crypto.sign(body)


def encode(packet: Packet, crypto: Optional[SessionCrypto] = None) -> bytes:
    """Serialize *packet* into a datagram."""

    _require(packet, getattr(packet, "REQUIRED", ()))

    if isinstance(packet, DiscoveryRequest):
        payload = (
            Writer()
            .u32(packet.flags)
            .u16(packet.client_type)
            .u16(packet.min_version)
            .u16(packet.max_version)
            .getvalue()
        )
        return _simple_header(packet.TYPE, payload) + payload

    if isinstance(packet, DiscoveryResponse):
        payload = (
            Writer()
            .u32(packet.flags)
            .u16(packet.client_type)
            .sgstring(packet.name)
            .sgstring(packet.uuid)
            .u32(packet.last_error)
            .prefixed_bytes(packet.certificate)
            .getvalue()
        )
        return _simple_header(packet.TYPE, payload) + payload

    if isinstance(packet, PowerOnRequest):
        payload = Writer().sgstring(packet.live_id).getvalue()
        return _simple_header(packet.TYPE, payload) + payload

    if isinstance(packet, ConnectRequest):
        crypto = _require_crypto(packet, crypto)
        if len(packet.public_key) != PUBLIC_KEY_SIZE:
            raise ValueError("connect request public key must be 64 bytes")
        unprotected = (
            Writer()
            .raw(packet.sg_uuid)
            .u16(packet.public_key_type)
            .raw(packet.public_key)
            .raw(packet.iv)
            .getvalue()
        )
        protected = (
            Writer()
            .sgstring(packet.userhash)
            .sgstring(packet.jwt)
            .u32(packet.request_num)
            .u32(packet.group_start)
            .u32(packet.group_end)
            .getvalue()
        )
        return _seal(packet.TYPE, unprotected, protected, packet.iv, crypto)

    if isinstance(packet, ConnectResponse):
        crypto = _require_crypto(packet, crypto)
        protected = (
            Writer()
            .u16(packet.connect_result)
            .u16(packet.pairing_state)
            .u32(packet.participant_id)
            .getvalue()
        )
        return _seal(packet.TYPE, packet.iv, protected, packet.iv, crypto)

    if isinstance(packet, MessagePacket):
        crypto = _require_crypto(packet, crypto)
        packet.header.protected_length = len(packet.payload)
        header = packet.header.pack()
        body = header + crypto.encrypt(crypto.message_iv(header), packet.payload)
        return body + crypto.sign(body)

    raise UnknownPacketType(f"cannot encode {type(packet).__name__}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def packet_type_of(data: bytes) -> int:
    if len(data) < 2:
        raise Truncated("datagram shorter than a type code")
    return int.from_bytes(data[:2], "big")


def _open(data: bytes, crypto: SessionCrypto, start: int, protected_length: int, iv: bytes) -> Reader:
    """Verify the trailing tag and decrypt the protected section at *start*."""
    encrypted_size = padded_size(protected_length)
    if len(data) < start + encrypted_size + TAG_SIZE:
        raise Truncated("protected payload shorter than advertised")
    crypto.verify_packet(data)
    plaintext = crypto.decrypt(iv, data[start : start + encrypted_size])
    return Reader(plaintext[:protected_length])


def peek_connect_public_key(data: bytes) -> bytes:
    """Return the client public key from a connect request without decrypting it."""
    reader = Reader(data)
    if reader.u16() != PacketType.CONNECT_REQUEST:
        raise UnknownPacketType("not a connect request")
    reader.raw(PROTECTED_HEADER_SIZE - 2)
    reader.raw(16)
    reader.u16()
    return reader.raw(PUBLIC_KEY_SIZE)


def _decode_simple(packet_type: int, data: bytes, crypto: Optional[SessionCrypto]):
    cls = SIMPLE_PACKETS[packet_type]
    reader = Reader(data, 2)
    unprotected_length = reader.u16()

    if cls is DiscoveryRequest:
        reader.u16()
        return DiscoveryRequest(
            flags=reader.u32(),
            client_type=reader.u16(),
            min_version=reader.u16(),
            max_version=reader.u16(),
        )

    if cls is DiscoveryResponse:
        reader.u16()
        return DiscoveryResponse(
            flags=reader.u32(),
            client_type=reader.u16(),
            name=reader.sgstring(),
            uuid=reader.sgstring(),
            last_error=reader.u32(),
            certificate=reader.prefixed_bytes(),
        )

    if cls is PowerOnRequest:
        reader.u16()
        return PowerOnRequest(live_id=reader.sgstring())

    protected_length = reader.u16()
    reader.u16()
    if crypto is None:
        raise MissingField(f"{cls.__name__} needs session keys")
    unprotected = Reader(reader.raw(unprotected_length))

    if cls is ConnectRequest:
        sg_uuid = unprotected.raw(16)
        public_key_type = unprotected.u16()
        public_key = unprotected.raw(PUBLIC_KEY_SIZE)
        iv = unprotected.raw(BLOCK_SIZE)
        protected = _open(data, crypto, reader.offset, protected_length, iv)
        return ConnectRequest(
            sg_uuid=sg_uuid,
            public_key=public_key,
            iv=iv,
            public_key_type=public_key_type,
            userhash=protected.sgstring(),
            jwt=protected.sgstring(),
            request_num=protected.u32(),
            group_start=protected.u32(),
            group_end=protected.u32(),
        )

    iv = unprotected.raw(BLOCK_SIZE)
    protected = _open(data, crypto, reader.offset, protected_length, iv)
    return ConnectResponse(
        iv=iv,
        connect_result=protected.u16(),
        pairing_state=protected.u16(),
        participant_id=protected.u32(),
    )


def _decode_message(data: bytes, crypto: Optional[SessionCrypto]) -> MessagePacket:
    if len(data) < MESSAGE_HEADER_SIZE + TAG_SIZE:
        raise Truncated("message shorter than header and tag")
    if crypto is None:
        raise MissingField("message packet needs session keys")
    header_bytes = data[:MESSAGE_HEADER_SIZE]
    header = MessageHeader.unpack(header_bytes)
    reader = _open(
        data,
        crypto,
        MESSAGE_HEADER_SIZE,
        header.protected_length,
        crypto.message_iv(header_bytes),
    )
    return MessagePacket(header=header, payload=reader.remaining())


def decode(data: bytes, crypto: Optional[SessionCrypto] = None) -> Packet:
    """Parse a datagram.

    Raises :class:`Truncated`, :class:`UnknownPacketType` or
    :class:`MissingField` for malformed input and
    :class:`~sglink.crypto.AuthError` when an integrity tag does not
    verify.
    """

    packet_type = packet_type_of(data)
    if packet_type in SIMPLE_PACKETS:
        return _decode_simple(packet_type, data, crypto)
    if packet_type == PacketType.MESSAGE:
        return _decode_message(data, crypto)
    raise UnknownPacketType(f"unknown packet type 0x{packet_type:04x}")


__all__ = [
    "AuthError",
    "ConnectRequest",
    "ConnectResponse",
    "DecodeError",
    "DiscoveryRequest",
    "DiscoveryResponse",
    "MessageHeader",
    "MessagePacket",
    "MissingField",
    "PacketType",
    "PowerOnRequest",
    "Reader",
    "Truncated",
    "UnknownPacketType",
    "Writer",
    "decode",
    "encode",
    "peek_connect_public_key",
]
