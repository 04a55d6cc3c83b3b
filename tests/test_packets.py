#!/usr/bin/env python3
''' test the packet codec and message payloads '''

import pytest

from sglink import packets
from sglink.crypto import AuthError, SessionCrypto, generate_keypair
from sglink.messages import (
    Ack,
    ActiveTitle,
    ConsoleStatus,
    Fragment,
    MediaCommand,
    MediaControlCommand,
    MediaStateMessage,
    MessageType,
    decode_payload,
)
from sglink.packets import (
    ConnectRequest,
    ConnectResponse,
    DiscoveryRequest,
    DiscoveryResponse,
    MessageHeader,
    MessagePacket,
    MissingField,
    PowerOnRequest,
    Reader,
    Truncated,
    UnknownPacketType,
    Writer,
)


@pytest.fixture
def crypto_pair():
    ''' matching client and console crypto contexts '''
    client_private, client_public = generate_keypair()
    console_private, console_public = generate_keypair()
    return (SessionCrypto.from_handshake(client_private, console_public),
            SessionCrypto.from_handshake(console_private, client_public), client_public)


@pytest.mark.parametrize('packet', [
    DiscoveryRequest(),
    DiscoveryResponse(name='Xbox', uuid='de305d54', certificate=b'\x30\x82\x01', flags=2),
    PowerOnRequest(live_id='FD00112233445566'),
])
def test_simple_packet_roundtrip(packet):
    ''' unencrypted simple packets decode to what was encoded '''
    assert packets.decode(packets.encode(packet)) == packet


def test_discovery_request_layout():
    ''' type code, lengths and version lead the datagram '''
    data = packets.encode(DiscoveryRequest())
    assert data[:2] == b'\xdd\x00'
    assert int.from_bytes(data[2:4], 'big') == len(data) - 6
    assert data[4:6] == b'\x00\x00'


def test_connect_request_roundtrip(crypto_pair):
    ''' connect request survives encryption with the shared keys '''
    client, console, client_public = crypto_pair
    request = ConnectRequest(sg_uuid=bytes(range(16)),
                             public_key=client_public,
                             iv=SessionCrypto.random_iv(),
                             userhash='hash',
                             jwt='token')
    data = packets.encode(request, client)
    assert packets.peek_connect_public_key(data) == client_public
    assert packets.decode(data, console) == request


def test_connect_response_roundtrip(crypto_pair):
    ''' connect response carries result and participant id '''
    client, console, _ = crypto_pair
    response = ConnectResponse(iv=SessionCrypto.random_iv(), connect_result=0, participant_id=7)
    assert packets.decode(packets.encode(response, console), client) == response


def test_message_roundtrip(crypto_pair):
    ''' message packets keep header fields and payload '''
    client, console, _ = crypto_pair
    payload = Ack(low_watermark=4, processed=[4]).pack()
    header = MessageHeader(sequence=5,
                           message_type=MessageType.ACK,
                           channel_id=0x1000000000000000,
                           source_participant=31,
                           need_ack=True)
    data = packets.encode(MessagePacket(header, payload), client)
    decoded = packets.decode(data, console)
    assert decoded.header == header
    assert decoded.payload == payload
    assert decode_payload(decoded.header.message_type, decoded.payload) == Ack(4, [4], [])


def test_message_flags_bits():
    ''' version, ack and fragment bits sit above the 12 bit type '''
    header = MessageHeader(sequence=1, message_type=0xF03, need_ack=True, is_fragment=True)
    assert header.flags() == 0x8000 | 0x2000 | 0x1000 | 0xF03


def test_message_tamper_detected(crypto_pair):
    ''' flipping any ciphertext byte fails the integrity check '''
    client, console, _ = crypto_pair
    header = MessageHeader(sequence=1, message_type=MessageType.JSON)
    data = bytearray(packets.encode(MessagePacket(header, b'\x00\x02{}\x00'), client))
    data[30] ^= 0x01
    with pytest.raises(AuthError):
        packets.decode(bytes(data), console)


def test_message_needs_keys():
    ''' message packets cannot be encoded without session keys '''
    header = MessageHeader(sequence=1, message_type=MessageType.ACK)
    with pytest.raises(MissingField):
        packets.encode(MessagePacket(header, b''))


def test_missing_required_field():
    ''' encoding checks required fields first '''
    with pytest.raises(MissingField):
        packets.encode(PowerOnRequest())


def test_truncated_inputs():
    ''' short buffers raise Truncated instead of struct errors '''
    with pytest.raises(Truncated):
        packets.decode(b'\xdd')
    data = packets.encode(PowerOnRequest(live_id='FD00'))
    with pytest.raises(Truncated):
        packets.decode(data[:-3])
    with pytest.raises(Truncated):
        packets.decode(b'\xd0\x0d' + bytes(20))


def test_unknown_packet_type():
    ''' unknown type codes are rejected '''
    with pytest.raises(UnknownPacketType):
        packets.decode(b'\xab\xcd\x00\x00')
    with pytest.raises(UnknownPacketType):
        decode_payload(0x7FF, b'')


def test_sgstring_layout():
    ''' strings carry a length prefix and a trailing NUL '''
    data = Writer().sgstring('abc').getvalue()
    assert data == b'\x00\x03abc\x00'
    assert Reader(data).sgstring() == 'abc'


def test_console_status_focus():
    ''' the focused title wins over list order '''
    status = ConsoleStatus(major_version=10,
                           minor_version=0,
                           build_number=19041,
                           locale='en-US',
                           active_titles=[
                               ActiveTitle(title_id=1, aum='Home'),
                               ActiveTitle(title_id=2, aum='Netflix', has_focus=True),
                           ])
    decoded = ConsoleStatus.unpack(status.pack())
    assert decoded == status
    assert decoded.firmware == '10.0.19041'
    assert decoded.focused_title.aum == 'Netflix'


def test_media_command_seek_position():
    ''' seek position is only on the wire for SEEK '''
    play = MediaCommand(request_id=1, command=MediaControlCommand.PLAY)
    seek = MediaCommand(request_id=2, command=MediaControlCommand.SEEK, seek_position=900)
    assert len(seek.pack()) == len(play.pack()) + 8
    assert MediaCommand.unpack(seek.pack()).seek_position == 900
    assert MediaCommand.unpack(play.pack()).seek_position is None


def test_media_state_metadata():
    ''' metadata pairs follow the fixed fields '''
    state = MediaStateMessage(title_id=3, aum='App', metadata=[('title', 'Song'), ('artist', 'Band')])
    assert MediaStateMessage.unpack(state.pack()).metadata == [('title', 'Song'), ('artist', 'Band')]


def test_fragment_layout():
    ''' fragments carry an exclusive sequence range and a blob '''
    fragment = Fragment(sequence_begin=3, sequence_end=5, data=b'abc')
    assert fragment.pack() == b'\x00\x00\x00\x03\x00\x00\x00\x05\x00\x03abc'
