#!/usr/bin/env python3
''' pytest fixtures: an in-process console speaking the real wire protocol '''

import asyncio
import datetime
import itertools
import json

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from sglink import packets
from sglink.crypto import SessionCrypto
from sglink.messages import (
    ACK_CHANNEL_ID,
    Ack,
    ActiveTitle,
    ConsoleStatus,
    Json,
    LocalJoin,
    MediaCommand,
    MediaCommandResult,
    MessageType,
    StartChannelRequest,
    StartChannelResponse,
    decode_payload,
)
from sglink.packets import (
    ConnectResponse,
    DiscoveryResponse,
    MessageHeader,
    MessagePacket,
    PacketType,
)
from sglink.session import SessionConfig
from sglink.transport import TransportError

CONSOLE_ADDRESS = ('192.0.2.10', 5050)
LIVE_ID = 'FD00112233445566'


def make_certificate(private_key, live_id):
    ''' self signed P-256 certificate with the live id as common name '''
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, live_id)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (x509.CertificateBuilder().subject_name(name).issuer_name(name).public_key(
        private_key.public_key()).serial_number(x509.random_serial_number()).not_valid_before(
            now - datetime.timedelta(days=1)).not_valid_after(
                now + datetime.timedelta(days=365)).sign(private_key, hashes.SHA256()))
    return certificate.public_bytes(serialization.Encoding.DER)


class FakeTransport:
    ''' stands in for UdpTransport, routing datagrams to a FakeConsole '''

    def __init__(self, console, on_datagram, on_error=None):
        self.console = console
        self.on_datagram = on_datagram
        self.on_error = on_error
        self.bound = False
        self.closed = False
        self.sent = []

    async def bind(self):
        self.bound = True

    def send(self, data, address):
        if not self.bound or self.closed:
            raise TransportError('transport is not bound')
        self.sent.append((data, address))
        self.console.receive(self, data, address)

    def close(self):
        self.closed = True

    def deliver(self, data):
        if not self.closed:
            asyncio.get_running_loop().call_soon(self.on_datagram, data, CONSOLE_ADDRESS)


class FakeConsole:  # pylint: disable=too-many-instance-attributes
    ''' answers discovery, handshake, acks, channel opens and commands '''

    def __init__(self, live_id=LIVE_ID):
        self.live_id = live_id
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.certificate = make_certificate(self.private_key, live_id)
        self.answer_discovery = True
        self.answer_connect = True
        self.connect_result = 0
        self.auth_mode = 'accept'
        self.answer_heartbeats = True
        self.greeting = []
        self.participant_id = 31
        self.crypto = None
        self.transport = None
        self.transports = []
        self.received = []
        self.discovery_requests = 0
        self._sequence = itertools.count(1)
        self._channel_ids = itertools.count(0x100)

    def transport_factory(self, on_datagram, on_error=None, **_kwargs):
        self.transport = FakeTransport(self, on_datagram, on_error)
        self.transports.append(self.transport)
        return self.transport

    def messages(self, message_type):
        return [message for header, message in self.received if header.message_type == message_type]

    # -- inbound ---------------------------------------------------------
    def receive(self, transport, data, address):
        packet_type = packets.packet_type_of(data)
        if packet_type == PacketType.DISCOVERY_REQUEST:
            self.discovery_requests += 1
            if self.answer_discovery:
                response = DiscoveryResponse(name='Living Room',
                                             uuid='de305d54-75b4-431b-adb2-eb6b9e546014',
                                             certificate=self.certificate)
                transport.deliver(packets.encode(response))
        elif packet_type == PacketType.CONNECT_REQUEST:
            self._handle_connect(transport, data)
        elif packet_type == PacketType.MESSAGE:
            self._handle_message(packets.decode(data, self.crypto))

    def _handle_connect(self, transport, data):
        public_key = packets.peek_connect_public_key(data)
        self.crypto = SessionCrypto.from_handshake(self.private_key, public_key)
        packets.decode(data, self.crypto)
        self._sequence = itertools.count(1)
        if self.answer_connect:
            response = ConnectResponse(iv=SessionCrypto.random_iv(),
                                       connect_result=self.connect_result,
                                       participant_id=self.participant_id)
            transport.deliver(packets.encode(response, self.crypto))

    def _handle_message(self, packet):
        header = packet.header
        message = decode_payload(header.message_type, packet.payload)
        self.received.append((header, message))
        if header.message_type == MessageType.LOCAL_JOIN:
            self._handle_join(header)
            return
        if header.need_ack and (header.channel_id != ACK_CHANNEL_ID or self.answer_heartbeats):
            self.send(Ack(low_watermark=header.sequence, processed=[header.sequence]),
                      channel_id=ACK_CHANNEL_ID)
        if isinstance(message, StartChannelRequest):
            self.send(
                StartChannelResponse(request_id=message.request_id,
                                     channel_id=next(self._channel_ids)))
        elif isinstance(message, MediaCommand):
            self.send(MediaCommandResult(request_id=message.request_id),
                      channel_id=header.channel_id)
        elif isinstance(message, Json):
            body = json.loads(message.text)
            self.send(Json(text=json.dumps({
                'msgid': body['msgid'],
                'response': body['request'],
                'params': {}
            })),
                      channel_id=header.channel_id)

    def _handle_join(self, header):
        assert isinstance(self.received[-1][1], LocalJoin)
        for message in self.greeting:
            self.send(message)
        if self.auth_mode == 'accept':
            self.send(Ack(low_watermark=header.sequence, processed=[header.sequence]),
                      channel_id=ACK_CHANNEL_ID)
        elif self.auth_mode == 'reject':
            self.send(Ack(low_watermark=header.sequence, rejected=[header.sequence]),
                      channel_id=ACK_CHANNEL_ID)

    # -- outbound --------------------------------------------------------
    def send(self, message, channel_id=0, sequence=None, need_ack=False):
        self.send_payload(message.MESSAGE_TYPE,
                          message.pack(),
                          channel_id=channel_id,
                          sequence=sequence,
                          need_ack=need_ack)

    def send_payload(  # pylint: disable=too-many-arguments
            self,
            message_type,
            payload,
            channel_id=0,
            sequence=None,
            need_ack=False,
            is_fragment=False):
        header = MessageHeader(sequence=next(self._sequence) if sequence is None else sequence,
                               message_type=message_type,
                               channel_id=channel_id,
                               target_participant=self.participant_id,
                               need_ack=need_ack,
                               is_fragment=is_fragment)
        self.transport.deliver(packets.encode(MessagePacket(header, payload), self.crypto))


def make_status(title_id=5, aum='Home'):
    ''' console status with one focused title '''
    return ConsoleStatus(major_version=10,
                         minor_version=0,
                         build_number=22621,
                         locale='en-US',
                         active_titles=[ActiveTitle(title_id=title_id, aum=aum, has_focus=True)])


async def drain(rounds=5):
    ''' let queued datagram callbacks run '''
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def console():
    ''' a console that answers everything '''
    return FakeConsole()


@pytest.fixture
def session_config():
    ''' fast timers so failure paths finish quickly '''
    return SessionConfig(address=CONSOLE_ADDRESS[0],
                         live_id=LIVE_ID,
                         discovery_attempts=2,
                         discovery_interval=0.05,
                         connect_attempts=2,
                         connect_interval=0.05,
                         auth_timeout=0.1,
                         heartbeat_interval=0.05,
                         heartbeat_misses=3,
                         command_timeout=0.2,
                         fragment_timeout=0.5)
