#!/usr/bin/env python3
''' test key exchange and symmetric helpers '''

import pytest

from sglink import crypto
from sglink.crypto import (
    KeyExchangeError,
    ReplayError,
    SequenceWindow,
    SessionCrypto,
    derive_session_keys,
    generate_keypair,
)

from .conftest import LIVE_ID, FakeConsole


def test_both_sides_derive_same_keys():
    ''' ECDH from either side expands to identical keys '''
    a_private, a_public = generate_keypair()
    b_private, b_public = generate_keypair()
    keys = derive_session_keys(a_private, b_public)
    assert keys == derive_session_keys(b_private, a_public)
    assert len(keys.encrypt_key) == 16
    assert len(keys.iv_key) == 16
    assert len(keys.mac_key) == 32
    assert len({keys.encrypt_key, keys.iv_key, keys.mac_key[:16]}) == 3


def test_public_key_is_raw_point():
    ''' public keys travel as 64 raw coordinate bytes '''
    _, public = generate_keypair()
    assert len(public) == 64
    assert crypto.public_key_bytes(crypto.load_public_key(public)) == public


def test_invalid_public_key():
    ''' wrong sizes and off-curve points are rejected '''
    with pytest.raises(KeyExchangeError):
        crypto.load_public_key(b'\x01' * 10)
    with pytest.raises(KeyExchangeError):
        crypto.load_public_key(b'\x01' * 64)


def test_encrypt_decrypt_roundtrip():
    ''' padded CBC encryption decrypts to the padded plaintext '''
    private, _ = generate_keypair()
    _, peer = generate_keypair()
    session = SessionCrypto.from_handshake(private, peer)
    iv = session.random_iv()
    ciphertext = session.encrypt(iv, b'hello console')
    assert len(ciphertext) == 16
    assert session.decrypt(iv, ciphertext)[:13] == b'hello console'


def test_padding_only_when_unaligned():
    ''' aligned input gets no extra block '''
    assert crypto.pad(bytes(16)) == bytes(16)
    assert crypto.pad(b'abc') == b'abc' + bytes([13]) * 13


def test_single_byte_mutation_fails_verify():
    ''' any changed byte invalidates the tag '''
    key = bytes(range(32))
    data = b'encrypted payload bytes'
    tag = crypto.sign(key, data)
    assert crypto.verify(key, data, tag)
    for index in range(len(data)):
        mutated = bytearray(data)
        mutated[index] ^= 0x80
        assert not crypto.verify(key, bytes(mutated), tag)


def test_console_certificate():
    ''' the live id and key come from the discovery certificate '''
    console = FakeConsole()
    certificate = crypto.load_console_certificate(console.certificate)
    assert certificate.live_id == LIVE_ID
    assert crypto.public_key_bytes(certificate.public_key) == crypto.public_key_bytes(
        console.private_key.public_key())


def test_unreadable_certificate():
    ''' garbage certificates raise KeyExchangeError '''
    with pytest.raises(KeyExchangeError):
        crypto.load_console_certificate(b'not a certificate')


def test_sequence_window():
    ''' only strictly increasing numbers are accepted '''
    window = SequenceWindow()
    window.check_and_update(1)
    window.check_and_update(5)
    with pytest.raises(ReplayError):
        window.check_and_update(5)
    with pytest.raises(ReplayError):
        window.check_and_update(3)
    assert window.low_watermark == 5
