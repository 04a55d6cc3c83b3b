"""Cryptographic helpers and session key management for console sessions."""
from __future__ import annotations

import hmac as std_hmac
import os
from dataclasses import dataclass
from typing import Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.x509.oid import NameOID


BLOCK_SIZE = 16
TAG_SIZE = 32
PUBLIC_KEY_SIZE = 64

# Salt wrapped around the ECDH secret before SHA-512 expansion
KDF_PREFIX = bytes.fromhex("d637f1aae2f0418c")
KDF_SUFFIX = bytes.fromhex("a8f81a574e228ab7")

_ZERO_IV = bytes(BLOCK_SIZE)


class AuthError(Exception):
    """Raised when a packet fails its integrity check."""


class KeyExchangeError(Exception):
    """Raised when peer key material cannot be used for the handshake."""


class ReplayError(Exception):
    """Raised when an inbound sequence number is not newer than the last one."""


@dataclass
class SequenceWindow:
    """Tracks the highest accepted inbound sequence number.

    Only strictly increasing numbers are accepted; duplicates and
    reordered packets raise :class:`ReplayError`.
    """

    highest: int = -1

    def check_and_update(self, number: int) -> None:
        if number <= self.highest:
            raise ReplayError(
                f"sequence {number} is not newer than last accepted {self.highest}"
            )
        self.highest = number

    @property
    def low_watermark(self) -> int:
        return max(self.highest, 0)


@dataclass(frozen=True)
class SessionKeys:
    """Symmetric keys expanded from the handshake secret."""

    encrypt_key: bytes
    iv_key: bytes
    mac_key: bytes


@dataclass(frozen=True)
class ConsoleCertificate:
    """Identity and key pulled from the certificate in a discovery response."""

    live_id: str
    public_key: ec.EllipticCurvePublicKey


def padded_size(length: int) -> int:
    return (length + BLOCK_SIZE - 1) // BLOCK_SIZE * BLOCK_SIZE


def pad(data: bytes) -> bytes:
    """Pad to the block size; aligned input is left untouched."""
    size = padded_size(len(data)) - len(data)
    return data + bytes([size]) * size


# ---------------------------------------------------------------------------
# Key exchange
# ---------------------------------------------------------------------------


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, bytes]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, public_key_bytes(private_key.public_key())


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Raw X||Y coordinates, the encoding used on the wire."""
    point = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return point[1:]


def load_public_key(raw: bytes) -> ec.EllipticCurvePublicKey:
    if len(raw) != PUBLIC_KEY_SIZE:
        raise KeyExchangeError(f"public key must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), b"\x04" + raw)
    except ValueError as exc:
        raise KeyExchangeError(f"invalid P-256 point: {exc}") from exc


def derive_session_keys(
    local_private: ec.EllipticCurvePrivateKey,
    peer_public: Union[ec.EllipticCurvePublicKey, bytes],
) -> SessionKeys:
    """Run ECDH and expand the shared secret into independent keys."""

    if isinstance(peer_public, (bytes, bytearray)):
        peer_public = load_public_key(bytes(peer_public))
    shared_secret = local_private.exchange(ec.ECDH(), peer_public)
    digest = hashes.Hash(hashes.SHA512())
    digest.update(KDF_PREFIX + shared_secret + KDF_SUFFIX)
    material = digest.finalize()
    return SessionKeys(
        encrypt_key=material[:16],
        iv_key=material[16:32],
        mac_key=material[32:64],
    )


def load_console_certificate(der: bytes) -> ConsoleCertificate:
    try:
        certificate = x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise KeyExchangeError(f"unreadable console certificate: {exc}") from exc
    public_key = certificate.public_key()
    if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(
        public_key.curve, ec.SECP256R1
    ):
        raise KeyExchangeError("console certificate does not carry a P-256 key")
    names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not names:
        raise KeyExchangeError("console certificate has no common name")
    return ConsoleCertificate(live_id=str(names[0].value), public_key=public_key)


# ---------------------------------------------------------------------------
# Symmetric primitives
# ---------------------------------------------------------------------------


def encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    if len(plaintext) % BLOCK_SIZE:
        raise ValueError("plaintext must be block aligned; pad it first")
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(plaintext) + encryptor.finalize()


def decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if len(ciphertext) % BLOCK_SIZE:
        raise AuthError("ciphertext is not block aligned")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def sign(mac_key: bytes, data: bytes) -> bytes:
    h = crypto_hmac.HMAC(mac_key, hashes.SHA256())
    h.update(data)
    return h.finalize()


def verify(mac_key: bytes, data: bytes, tag: bytes) -> bool:
    return std_hmac.compare_digest(sign(mac_key, data), tag)


class SessionCrypto:
    """Keys for one session plus the packet level operations that use them."""

    def __init__(self, keys: SessionKeys) -> None:
        if len(keys.encrypt_key) != 16 or len(keys.iv_key) != 16:
            raise ValueError("AES keys must be 128 bits long")
        self.keys = keys

    @classmethod
    def from_handshake(
        cls,
        local_private: ec.EllipticCurvePrivateKey,
        peer_public: Union[ec.EllipticCurvePublicKey, bytes],
    ) -> "SessionCrypto":
        return cls(derive_session_keys(local_private, peer_public))

    @staticmethod
    def random_iv() -> bytes:
        return os.urandom(BLOCK_SIZE)

    def message_iv(self, header: bytes) -> bytes:
        """IV for a message body, derived from the first header block."""
        return encrypt(self.keys.iv_key, _ZERO_IV, header[:BLOCK_SIZE])

    def encrypt(self, iv: bytes, plaintext: bytes) -> bytes:
        return encrypt(self.keys.encrypt_key, iv, pad(plaintext))

    def decrypt(self, iv: bytes, ciphertext: bytes) -> bytes:
        return decrypt(self.keys.encrypt_key, iv, ciphertext)

    def sign(self, data: bytes) -> bytes:
        return sign(self.keys.mac_key, data)

    def verify(self, data: bytes, tag: bytes) -> bool:
        return verify(self.keys.mac_key, data, tag)

    def verify_packet(self, datagram: bytes) -> bytes:
        """Check the trailing tag of *datagram* and return what it covers."""
        if len(datagram) < TAG_SIZE:
            raise AuthError("datagram shorter than its integrity tag")
        body, tag = datagram[:-TAG_SIZE], datagram[-TAG_SIZE:]
        if not self.verify(body, tag):
            raise AuthError("integrity tag mismatch")
        return body
