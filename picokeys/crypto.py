"""Hashing, AES and elliptic-curve helpers."""

from __future__ import annotations

import enum
import hashlib
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

IV_SIZE = 16
_PIN_HASH_ROUNDS = 256


class AesMode(enum.IntEnum):
    CBC = 1
    CFB = 2


class KeyType(enum.IntFlag):
    RSA = 0x000F
    RSA_1K = 0x0001
    RSA_2K = 0x0002
    RSA_3K = 0x0004
    RSA_4K = 0x0008
    EC = 0x0010
    AES = 0x0F00
    AES_128 = 0x0100
    AES_192 = 0x0200
    AES_256 = 0x0400
    AES_512 = 0x0800


class EcCurve(enum.Enum):
    """Supported curves, each identified by its field prime."""

    SECP192R1 = bytes.fromhex("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFFFFFFFFFFFF")
    SECP256R1 = bytes.fromhex(
        "FFFFFFFF00000001000000000000000000000000FFFFFFFFFFFFFFFFFFFFFFFF"
    )
    SECP384R1 = bytes.fromhex(
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFE"
        "FFFFFFFF0000000000000000FFFFFFFF"
    )
    SECP521R1 = bytes.fromhex("01" + "FF" * 65)
    BP256R1 = bytes.fromhex(
        "A9FB57DBA1EEA9BC3E660A909D838D726E3BF623D52620282013481D1F6E5377"
    )
    BP384R1 = bytes.fromhex(
        "8CB91E82A3386D280F5D6F7E50E641DF152F7109ED5456B412B1DA197FB71123"
        "ACD3A729901D1A71874700133107EC53"
    )
    BP512R1 = bytes.fromhex(
        "AADD9DB8DBE9C48B3FD4E6AE33C9FC07CB308DB3B3C9D20ED6639CCA70330871"
        "7D4D9B009BC66842AECDA12AE6A380E62881FF2F2D82C68528AA6056583A48F3"
    )
    SECP192K1 = bytes.fromhex("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFEE37")
    SECP256K1 = bytes.fromhex(
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F"
    )
    CURVE25519 = bytes.fromhex(
        "7FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFED"
    )
    CURVE448 = bytes.fromhex(
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFE"
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF"
    )

    @property
    def prime(self) -> bytes:
        return self.value


def hash_multi(data: bytes, serial: bytes = b"") -> bytes:
    """SHA-256 of ``serial`` followed by the first 256 bytes of ``data`` repeated."""
    data = bytes(data)
    if not data:
        raise ValueError("cannot hash empty input")
    ctx = hashlib.sha256(bytes(serial))
    remaining = _PIN_HASH_ROUNDS
    while remaining > len(data):
        ctx.update(data)
        remaining -= len(data)
    if remaining > 0:
        ctx.update(data[:remaining])
    return ctx.digest()


def double_hash_pin(pin: bytes, serial: bytes = b"") -> bytes:
    """Hash a PIN twice, mixing the PIN into the intermediate digest."""
    pin = bytes(pin)
    first = hash_multi(pin, serial)
    mixed = bytes(b ^ pin[i % len(pin)] for i, b in enumerate(first))
    return hash_multi(mixed, serial)


def hash256(data: bytes) -> bytes:
    """Plain SHA-256 digest."""
    return hashlib.sha256(bytes(data)).digest()


def generic_hash(algorithm: str, data: bytes) -> bytes:
    """Digest ``data`` with the named hash algorithm (e.g. ``"sha1"``)."""
    return hashlib.new(algorithm, bytes(data)).digest()


def _cipher(key: bytes, iv: Optional[bytes], mode: int, data: bytes) -> Cipher:
    if len(key) not in (16, 24, 32):
        raise ValueError(f"invalid AES key size: {len(key) * 8} bits")
    if iv is None:
        iv = bytes(IV_SIZE)
    elif len(iv) != IV_SIZE:
        raise ValueError(f"IV must be {IV_SIZE} bytes")
    if mode == AesMode.CBC:
        if len(data) % IV_SIZE:
            raise ValueError("CBC data length must be a multiple of 16")
        cipher_mode = modes.CBC(bytes(iv))
    else:
        cipher_mode = modes.CFB(bytes(iv))
    return Cipher(algorithms.AES(bytes(key)), cipher_mode)


def aes_encrypt(key: bytes, iv: Optional[bytes], mode: int, data: bytes) -> bytes:
    """Encrypt with AES in CBC (no padding) or CFB-128 mode."""
    encryptor = _cipher(key, iv, mode, data).encryptor()
    return encryptor.update(bytes(data)) + encryptor.finalize()


def aes_decrypt(key: bytes, iv: Optional[bytes], mode: int, data: bytes) -> bytes:
    """Decrypt with AES in CBC (no padding) or CFB-128 mode."""
    decryptor = _cipher(key, iv, mode, data).decryptor()
    return decryptor.update(bytes(data)) + decryptor.finalize()


def _require_256(key: bytes) -> None:
    if len(key) != 32:
        raise ValueError("AES-256 requires a 32-byte key")


def aes_encrypt_cfb_256(key: bytes, iv: Optional[bytes], data: bytes) -> bytes:
    _require_256(key)
    return aes_encrypt(key, iv, AesMode.CFB, data)


def aes_decrypt_cfb_256(key: bytes, iv: Optional[bytes], data: bytes) -> bytes:
    _require_256(key)
    return aes_decrypt(key, iv, AesMode.CFB, data)


def ec_get_curve_from_prime(prime: bytes) -> Optional[EcCurve]:
    """Identify a curve by its field prime, or return None."""
    try:
        return EcCurve(bytes(prime))
    except ValueError:
        return None