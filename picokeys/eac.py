"""Secure messaging: key derivation, command verification and response wrapping."""

from __future__ import annotations

import enum
import os
from dataclasses import replace
from typing import Optional, Tuple

from cryptography.hazmat.primitives import cmac
from cryptography.hazmat.primitives.ciphers import algorithms

from .apdu import Apdu, StatusWord
from .asn1 import format_tlv_len, walk_tlv
from .crypto import AesMode, aes_decrypt, aes_encrypt, generic_hash

MAX_INPUT = 4096
NONCE_SIZE = 8
KEY_SIZE = 16
MAC_SIZE = 8

TAG_PADDED_BODY = 0x87
TAG_PLAIN_BODY = 0x85
TAG_LE = 0x97
TAG_STATUS = 0x99
TAG_MAC = 0x8E


class MseProtocol(enum.IntEnum):
    AES = 0
    THREE_DES = 1
    NONE = 2


class SecureMessagingError(Exception):
    """Raised when a secured command cannot be checked or decoded.

    ``reason`` is one of ``wrong_length``, ``wrong_data``,
    ``verification_failed``, ``wrong_padding`` or ``exec_error``.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


def is_secured(cla: int) -> bool:
    """Whether the class byte announces secure messaging."""
    return bool(cla & 0x0C)


def remove_padding(data: bytes) -> bytes:
    """Strip ISO 7816-4 padding (0x80 followed by zeros); b"" if it is malformed."""
    stripped = bytes(data).rstrip(b"\x00")
    if not stripped or stripped[-1] != 0x80:
        return b""
    return stripped[:-1]


def _pad(buf: bytes, blocksize: int) -> bytes:
    buf = bytes(buf) + b"\x80"
    return buf + bytes(blocksize - (len(buf) % blocksize))


def _derive_key(derived: bytes, counter: int, nonce: bytes) -> bytes:
    material = bytes(derived) + bytes(nonce) + bytes([0, 0, 0, counter & 0xFF])
    return generic_hash("sha1", material)[:KEY_SIZE]


class SecureMessaging:
    """Session state for secure messaging between a terminal and the card."""

    def __init__(self) -> None:
        self.nonce = bytes(NONCE_SIZE)
        self.kenc = bytes(KEY_SIZE)
        self.kmac = bytes(KEY_SIZE)
        self.protocol = MseProtocol.NONE
        self.blocksize = 0
        self.ssc = 0
        self.iv = bytes(16)
        self.session_pin = b""

    def set_protocol(self, protocol: MseProtocol) -> None:
        self.protocol = MseProtocol(protocol)
        if self.protocol == MseProtocol.AES:
            self.blocksize = 16
        elif self.protocol == MseProtocol.THREE_DES:
            self.blocksize = 8

    def derive_all_keys(self, derived: bytes, nonce: Optional[bytes] = None) -> None:
        """Derive the session keys from a shared secret and reset the counter."""
        if nonce is None:
            nonce = os.urandom(NONCE_SIZE)
        nonce = bytes(nonce)
        if len(nonce) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        self.nonce = nonce
        self.kenc = _derive_key(derived, 1, nonce)
        self.kmac = _derive_key(derived, 2, nonce)
        self.ssc = 0
        self.iv = bytes(16)
        self.session_pin = b""

    def sign(self, data: bytes) -> bytes:
        """AES-CMAC of ``data`` under the MAC key."""
        mac = cmac.CMAC(algorithms.AES(bytes(self.kmac)))
        mac.update(bytes(data))
        return mac.finalize()

    def update_iv(self) -> None:
        """Set the IV to the send sequence counter encrypted under the encryption key."""
        counter = (self.ssc & ((1 << 128) - 1)).to_bytes(16, "big")
        self.iv = aes_encrypt(self.kenc, bytes(16), AesMode.CBC, counter)

    def get_le(self, data: bytes) -> int:
        """Expected response length carried in tag 0x97, or 0."""
        for element in walk_tlv(data):
            if element.tag == TAG_LE:
                le = 0
                for byte in element.value:
                    le = (le << 8) | byte
                return le & 0xFFFF
        return 0

    def _require_blocksize(self) -> int:
        if self.blocksize <= 0:
            raise SecureMessagingError("exec_error", "secure messaging protocol not set")
        return self.blocksize

    def _next_ssc(self) -> bytes:
        blocksize = self._require_blocksize()
        self.ssc += 1
        try:
            return self.ssc.to_bytes(blocksize, "big")
        except OverflowError as exc:
            raise SecureMessagingError("exec_error", "sequence counter overflow") from exc

    def verify(self, apdu: Apdu) -> None:
        """Check the MAC of a secured command; raise SecureMessagingError if it fails."""
        blocksize = self._require_blocksize()
        add_header = (apdu.cla & 0x0C) == 0x0C
        data_len = (apdu.nc // blocksize) * blocksize
        if data_len + (blocksize if add_header else 0) > MAX_INPUT:
            raise SecureMessagingError("wrong_length")
        buf = bytearray(self._next_ssc())
        if add_header:
            buf += apdu.header + b"\x80" + bytes(blocksize - 5)
        some_added = False
        mac: Optional[bytes] = None
        for element in walk_tlv(apdu.data):
            if element.tag & 0x1:
                buf.append(element.tag & 0xFF)
                buf += format_tlv_len(len(element.value))
                buf += element.value
                some_added = True
            if element.tag == TAG_MAC:
                mac = element.value
        if mac is None:
            raise SecureMessagingError("wrong_data", "secured command carries no MAC")
        if some_added:
            buf = bytearray(_pad(bytes(buf), blocksize))
        signature = self.sign(bytes(buf))
        if signature[:len(mac)] != mac:
            raise SecureMessagingError("verification_failed")

    def unwrap(self, apdu: Apdu) -> Apdu:
        """Verify and decrypt a secured command, returning the plain command."""
        if (apdu.cla >> 2) & 0x3 == 0:
            return apdu
        self.verify(apdu)
        ne = self.get_le(apdu.data)
        body: Optional[bytes] = None
        padded = False
        for element in walk_tlv(apdu.data):
            if element.tag in (TAG_PADDED_BODY, TAG_PLAIN_BODY):
                body = element.value
                padded = element.tag == TAG_PADDED_BODY
        if body is None:
            return replace(apdu, data=b"", ne=ne)
        if padded:
            if not body or body[0] != 0x01:
                raise SecureMessagingError("wrong_padding")
            body = body[1:]
        self.update_iv()
        try:
            plain = aes_decrypt(self.kenc, self.iv, AesMode.CBC, body)
        except ValueError as exc:
            raise SecureMessagingError("wrong_length", str(exc)) from exc
        return replace(apdu, data=remove_padding(plain), ne=ne)

    def wrap(self, apdu: Apdu, response: bytes, sw: int) -> Tuple[bytes, int]:
        """Encrypt and MAC a response to a secured command.

        Returns the wrapped response data and the status word to send.
        Responses to unsecured commands are returned unchanged.
        """
        if (apdu.cla >> 2) & 0x3 == 0:
            return bytes(response), sw
        blocksize = self._require_blocksize()
        ssc = self._next_ssc()
        out = bytearray()
        if response:
            padded = _pad(bytes(response), blocksize)
            self.update_iv()
            try:
                encrypted = aes_encrypt(self.kenc, self.iv, AesMode.CBC, padded)
            except ValueError as exc:
                raise SecureMessagingError("exec_error", str(exc)) from exc
            body = b"\x01" + encrypted
            out += bytes([TAG_PADDED_BODY]) + format_tlv_len(len(body)) + body
        out += bytes([TAG_STATUS, 2, (sw >> 8) & 0xFF, sw & 0xFF])
        mac = self.sign(_pad(ssc + bytes(out), blocksize))[:MAC_SIZE]
        out += bytes([TAG_MAC, MAC_SIZE]) + mac
        return bytes(out), StatusWord.OK