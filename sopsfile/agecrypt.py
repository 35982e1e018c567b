"""A self-contained implementation of the age v1 file format with X25519 keys."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, PublicFormat, NoEncryption

_VERSION_LINE = b"age-encryption.org/v1"
_X25519_LABEL = b"age-encryption.org/v1/X25519"
_FILE_KEY_SIZE = 16
_CHUNK_SIZE = 64 * 1024
_TAG_SIZE = 16
_COLUMNS = 64

_ARMOR_BEGIN = "-----BEGIN AGE ENCRYPTED FILE-----"
_ARMOR_END = "-----END AGE ENCRYPTED FILE-----"

_RECIPIENT_HRP = "age"
_IDENTITY_HRP = "age-secret-key-"

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GEN = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


class AgeError(Exception):
    """Raised for malformed keys, headers, armor or payloads."""


class NoIdentityMatchError(AgeError):
    """Raised when none of the identities can unwrap the file key."""

    def __init__(self) -> None:
        super().__init__("no identity matched any of the recipients")


class _PayloadError(AgeError):
    """Raised when the payload fails to decrypt after the header was accepted."""


class _Stanza(NamedTuple):
    type: str
    args: list[str]
    body: bytes


# --- bech32 -----------------------------------------------------------------


def _polymod(values: Iterable[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i, gen in enumerate(_BECH32_GEN):
            if (top >> i) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: Iterable[int], from_bits: int, to_bits: int, pad: bool) -> list[int]:
    acc = 0
    bits = 0
    out = []
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or (acc << (to_bits - bits)) & maxv:
        raise AgeError("invalid bech32 padding")
    return out


def _bech32_encode(hrp: str, data: bytes) -> str:
    values = _convert_bits(data, 8, 5, True)
    polymod = _polymod(_hrp_expand(hrp) + values + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_BECH32_CHARSET[v] for v in values + checksum)


def _bech32_decode(text: str) -> tuple[str, bytes]:
    if text.lower() != text and text.upper() != text:
        raise AgeError("mixed case in bech32 string")
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        raise AgeError("separator '1' at invalid position")
    hrp = text[:pos]
    if any(not 33 <= ord(c) <= 126 for c in hrp):
        raise AgeError("invalid character in human-readable part")
    try:
        values = [_BECH32_CHARSET.index(c) for c in text[pos + 1:]]
    except ValueError as exc:
        raise AgeError("invalid character in bech32 data") from exc
    if _polymod(_hrp_expand(hrp) + values) != 1:
        raise AgeError("invalid bech32 checksum")
    return hrp, bytes(_convert_bits(values[:-6], 5, 8, False))


# --- primitives -------------------------------------------------------------


def _hkdf(ikm: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=salt or None, info=info).derive(ikm)


def _b64_raw_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64_raw_decode(text: str) -> bytes:
    if "=" in text or "\r" in text or "\n" in text:
        raise AgeError("malformed base64 in header")
    try:
        return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AgeError(f"malformed base64 in header: {exc}") from exc


def _exchange(private: X25519PrivateKey, public_bytes: bytes) -> bytes:
    try:
        return private.exchange(X25519PublicKey.from_public_bytes(public_bytes))
    except ValueError as exc:
        raise AgeError("invalid X25519 recipient") from exc


# --- keys -------------------------------------------------------------------


@dataclass(frozen=True)
class X25519Recipient:
    """An X25519 public key that file keys are wrapped to."""

    public_key: bytes

    def __str__(self) -> str:
        return _bech32_encode(_RECIPIENT_HRP, self.public_key)

    def wrap(self, file_key: bytes) -> _Stanza:
        """Wrap ``file_key`` into an X25519 header stanza."""
        ephemeral = X25519PrivateKey.generate()
        share = ephemeral.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        shared = _exchange(ephemeral, self.public_key)
        wrap_key = _hkdf(shared, share + self.public_key, _X25519_LABEL)
        body = ChaCha20Poly1305(wrap_key).encrypt(bytes(12), file_key, None)
        return _Stanza("X25519", [_b64_raw_encode(share)], body)


@dataclass(frozen=True)
class X25519Identity:
    """An X25519 private key that unwraps file keys."""

    secret_key: bytes

    @classmethod
    def generate(cls) -> "X25519Identity":
        private = X25519PrivateKey.generate()
        return cls(private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()))

    def __str__(self) -> str:
        return _bech32_encode(_IDENTITY_HRP, self.secret_key).upper()

    def recipient(self) -> X25519Recipient:
        private = X25519PrivateKey.from_private_bytes(self.secret_key)
        return X25519Recipient(private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))

    def unwrap(self, stanzas: Iterable[_Stanza]) -> bytes | None:
        """Return the file key from the first matching stanza, or None."""
        private = X25519PrivateKey.from_private_bytes(self.secret_key)
        own_public = self.recipient().public_key
        for stanza in stanzas:
            if stanza.type != "X25519":
                continue
            if len(stanza.args) != 1:
                raise AgeError("invalid X25519 recipient block")
            share = _b64_raw_decode(stanza.args[0])
            if len(share) != 32 or len(stanza.body) != _FILE_KEY_SIZE + _TAG_SIZE:
                raise AgeError("invalid X25519 recipient block")
            shared = _exchange(private, share)
            wrap_key = _hkdf(shared, share + own_public, _X25519_LABEL)
            try:
                return ChaCha20Poly1305(wrap_key).decrypt(bytes(12), stanza.body, None)
            except InvalidTag:
                continue
        return None


def parse_x25519_recipient(text: str) -> X25519Recipient:
    """Parse an ``age1...`` public key."""
    try:
        hrp, data = _bech32_decode(text)
    except AgeError as exc:
        raise AgeError(f"malformed recipient {text!r}: {exc}") from exc
    if hrp != _RECIPIENT_HRP:
        raise AgeError(f"malformed recipient {text!r}: invalid type {hrp!r}")
    if len(data) != 32:
        raise AgeError(f"malformed recipient {text!r}: invalid length")
    return X25519Recipient(data)


def parse_x25519_identity(text: str) -> X25519Identity:
    """Parse an ``AGE-SECRET-KEY-1...`` private key."""
    try:
        hrp, data = _bech32_decode(text)
    except AgeError as exc:
        raise AgeError(f"malformed secret key: {exc}") from exc
    if hrp != _IDENTITY_HRP:
        raise AgeError(f"malformed secret key: unknown type {hrp!r}")
    if len(data) != 32:
        raise AgeError("malformed secret key: invalid length")
    return X25519Identity(data)


def parse_identities(text: str) -> list[X25519Identity]:
    """Parse one identity per line, skipping blank lines and ``#`` comments."""
    identities = []
    for number, line in enumerate(text.splitlines(), start=1):
        line = line.rstrip("\r")
        if not line or line.startswith("#"):
            continue
        try:
            identities.append(parse_x25519_identity(line))
        except AgeError as exc:
            raise AgeError(f"error at line {number}: {exc}") from exc
    if not identities:
        raise AgeError("no secret keys found")
    return identities


# --- file format ------------------------------------------------------------


def _header_without_mac(stanzas: Sequence[_Stanza]) -> bytes:
    lines = [_VERSION_LINE]
    for stanza in stanzas:
        lines.append(" ".join(["->", stanza.type, *stanza.args]).encode("ascii"))
        encoded = _b64_raw_encode(stanza.body)
        chunks = [encoded[i:i + _COLUMNS] for i in range(0, len(encoded), _COLUMNS)]
        if len(encoded) % _COLUMNS == 0:
            chunks.append("")
        lines.extend(c.encode("ascii") for c in chunks)
    return b"\n".join(lines) + b"\n---"


def _header_mac(file_key: bytes, header: bytes) -> bytes:
    return hmac.new(_hkdf(file_key, b"", b"header"), header, hashlib.sha256).digest()


def _chunk_nonce(counter: int, last: bool) -> bytes:
    return counter.to_bytes(11, "big") + (b"\x01" if last else b"\x00")


def encrypt(data: bytes, recipients: Sequence[X25519Recipient]) -> bytes:
    """Encrypt ``data`` to all ``recipients`` and return the binary age file."""
    if not recipients:
        raise AgeError("no recipients specified")
    file_key = os.urandom(_FILE_KEY_SIZE)
    header = _header_without_mac([r.wrap(file_key) for r in recipients])
    mac = _header_mac(file_key, header)
    nonce = os.urandom(16)
    aead = ChaCha20Poly1305(_hkdf(file_key, nonce, b"payload"))
    chunks = [data[i:i + _CHUNK_SIZE] for i in range(0, len(data), _CHUNK_SIZE)] or [b""]
    payload = b"".join(
        aead.encrypt(_chunk_nonce(n, n == len(chunks) - 1), chunk, None)
        for n, chunk in enumerate(chunks)
    )
    return header + b" " + _b64_raw_encode(mac).encode("ascii") + b"\n" + nonce + payload


def _parse_header(data: bytes) -> tuple[list[_Stanza], bytes, bytes, bytes]:
    pos = 0

    def readline() -> tuple[bytes, int]:
        nonlocal pos
        end = data.find(b"\n", pos)
        if end < 0:
            raise AgeError("failed to read header: unexpected end of input")
        start, pos = pos, end + 1
        return data[start:end], start

    line, _ = readline()
    if line != _VERSION_LINE:
        raise AgeError("failed to read header: unknown format")
    stanzas = []
    while True:
        line, start = readline()
        if line.startswith(b"--- "):
            mac = _b64_raw_decode(line[4:].decode("ascii", "replace"))
            return stanzas, data[:start + 3], mac, data[pos:]
        if not line.startswith(b"-> "):
            raise AgeError("failed to read header: malformed stanza")
        args = line[3:].decode("ascii", "replace").split(" ")
        if not args or not args[0] or any(not a for a in args):
            raise AgeError("failed to read header: malformed stanza")
        body_text = ""
        while True:
            body_line, _ = readline()
            if len(body_line) > _COLUMNS:
                raise AgeError("failed to read header: body line too long")
            body_text += body_line.decode("ascii", "replace")
            if len(body_line) < _COLUMNS:
                break
        stanzas.append(_Stanza(args[0], args[1:], _b64_raw_decode(body_text)))


def _decrypt_payload(file_key: bytes, payload: bytes) -> bytes:
    if len(payload) < 16:
        raise _PayloadError("failed to read nonce")
    nonce, body = payload[:16], payload[16:]
    aead = ChaCha20Poly1305(_hkdf(file_key, nonce, b"payload"))
    step = _CHUNK_SIZE + _TAG_SIZE
    pieces = [body[i:i + step] for i in range(0, len(body), step)] or [b""]
    out = []
    for n, piece in enumerate(pieces):
        last = n == len(pieces) - 1
        try:
            plain = aead.decrypt(_chunk_nonce(n, last), piece, None)
        except (InvalidTag, ValueError) as exc:
            raise _PayloadError("failed to decrypt and authenticate payload chunk") from exc
        if last and not plain and n > 0:
            raise _PayloadError("last chunk is empty")
        out.append(plain)
    return b"".join(out)


def decrypt(data: bytes, identities: Sequence[X25519Identity]) -> bytes:
    """Decrypt a binary age file with the first identity that matches."""
    if not identities:
        raise AgeError("no identities specified")
    stanzas, header, mac, payload = _parse_header(data)
    file_key = None
    for identity in identities:
        file_key = identity.unwrap(stanzas)
        if file_key is not None:
            break
    if file_key is None:
        raise NoIdentityMatchError()
    if not hmac.compare_digest(_header_mac(file_key, header), mac):
        raise AgeError("bad header MAC")
    return _decrypt_payload(file_key, payload)


def armor(data: bytes) -> str:
    """Wrap binary age data in the PEM-like ASCII armor."""
    encoded = base64.b64encode(data).decode("ascii")
    lines = [encoded[i:i + _COLUMNS] for i in range(0, len(encoded), _COLUMNS)]
    return "\n".join([_ARMOR_BEGIN, *lines, _ARMOR_END]) + "\n"


def dearmor(text: str | bytes) -> bytes:
    """Undo :func:`armor`."""
    if isinstance(text, bytes):
        text = text.decode("ascii", "replace")
    lines = [line.rstrip() for line in text.strip().splitlines()]
    if len(lines) < 2 or lines[0] != _ARMOR_BEGIN:
        raise AgeError("armor: invalid header")
    if lines[-1] != _ARMOR_END:
        raise AgeError("armor: invalid footer")
    body = lines[1:-1]
    if any(len(line) > _COLUMNS for line in body):
        raise AgeError("armor: line too long")
    try:
        return base64.b64decode("".join(body), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AgeError(f"armor: invalid base64: {exc}") from exc