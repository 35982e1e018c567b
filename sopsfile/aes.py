"""AES-256-GCM encryption of individual values in the ``ENC[...]`` envelope format."""

from __future__ import annotations

import base64
import binascii
import math
import os
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_SIZE = 32
_TAG_SIZE = 16
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_ENCRYPTED_RE = re.compile(r"^ENC\[AES256_GCM,data:(.+),iv:(.+),tag:(.+),type:(.+)\]")
_INT_RE = re.compile(r"[+-]?[0-9]+")

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class CipherError(Exception):
    """Raised when a value cannot be encrypted or decrypted."""


@dataclass(frozen=True)
class Comment:
    """A comment from a document, encrypted like any other value."""

    value: str = ""


class _EncryptedValue(NamedTuple):
    data: bytes
    iv: bytes
    tag: bytes
    datatype: str


def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CipherError(f"Error base64-decoding {what}: {exc}") from exc


def _parse(value: str) -> _EncryptedValue:
    match = _ENCRYPTED_RE.match(value)
    if match is None:
        raise CipherError(f"Input string {value} does not match sops' data format")
    data, iv, tag, datatype = match.groups()
    return _EncryptedValue(
        data=_b64decode(data, "data"),
        iv=_b64decode(iv, "iv"),
        tag=_b64decode(tag, "tag"),
        datatype=datatype,
    )


def _is_empty(value: Any) -> bool:
    if isinstance(value, (str, bytes)):
        return len(value) == 0
    if isinstance(value, Comment):
        return _is_empty(value.value)
    return False


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise CipherError(f"invalid integer value {text!r}")
    number = int(text)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise CipherError(f"integer value {text!r} out of range")
    return number


def _parse_float(text: str) -> float:
    if text != text.strip() or "_" in text:
        raise CipherError(f"invalid float value {text!r}")
    try:
        return float(text)
    except ValueError as exc:
        raise CipherError(f"invalid float value {text!r}") from exc


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise CipherError(f"invalid boolean value {text!r}")


def _format_float(value: float) -> str:
    """Shortest decimal form, never in exponent notation, no trailing zeros."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return format(Decimal(repr(value)).normalize(), "f")


def _serialize(plaintext: Any) -> tuple[str, bytes]:
    if isinstance(plaintext, bool):
        return "bool", b"True" if plaintext else b"False"
    if isinstance(plaintext, int):
        return "int", str(plaintext).encode()
    if isinstance(plaintext, float):
        return "float", _format_float(plaintext).encode()
    if isinstance(plaintext, str):
        return "str", plaintext.encode("utf-8", "surrogateescape")
    if isinstance(plaintext, Comment):
        return "comment", plaintext.value.encode("utf-8", "surrogateescape")
    raise CipherError(f"Value to encrypt has unsupported type {type(plaintext).__name__}")


def _deserialize(raw: bytes, datatype: str) -> Any:
    text = raw.decode("utf-8", "surrogateescape")
    if datatype == "str":
        return text
    if datatype == "int":
        return _parse_int(text)
    if datatype == "float":
        return _parse_float(text)
    if datatype == "bytes":
        return raw
    if datatype == "bool":
        return _parse_bool(text)
    if datatype == "comment":
        return Comment(text)
    raise CipherError(f"Unknown datatype: {datatype}")


def _stash_key(plaintext: Any, additional_data: str) -> tuple[str, type, Any]:
    return additional_data, type(plaintext), plaintext


class Cipher:
    """Encrypts and decrypts values with AES-256-GCM.

    IVs seen while decrypting are remembered so that re-encrypting an
    unchanged value under the same additional data yields the same ciphertext.
    """

    def __init__(self) -> None:
        self._stash: dict[tuple[str, type, Any], bytes] = {}

    def decrypt(self, ciphertext: str, key: bytes, additional_data: str) -> Any:
        """Decrypt an ``ENC[...]`` string and return the typed plaintext."""
        if _is_empty(ciphertext):
            return ""
        value = _parse(ciphertext)
        try:
            gcm = AESGCM(key)
        except (ValueError, TypeError) as exc:
            raise CipherError(f"Invalid AES key: {exc}") from exc
        try:
            decrypted = gcm.decrypt(value.iv, value.data + value.tag, additional_data.encode())
        except (InvalidTag, ValueError) as exc:
            reason = str(exc) or "message authentication failed"
            raise CipherError(f"Could not decrypt with AES_GCM: {reason}") from exc
        plaintext = _deserialize(decrypted, value.datatype)
        self._stash[_stash_key(plaintext, additional_data)] = value.iv
        return plaintext

    def encrypt(self, plaintext: Any, key: bytes, additional_data: str) -> str:
        """Encrypt a str, int, float, bool or Comment into an ``ENC[...]`` string."""
        if _is_empty(plaintext):
            return ""
        try:
            gcm = AESGCM(key)
        except (ValueError, TypeError) as exc:
            raise CipherError(f"Could not initialize AES GCM encryption cipher: {exc}") from exc
        datatype, plain_bytes = _serialize(plaintext)
        iv = self._stash.get(_stash_key(plaintext, additional_data))
        if iv is None:
            iv = os.urandom(_NONCE_SIZE)
        out = gcm.encrypt(iv, plain_bytes, additional_data.encode())
        data, tag = out[:-_TAG_SIZE], out[-_TAG_SIZE:]
        return "ENC[AES256_GCM,data:{},iv:{},tag:{},type:{}]".format(
            base64.b64encode(data).decode(),
            base64.b64encode(iv).decode(),
            base64.b64encode(tag).decode(),
            datatype,
        )