"""Master keys that protect the data key with age X25519 recipients."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sopsfile import agecrypt
from sopsfile.agecrypt import AgeError, X25519Identity, X25519Recipient

SOPS_AGE_KEY_ENV = "SOPS_AGE_KEY"
SOPS_AGE_KEY_FILE_ENV = "SOPS_AGE_KEY_FILE"
SOPS_AGE_KEY_USER_CONFIG_PATH = "sops/age/keys.txt"
_XDG_CONFIG_HOME = "XDG_CONFIG_HOME"

log = logging.getLogger("sopsfile.age")


class AgeKeyError(Exception):
    """Raised when an age master key cannot be used."""


def _parse_recipient(recipient: str) -> X25519Recipient:
    try:
        return agecrypt.parse_x25519_recipient(recipient)
    except AgeError as exc:
        raise AgeKeyError(
            f"failed to parse input as Bech32-encoded age public key: {exc}"
        ) from exc


class ParsedIdentities(list):
    """A list of parsed age identities that can be injected into keys."""

    def import_identities(self, *args: str) -> None:
        """Parse each argument (possibly multi-line) and append the identities."""
        parsed = []
        try:
            for text in args:
                parsed.extend(agecrypt.parse_identities(text))
        except AgeError as exc:
            raise AgeKeyError(f"failed to parse and add to age identities: {exc}") from exc
        self.extend(parsed)

    def apply_to_master_key(self, key: "MasterKey") -> None:
        key.parsed_identities = self


@dataclass
class MasterKey:
    """An age recipient used to encrypt and decrypt the data key."""

    recipient: str = ""
    encrypted_key: str = ""
    parsed_recipient: X25519Recipient | None = field(default=None, repr=False)
    parsed_identities: list[X25519Identity] | None = field(default=None, repr=False)

    def encrypt(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` to the recipient and store the armored result."""
        if self.parsed_recipient is None:
            try:
                self.parsed_recipient = _parse_recipient(self.recipient)
            except AgeKeyError:
                log.info("Encryption failed")
                raise
        try:
            blob = agecrypt.encrypt(data_key, [self.parsed_recipient])
        except AgeError as exc:
            log.info("Encryption failed")
            raise AgeKeyError(f"failed to encrypt sops data key with age: {exc}") from exc
        self.set_encrypted_data_key(agecrypt.armor(blob).encode())
        log.info("Encryption succeeded for %s", self.parsed_recipient)

    def encrypt_if_needed(self, data_key: bytes) -> None:
        if not self.encrypted_key:
            self.encrypt(data_key)

    def encrypted_data_key(self) -> bytes:
        return self.encrypted_key.encode()

    def set_encrypted_data_key(self, enc: bytes) -> None:
        self.encrypted_key = enc.decode()

    def decrypt(self) -> bytes:
        """Decrypt the stored key with injected or environment-loaded identities."""
        if not self.parsed_identities:
            try:
                ids = self.load_identities()
            except AgeKeyError as exc:
                log.info("Decryption failed")
                raise AgeKeyError(f"failed to load age identities: {exc}") from exc
            ids.apply_to_master_key(self)
        try:
            blob = agecrypt.dearmor(self.encrypted_key)
            result = agecrypt.decrypt(blob, list(self.parsed_identities or []))
        except agecrypt._PayloadError as exc:
            log.info("Decryption failed")
            raise AgeKeyError(f"failed to copy age decrypted data: {exc}") from exc
        except AgeError as exc:
            log.info("Decryption failed")
            raise AgeKeyError(
                f"failed to create reader for decrypting sops data key with age: {exc}"
            ) from exc
        log.info("Decryption succeeded")
        return result

    def needs_rotation(self) -> bool:
        return False

    def to_string(self) -> str:
        return self.recipient

    def to_map(self) -> dict[str, Any]:
        return {"recipient": self.recipient, "enc": self.encrypted_key}

    def load_identities(self) -> ParsedIdentities:
        """Load identities from the key variable, key file and user config file."""
        sources: dict[str, str] = {}
        if SOPS_AGE_KEY_ENV in os.environ:
            sources[SOPS_AGE_KEY_ENV] = os.environ[SOPS_AGE_KEY_ENV]
        if SOPS_AGE_KEY_FILE_ENV in os.environ:
            try:
                sources[SOPS_AGE_KEY_FILE_ENV] = Path(
                    os.environ[SOPS_AGE_KEY_FILE_ENV]
                ).read_text()
            except OSError as exc:
                raise AgeKeyError(f"failed to open {SOPS_AGE_KEY_FILE_ENV} file: {exc}") from exc
        try:
            config_dir = user_config_dir()
        except AgeKeyError as exc:
            if not sources:
                raise AgeKeyError(f"user config directory could not be determined: {exc}") from exc
            config_dir = ""
        if config_dir:
            path = Path(config_dir, *SOPS_AGE_KEY_USER_CONFIG_PATH.split("/"))
            try:
                sources[str(path)] = path.read_text()
            except FileNotFoundError as exc:
                if not sources:
                    raise AgeKeyError(f"failed to open file: {exc}") from exc
            except OSError as exc:
                raise AgeKeyError(f"failed to open file: {exc}") from exc
        identities = ParsedIdentities()
        for name, text in sources.items():
            try:
                identities.extend(agecrypt.parse_identities(text))
            except AgeError as exc:
                raise AgeKeyError(f"failed to parse '{name}' age identities: {exc}") from exc
        return identities


def master_key_from_recipient(recipient: str) -> MasterKey:
    recipient = recipient.strip()
    return MasterKey(recipient=recipient, parsed_recipient=_parse_recipient(recipient))


def master_keys_from_recipients(comma_separated_recipients: str) -> list[MasterKey]:
    if not comma_separated_recipients:
        return []
    return [master_key_from_recipient(r) for r in comma_separated_recipients.split(",")]


def user_config_dir() -> str:
    """Return the per-user configuration directory; XDG_CONFIG_HOME wins on macOS too."""
    if sys.platform == "darwin":
        xdg = os.environ.get(_XDG_CONFIG_HOME, "")
        if xdg:
            return xdg
        home = os.environ.get("HOME", "")
        if not home:
            raise AgeKeyError("$HOME is not defined")
        return os.path.join(home, "Library", "Application Support")
    if sys.platform == "win32":
        app_data = os.environ.get("AppData", "")
        if not app_data:
            raise AgeKeyError("%AppData% is not defined")
        return app_data
    xdg = os.environ.get(_XDG_CONFIG_HOME, "")
    if xdg:
        if not os.path.isabs(xdg):
            raise AgeKeyError("path in $XDG_CONFIG_HOME is relative")
        return xdg
    home = os.environ.get("HOME", "")
    if not home:
        raise AgeKeyError("neither $XDG_CONFIG_HOME nor $HOME are defined")
    return os.path.join(home, ".config")