"""Audit events and the registry of auditors notified about them."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

import yaml

CONFIG_FILE = "/etc/sops/audit.yaml"

log = logging.getLogger("sopsfile.audit")


@dataclass(frozen=True)
class DecryptEvent:
    """A file was decrypted."""

    file: str
    action: ClassVar[str] = "decrypt"


@dataclass(frozen=True)
class EncryptEvent:
    """A file was encrypted."""

    file: str
    action: ClassVar[str] = "encrypt"


@dataclass(frozen=True)
class RotateEvent:
    """A file's data key was rotated."""

    file: str
    action: ClassVar[str] = "rotate"


class Auditor(ABC):
    """Receives noteworthy events such as files being encrypted or decrypted."""

    @abstractmethod
    def handle(self, event: Any) -> None:
        """Persist ``event``; how, and how failures are treated, is up to the auditor."""


_auditors: list[Auditor] = []


def register(auditor: Auditor) -> None:
    """Add ``auditor`` to the global list of auditors."""
    _auditors.append(auditor)


def submit_event(event: Any) -> None:
    """Hand ``event`` to every registered auditor, in registration order."""
    for auditor in _auditors:
        auditor.handle(event)


def load_postgres_connection_strings(path: str = CONFIG_FILE) -> list[str]:
    """Read the Postgres connection strings configured in the audit file.

    A missing or unreadable file means no backends; a malformed file raises ValueError.
    """
    try:
        text = Path(path).read_text()
    except OSError as exc:
        log.debug("Error reading config: %s", exc)
        return []
    try:
        conf = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Error unmarshalling config: {exc}") from exc
    if conf is None:
        return []
    if not isinstance(conf, dict):
        raise ValueError("Error unmarshalling config: top level must be a mapping")
    backends = conf.get("backends") or {}
    if not isinstance(backends, dict):
        raise ValueError("Error unmarshalling config: 'backends' must be a mapping")
    postgres = backends.get("postgres") or []
    if not isinstance(postgres, list):
        raise ValueError("Error unmarshalling config: 'postgres' must be a list")
    strings = []
    for entry in postgres:
        if not isinstance(entry, dict):
            raise ValueError("Error unmarshalling config: postgres entries must be mappings")
        strings.append(str(entry.get("connection_string") or ""))
    return strings