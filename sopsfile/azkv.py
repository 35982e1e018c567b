"""Master keys that protect the data key with an Azure Key Vault RSA key."""

from __future__ import annotations

import base64
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.parse import urlsplit

import requests

AZKV_TTL = timedelta(hours=24 * 30 * 6)
API_VERSION = "7.4"
ALGORITHM = "RSA-OAEP-256"
DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
_TIMEOUT = 30

_URL_RE = re.compile(r"^(https://[^/]+)/keys/([^/]+)/([^/]+)$")
_RAW_URL_B64_RE = re.compile(r"[A-Za-z0-9_-]*")

log = logging.getLogger("sopsfile.azkv")


class AzureKeyVaultError(Exception):
    """Raised when an Azure Key Vault operation or credential fails."""


class _Credential(Protocol):
    def get_token(self, scope: str) -> str: ...


def _raw_url_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _raw_url_b64decode(text: str) -> bytes:
    if not _RAW_URL_B64_RE.fullmatch(text) or len(text) % 4 == 1:
        raise ValueError(f"illegal base64 data in {text!r}")
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _scope_for_vault(vault_url: str) -> str:
    host = urlsplit(vault_url).hostname or ""
    _, dot, rest = host.partition(".")
    resource_host = rest if dot and rest else host
    return f"https://{resource_host}/.default"


class EnvironmentCredential:
    """Client-credentials token provider configured from AZURE_* variables."""

    def __init__(
        self,
        tenant_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        authority_host: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id if tenant_id is not None else os.environ.get("AZURE_TENANT_ID", "")
        self.client_id = client_id if client_id is not None else os.environ.get("AZURE_CLIENT_ID", "")
        self.client_secret = (
            client_secret if client_secret is not None else os.environ.get("AZURE_CLIENT_SECRET", "")
        )
        self.authority_host = (
            authority_host
            or os.environ.get("AZURE_AUTHORITY_HOST", "")
            or DEFAULT_AUTHORITY_HOST
        ).rstrip("/")
        self._cache: dict[str, tuple[str, float]] = {}

    def get_token(self, scope: str) -> str:
        """Return a bearer token for ``scope``, fetching a new one when needed."""
        cached = self._cache.get(scope)
        if cached is not None and cached[1] > time.monotonic():
            return cached[0]
        missing = [
            name
            for name, value in (
                ("AZURE_TENANT_ID", self.tenant_id),
                ("AZURE_CLIENT_ID", self.client_id),
                ("AZURE_CLIENT_SECRET", self.client_secret),
            )
            if not value
        ]
        if missing:
            raise AzureKeyVaultError(
                f"incomplete environment configuration, missing: {', '.join(missing)}"
            )
        url = f"{self.authority_host}/{self.tenant_id}/oauth2/v2.0/token"
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": scope,
        }
        try:
            response = requests.post(url, data=form, timeout=_TIMEOUT)
            response.raise_for_status()
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in", 3600))
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            raise AzureKeyVaultError(f"failed to obtain Azure access token: {exc}") from exc
        self._cache[scope] = (token, time.monotonic() + max(expires_in - 60, 0))
        return token


@dataclass
class TokenCredential:
    """A credential that can be injected into master keys."""

    token: Any

    def apply_to_master_key(self, key: "MasterKey") -> None:
        key.token_credential = self.token


@dataclass
class MasterKey:
    """An Azure Key Vault key used to encrypt and decrypt the data key."""

    vault_url: str = ""
    name: str = ""
    version: str = ""
    encrypted_key: str = ""
    creation_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    token_credential: Any = field(default=None, repr=False)

    def _log_fields(self) -> dict[str, str]:
        return {"key": self.name, "version": self.version}

    def _operation_url(self, operation: str) -> str:
        parts = [self.vault_url.rstrip("/"), "keys", self.name]
        if self.version:
            parts.append(self.version)
        parts.append(operation)
        return "/".join(parts) + f"?api-version={API_VERSION}"

    def _call(self, credential: _Credential, operation: str, value: bytes) -> bytes:
        token = credential.get_token(_scope_for_vault(self.vault_url))
        try:
            response = requests.post(
                self._operation_url(operation),
                json={"alg": ALGORITHM, "value": _raw_url_b64encode(value)},
                headers={"Authorization": f"Bearer {token}"},
                timeout=_TIMEOUT,
            )
            response.raise_for_status()
            return _raw_url_b64decode(response.json()["value"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            raise AzureKeyVaultError(str(exc)) from exc

    def encrypt(self, data_key: bytes) -> None:
        """Encrypt ``data_key`` in the vault and store the result."""
        credential = self.get_token_credential()
        try:
            result = self._call(credential, "encrypt", data_key)
        except Exception as exc:
            log.info("Encryption failed %s", self._log_fields())
            raise AzureKeyVaultError(
                f"failed to encrypt sops data key with Azure Key Vault key "
                f"'{self.to_string()}': {exc}"
            ) from exc
        self.set_encrypted_data_key(_raw_url_b64encode(result).encode())
        log.info("Encryption succeeded %s", self._log_fields())

    def encrypted_data_key(self) -> bytes:
        return self.encrypted_key.encode()

    def set_encrypted_data_key(self, enc: bytes) -> None:
        self.encrypted_key = enc.decode()

    def encrypt_if_needed(self, data_key: bytes) -> None:
        if not self.encrypted_key:
            self.encrypt(data_key)

    def decrypt(self) -> bytes:
        """Decrypt the stored key in the vault and return it."""
        credential = self.get_token_credential()
        try:
            raw = _raw_url_b64decode(self.encrypted_key)
        except ValueError as exc:
            log.info("Decryption failed %s", self._log_fields())
            raise AzureKeyVaultError(
                f"failed to base64 decode Azure Key Vault encrypted key: {exc}"
            ) from exc
        try:
            result = self._call(credential, "decrypt", raw)
        except Exception as exc:
            log.info("Decryption failed %s", self._log_fields())
            raise AzureKeyVaultError(
                f"failed to decrypt sops data key with Azure Key Vault key "
                f"'{self.to_string()}': {exc}"
            ) from exc
        log.info("Decryption succeeded %s", self._log_fields())
        return result

    def _created_utc(self) -> datetime:
        if self.creation_date.tzinfo is None:
            return self.creation_date.replace(tzinfo=timezone.utc)
        return self.creation_date.astimezone(timezone.utc)

    def needs_rotation(self) -> bool:
        return datetime.now(timezone.utc) - self._created_utc() > AZKV_TTL

    def to_string(self) -> str:
        return f"{self.vault_url}/keys/{self.name}/{self.version}"

    def to_map(self) -> dict[str, Any]:
        return {
            "vaultUrl": self.vault_url,
            "key": self.name,
            "version": self.version,
            "created_at": self._created_utc().strftime("%Y-%m-%dT%H:%M:%SZ"),
            "enc": self.encrypted_key,
        }

    def get_token_credential(self) -> Any:
        """Return the injected credential, or one configured from the environment."""
        if self.token_credential is None:
            return EnvironmentCredential()
        return self.token_credential


def new_master_key(vault_url: str, key_name: str, key_version: str) -> MasterKey:
    return MasterKey(vault_url=vault_url, name=key_name, version=key_version)


def new_master_key_from_url(url: str) -> MasterKey:
    """Parse ``{vaultUrl}/keys/{keyName}/{keyVersion}`` into a master key."""
    match = _URL_RE.match(url)
    if match is None:
        raise AzureKeyVaultError(f"could not parse {url!r} into a valid Azure Key Vault MasterKey")
    return new_master_key(*match.groups())


def master_keys_from_urls(urls: str) -> list[MasterKey]:
    if not urls:
        return []
    return [new_master_key_from_url(u) for u in urls.split(",")]