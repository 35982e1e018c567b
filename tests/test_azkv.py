import base64
import json
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from sopsfile import azkv
from sopsfile.azkv import (
    AZKV_TTL,
    AzureKeyVaultError,
    EnvironmentCredential,
    MasterKey,
    TokenCredential,
    master_keys_from_urls,
    new_master_key,
    new_master_key_from_url,
)

MOCK_AZURE_URL = "https://test.vault.azure.net/keys/test-key/a2a690a4fcc04166b739da342a912c90"


class _StaticCredential:
    def __init__(self):
        self.scopes = []

    def get_token(self, scope):
        self.scopes.append(scope)
        return "token"


class _FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def _b64(data):
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _unb64(text):
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class _FakeVault:
    """Reverses bytes to 'encrypt' and reverses again to 'decrypt'."""

    def __init__(self):
        self.calls = []

    def __call__(self, url, json=None, headers=None, timeout=None, **kwargs):
        self.calls.append((url, json, headers))
        value = _unb64(json["value"])
        return _FakeResponse({"kid": url, "value": _b64(value[::-1])})


@pytest.mark.parametrize(
    "url,expected",
    [
        (
            "https://test.vault.azure.net/keys/test-key/a2a690a4fcc04166b739da342a912c90",
            ("https://test.vault.azure.net", "test-key", "a2a690a4fcc04166b739da342a912c90"),
        ),
        ("https://test.vault.azure.net/no-keys-here/test-key/a2a690a4fcc04166b739da342a912c90", None),
    ],
)
def test_new_master_key_from_url(url, expected):
    if expected is None:
        with pytest.raises(AzureKeyVaultError):
            new_master_key_from_url(url)
    else:
        key = new_master_key_from_url(url)
        assert (key.vault_url, key.name, key.version) == expected
        assert isinstance(key.creation_date, datetime)


@pytest.mark.parametrize(
    "urls,expected",
    [
        (
            "https://test.vault.azure.net/keys/test-key/a2a690a4fcc04166b739da342a912c90",
            [("https://test.vault.azure.net", "test-key", "a2a690a4fcc04166b739da342a912c90")],
        ),
        (
            "https://test.vault.azure.net/keys/test-key/a2a690a4fcc04166b739da342a912c90,"
            "https://test2.vault.azure.net/keys/another-test-key/cf0021e8b743453bae758e7fbf71b60e",
            [
                ("https://test.vault.azure.net", "test-key", "a2a690a4fcc04166b739da342a912c90"),
                ("https://test2.vault.azure.net", "another-test-key", "cf0021e8b743453bae758e7fbf71b60e"),
            ],
        ),
        ("", []),
    ],
)
def test_master_keys_from_urls(urls, expected):
    keys = master_keys_from_urls(urls)
    assert [(k.vault_url, k.name, k.version) for k in keys] == expected


def test_master_keys_from_urls_one_malformed():
    with pytest.raises(AzureKeyVaultError):
        master_keys_from_urls(
            "https://test.vault.azure.net/keys/test-key/a2a690a4fcc04166b739da342a912c90,"
            "https://test.vault.azure.net/no-keys-here/test-key/a2a690a4fcc04166b739da342a912c90"
        )


def test_token_credential_apply_to_master_key():
    credential = _StaticCredential()
    key = MasterKey()
    TokenCredential(credential).apply_to_master_key(key)
    assert key.token_credential is credential


def test_encrypted_data_key():
    key = MasterKey(encrypted_key="some key")
    assert key.encrypted_data_key() == b"some key"


def test_set_encrypted_data_key():
    key = MasterKey()
    key.set_encrypted_data_key(b"encrypted")
    assert key.encrypted_key == "encrypted"


def test_encrypt_fails_when_vault_unreachable():
    key = new_master_key_from_url(MOCK_AZURE_URL)
    TokenCredential(_StaticCredential()).apply_to_master_key(key)
    with mock.patch("requests.post", side_effect=requests.ConnectionError("unreachable")):
        with pytest.raises(AzureKeyVaultError, match="failed to encrypt sops data key with Azure Key Vault key"):
            key.encrypt(b"some data")
    assert key.encrypted_key == ""


def test_encrypt_if_needed_already_encrypted():
    key = new_master_key_from_url(MOCK_AZURE_URL)
    key.encrypted_key = "encrypted"
    with mock.patch("requests.post", side_effect=AssertionError("no request expected")):
        key.encrypt_if_needed(b"other data")
    assert key.encrypted_key == "encrypted"


def test_encrypt_decrypt_round_trip_against_fake_vault():
    key = new_master_key_from_url(MOCK_AZURE_URL)
    credential = _StaticCredential()
    TokenCredential(credential).apply_to_master_key(key)
    vault = _FakeVault()
    with mock.patch("requests.post", side_effect=vault):
        key.encrypt(b"the earth is round")
        assert key.encrypted_key == _b64(b"the earth is round"[::-1])
        assert key.decrypt() == b"the earth is round"
    url, body, headers = vault.calls[0]
    assert url == MOCK_AZURE_URL + "/encrypt?api-version=7.4"
    assert body["alg"] == "RSA-OAEP-256"
    assert headers["Authorization"] == "Bearer token"
    assert vault.calls[1][0] == MOCK_AZURE_URL + "/decrypt?api-version=7.4"
    assert credential.scopes[0] == "https://vault.azure.net/.default"


def test_decrypt_rejects_invalid_base64():
    key = new_master_key_from_url(MOCK_AZURE_URL)
    key.encrypted_key = "not*base64"
    TokenCredential(_StaticCredential()).apply_to_master_key(key)
    with pytest.raises(AzureKeyVaultError, match="failed to base64 decode"):
        key.decrypt()


def test_decrypt_reports_http_error():
    key = new_master_key_from_url(MOCK_AZURE_URL)
    key.encrypted_key = _b64(b"data")
    TokenCredential(_StaticCredential()).apply_to_master_key(key)
    with mock.patch("requests.post", return_value=_FakeResponse({"error": "denied"}, 403)):
        with pytest.raises(AzureKeyVaultError, match="failed to decrypt sops data key"):
            key.decrypt()


def test_needs_rotation():
    key = new_master_key("", "", "")
    assert key.needs_rotation() is False
    key.creation_date = key.creation_date - (AZKV_TTL + timedelta(seconds=1))
    assert key.needs_rotation() is True


def test_to_string():
    key = new_master_key("https://test.vault.azure.net", "key-name", "key-version")
    assert key.to_string() == "https://test.vault.azure.net/keys/key-name/key-version"


def test_to_map():
    key = MasterKey(
        creation_date=datetime(2016, 10, 31, 10, 0, 0, tzinfo=timezone.utc),
        vault_url="https://test.vault.azure.net",
        name="test-key",
        version="1",
        encrypted_key="this is encrypted",
    )
    assert key.to_map() == {
        "vaultUrl": "https://test.vault.azure.net",
        "key": "test-key",
        "version": "1",
        "enc": "this is encrypted",
        "created_at": "2016-10-31T10:00:00Z",
    }


def test_get_token_credential_with_injected_credential():
    credential = _StaticCredential()
    key = MasterKey()
    TokenCredential(credential).apply_to_master_key(key)
    assert key.get_token_credential() is credential


def test_get_token_credential_default(monkeypatch):
    for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    got = MasterKey().get_token_credential()
    assert isinstance(got, EnvironmentCredential)
    with pytest.raises(AzureKeyVaultError, match="AZURE_TENANT_ID"):
        got.get_token("https://vault.azure.net/.default")


def test_environment_credential_fetches_and_caches_token():
    credential = EnvironmentCredential(
        tenant_id="tenant", client_id="client", client_secret="secret",
        authority_host="https://login.example.com",
    )
    response = _FakeResponse({"access_token": "token", "expires_in": 3600})
    with mock.patch("requests.post", return_value=response) as post:
        assert credential.get_token("https://vault.azure.net/.default") == "token"
        assert credential.get_token("https://vault.azure.net/.default") == "token"
    assert post.call_count == 1
    args, kwargs = post.call_args
    assert args[0] == "https://login.example.com/tenant/oauth2/v2.0/token"
    assert kwargs["data"]["grant_type"] == "client_credentials"
    assert kwargs["data"]["scope"] == "https://vault.azure.net/.default"


def test_environment_credential_token_failure():
    credential = EnvironmentCredential(
        tenant_id="tenant", client_id="client", client_secret="secret",
        authority_host="https://login.example.com",
    )
    with mock.patch("requests.post", return_value=_FakeResponse({"error": "bad"}, 401)):
        with pytest.raises(AzureKeyVaultError, match="failed to obtain Azure access token"):
            credential.get_token("https://vault.azure.net/.default")


def test_scope_derived_from_vault_host():
    assert azkv._scope_for_vault("https://test2.vault.azure.net") == "https://vault.azure.net/.default"