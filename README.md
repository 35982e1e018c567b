# sopsfile

`sopsfile` provides the pieces needed to work with encrypted secrets files.
Each value is encrypted on its own with AES-256-GCM under a data key, and the
data key is protected by one or more master keys (age recipients or Azure Key
Vault keys). Alongside those come helpers for detecting file formats,
comparing key groups, passing audit events to auditors, editing files in an
external editor and running commands with decrypted content.

## Installation

Install the package with your usual Python package installer. The runtime
dependencies are `cryptography`, `requests` and `pyyaml`; the `test` extra
adds `pytest` and `hypothesis`.

## Encrypting values

`sopsfile.aes.Cipher` encrypts `str`, `int`, `float`, `bool` and
`sopsfile.aes.Comment` values into the
`ENC[AES256_GCM,data:...,iv:...,tag:...,type:...]` form, and decrypts them
back to the original Python type. The additional data string (usually the
path of the value in the document) is authenticated along with the value.
Failures raise `sopsfile.aes.CipherError`.

```python
import os
from sopsfile.aes import Cipher, CipherError

data_key = os.urandom(32)
cipher = Cipher()

encrypted = cipher.encrypt("hunter", data_key, "db:user:")
assert cipher.decrypt(encrypted, data_key, "db:user:") == "hunter"

try:
    cipher.decrypt(encrypted, data_key, "other:path:")
except CipherError as exc:
    print("rejected:", exc)
```

Empty strings and empty comments encrypt to an empty string, and an empty
string decrypts to an empty string. A `Cipher` remembers the nonce of every
value it decrypted, so decrypting and re-encrypting an unchanged value under
the same additional data with the same instance gives the same ciphertext.

## Master keys with age

`sopsfile.age` wraps the data key for age X25519 recipients.

```python
from sopsfile.age import MasterKey, ParsedIdentities, master_keys_from_recipients

keys = master_keys_from_recipients(recipients_text)   # comma separated age1... keys
for key in keys:
    key.encrypt_if_needed(data_key)
    print(key.to_map())   # {"recipient": ..., "enc": "-----BEGIN AGE ENCRYPTED FILE-----..."}

identities = ParsedIdentities()
identities.import_identities(identity_text)           # AGE-SECRET-KEY-1... lines
reader = MasterKey()
reader.set_encrypted_data_key(keys[0].encrypted_data_key())
identities.apply_to_master_key(reader)
assert reader.decrypt() == data_key
```

Problems raise `sopsfile.age.AgeKeyError`. When no identities have been
applied, `MasterKey.decrypt` loads them with `MasterKey.load_identities`
from:

- `SOPS_AGE_KEY` – one or more identities, one per line;
- `SOPS_AGE_KEY_FILE` – the path of a file of identities;
- `sops/age/keys.txt` inside the directory returned by
  `sopsfile.age.user_config_dir()` (`XDG_CONFIG_HOME` is honoured, on macOS
  too).

The age format itself – X25519 recipients and identities, `encrypt`,
`decrypt`, `armor` and `dearmor` – is in `sopsfile.agecrypt`.

## Master keys in Azure Key Vault

```python
from sopsfile.azkv import new_master_key_from_url

key = new_master_key_from_url("https://vault.example.com/keys/app-key/1")
print(key.to_string())           # https://vault.example.com/keys/app-key/1
key.encrypt(data_key)            # RSA-OAEP-256 through the Key Vault REST API
assert key.decrypt() == data_key
```

`master_keys_from_urls` accepts a comma separated list. By default a key
authenticates with `EnvironmentCredential`, which uses `AZURE_TENANT_ID`,
`AZURE_CLIENT_ID`, `AZURE_CLIENT_SECRET` and optionally
`AZURE_AUTHORITY_HOST`; any object with a `get_token(scope)` method can be
attached instead with `TokenCredential(credential).apply_to_master_key(key)`.
A key reports `needs_rotation()` once it is older than 180 days. Failures
raise `AzureKeyVaultError`.

## File formats

`sopsfile.formats` maps paths and format names to a `Format`
(`BINARY`, `DOTENV`, `INI`, `JSON`, `YAML`). `.yaml`/`.yml`, `.json`, `.env`
and `.ini` are recognised, anything else is binary, and a format name given to
`format_for_path_or_string` takes precedence over the extension.

## Key group differences

```python
import sys
from sopsfile.keydiff import diff_key_groups, pretty_print_diffs

diffs = diff_key_groups(current_groups, configured_groups)
if any(diff.changed for diff in diffs):
    pretty_print_diffs(diffs, sys.stdout)
```

Each `Diff` lists the keys common to, added to and removed from one group,
compared by their `to_string()` form. Output is coloured only when the stream
is a terminal.

## Auditing

```python
from sopsfile.audit import Auditor, EncryptEvent, register, submit_event

class PrintAuditor(Auditor):
    def handle(self, event):
        print("audit:", event.action, event.file)

register(PrintAuditor())
submit_event(EncryptEvent(file="secrets.yaml"))
```

`load_postgres_connection_strings(path)` reads the
`backends.postgres[].connection_string` entries of an audit configuration
YAML file (by default `/etc/sops/audit.yaml`); a missing file gives an empty
list and a malformed one raises `ValueError`.

## Running commands with decrypted data

`sopsfile.execute` runs a shell command (`/bin/sh -c`, or `cmd.exe /C` on
Windows) with an `ExecOptions`:

- `exec_with_env` adds the `KEY=VALUE` lines of the plaintext to the
  command's environment (`env_from_plaintext` does the parsing);
- `exec_with_file` writes the plaintext to a FIFO, or with `fifo=False` to a
  temporary file, and replaces `{}` in the command with its path.

With `background=True` the command is started and its `Popen` returned;
otherwise a failing command raises `subprocess.CalledProcessError`. Setting
`user` switches the process to that user first (not on Windows).

## Editing

`sopsfile.editor.run_editor(path)` opens a file in `$EDITOR` (split like a
shell command line), falling back to `vim`, `nano` or `vi`, and raises
`EditorNotFoundError` when none is found. `hash_file(path)` returns the
SHA-256 digest of a file, for telling whether an edit changed it.

## What this package does not do

- It has no command-line program; everything is used from Python.
- It does not read or write whole documents: there are no YAML, JSON, dotenv,
  INI or binary document loaders, no tree of values and no MAC over a
  document. `formats` only tells which format a path or name refers to.
- It has only age and Azure Key Vault master keys, and no key service.
- It defines no exit-status codes.
- It does not write audit events to a database; it reads the configured
  connection strings and leaves storing events to the auditors you register.