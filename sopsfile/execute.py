"""Run commands with decrypted content exposed as a temporary file or as environment variables."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from typing import Union

log = logging.getLogger("sopsfile.exec")

_IS_WINDOWS = sys.platform == "win32"

RunResult = Union["subprocess.CompletedProcess[bytes]", "subprocess.Popen[bytes]"]


@dataclass
class ExecOptions:
    """How to run a command against decrypted content."""

    command: str
    plaintext: bytes = b""
    background: bool = False
    fifo: bool = True
    user: str = ""
    filename: str = "tmp-file"


def build_command(command: str) -> list[str]:
    """Return the argument vector that runs ``command`` through the system shell."""
    if _IS_WINDOWS:
        return ["cmd.exe", "/C", command]
    return ["/bin/sh", "-c", command]


def get_pipe(directory: str, filename: str) -> str:
    """Create a named pipe called ``filename`` in ``directory`` and return its path."""
    if _IS_WINDOWS:
        raise OSError("fifos are not available on windows")
    path = os.path.join(directory, filename)
    os.mkfifo(path, 0o600)
    return path


def write_pipe(pipe: str, contents: bytes) -> None:
    """Write ``contents`` into an existing named pipe; blocks until a reader opens it."""
    if _IS_WINDOWS:
        raise OSError("fifos are not available on windows")
    try:
        fd = os.open(pipe, os.O_WRONLY)
    except OSError:
        try:
            os.remove(pipe)
        except OSError:
            pass
        raise
    with os.fdopen(fd, "wb") as handle:
        handle.write(contents)


def switch_user(username: str) -> None:
    """Drop the process's identity to that of ``username``.

    Raises KeyError when the user does not exist.
    """
    if _IS_WINDOWS:
        raise OSError("user switching not available on windows")
    import pwd

    uid = pwd.getpwnam(username).pw_uid
    os.setgid(uid)
    os.setuid(uid)
    os.setreuid(uid, uid)
    os.setregid(uid, uid)


def env_from_plaintext(plaintext: bytes) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, skipping empty lines and ``#`` comments.

    Later assignments of the same name win.
    """
    env: dict[str, str] = {}
    for raw in plaintext.split(b"\n"):
        if not raw or raw.startswith(b"#"):
            continue
        name, sep, value = raw.decode("utf-8", "surrogateescape").partition("=")
        if not sep:
            continue
        env[name] = value
    return env


def _run(argv: list[str], env: dict[str, str], background: bool) -> RunResult:
    if background:
        return subprocess.Popen(
            argv,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    return subprocess.run(argv, env=env, check=True)


def exec_with_file(opts: ExecOptions) -> RunResult:
    """Run the command with ``{}`` replaced by the path of a file holding the plaintext.

    Raises subprocess.CalledProcessError when a foreground command fails.
    """
    if opts.user:
        switch_user(opts.user)

    use_fifo = opts.fifo
    if _IS_WINDOWS and use_fifo:
        log.warning("no fifos on windows, use --no-fifo next time")
        use_fifo = False

    with tempfile.TemporaryDirectory(prefix=".sops") as directory:
        if use_fifo:
            filename = get_pipe(directory, opts.filename)
            writer = threading.Thread(
                target=write_pipe, args=(filename, opts.plaintext), daemon=True
            )
            writer.start()
        else:
            fd, filename = tempfile.mkstemp(prefix=opts.filename, dir=directory)
            with os.fdopen(fd, "wb") as handle:
                handle.write(opts.plaintext)

        command = opts.command.replace("{}", filename)
        return _run(build_command(command), dict(os.environ), opts.background)


def exec_with_env(opts: ExecOptions) -> RunResult:
    """Run the command with the plaintext's ``KEY=VALUE`` lines added to the environment.

    Raises subprocess.CalledProcessError when a foreground command fails.
    """
    if opts.user:
        switch_user(opts.user)

    env = dict(os.environ)
    env.update(env_from_plaintext(opts.plaintext))
    return _run(build_command(opts.command), env, opts.background)