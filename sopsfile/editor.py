"""Launching the user's editor on a file and detecting whether it changed."""

from __future__ import annotations

import hashlib
import os
import shlex
import shutil
import subprocess

DEFAULT_EDITORS = ("vim", "nano", "vi")
_READ_SIZE = 64 * 1024


class EditorNotFoundError(Exception):
    """Raised when no editor can be found to open a file with."""


def hash_file(path: str | os.PathLike[str]) -> bytes:
    """Return the SHA-256 digest of the file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(_READ_SIZE), b""):
            digest.update(block)
    return digest.digest()


def lookup_any_editor(*args: str) -> str:
    """Return the full path of the first of the named editors found on PATH."""
    for name in args:
        found = shutil.which(name)
        if found is not None:
            return found
    raise EditorNotFoundError(
        "no editor available: sops attempts to use the editor defined in the "
        "EDITOR environment variable, and if that's not set defaults to any of "
        f"{', '.join(args)}, but none of them could be found"
    )


def run_editor(path: str | os.PathLike[str]) -> None:
    """Open ``path`` in $EDITOR, or in the first of vim, nano and vi that exists.

    The editor shares the terminal with this process. Raises ValueError for an
    $EDITOR that cannot be split into words, EditorNotFoundError when no
    default editor exists, and subprocess.CalledProcessError when the editor
    exits with a failure status.
    """
    editor = os.environ.get("EDITOR", "")
    if not editor:
        argv = [lookup_any_editor(*DEFAULT_EDITORS), os.fspath(path)]
    else:
        try:
            parts = shlex.split(editor)
        except ValueError as exc:
            raise ValueError(f"invalid $EDITOR: {editor}") from exc
        if not parts:
            raise ValueError(f"invalid $EDITOR: {editor}")
        argv = [*parts, os.fspath(path)]
    subprocess.run(argv, check=True)