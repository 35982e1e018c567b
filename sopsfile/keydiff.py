"""Differences between two lists of key groups."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from itertools import zip_longest
from typing import Any, Iterable, Sequence, TextIO

_UNDERLINE = "\x1b[4m"
_GREEN = "\x1b[32m"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


@dataclass
class Diff:
    """Keys common to, added to and removed from one key group."""

    common: list[Any] = field(default_factory=list)
    added: list[Any] = field(default_factory=list)
    removed: list[Any] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def _diff_group(our_group: Iterable[Any], their_group: Iterable[Any]) -> Diff:
    ours = list(our_group)
    theirs = list(their_group)
    our_keys = {key.to_string() for key in ours}
    their_keys = {key.to_string() for key in theirs}
    diff = Diff()
    for key in theirs:
        (diff.common if key.to_string() in our_keys else diff.added).append(key)
    diff.removed = [key for key in ours if key.to_string() not in their_keys]
    return diff


def diff_key_groups(ours: Sequence[Iterable[Any]], theirs: Sequence[Iterable[Any]]) -> list[Diff]:
    """Compare key groups position by position, matching keys by their string form."""
    return [_diff_group(o or (), t or ()) for o, t in zip_longest(ours, theirs)]


def pretty_print_diffs(diffs: Iterable[Diff], stream: TextIO | None = None) -> None:
    """Write the diffs, coloured when ``stream`` is a terminal."""
    out = stream if stream is not None else sys.stdout
    isatty = getattr(out, "isatty", None)
    colour = bool(callable(isatty) and isatty())

    def paint(code: str, text: str) -> str:
        return f"{code}{text}{_RESET}" if colour else text

    for number, diff in enumerate(diffs, start=1):
        out.write(paint(_UNDERLINE, f"Group {number}") + "\n")
        for key in diff.common:
            out.write(f"    {key.to_string()}\n")
        for key in diff.added:
            out.write(paint(_GREEN, f"+++ {key.to_string()}") + "\n")
        for key in diff.removed:
            out.write(paint(_RED, f"--- {key.to_string()}") + "\n")