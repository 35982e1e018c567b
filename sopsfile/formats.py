"""File formats and their detection from paths and option strings."""

from __future__ import annotations

from enum import IntEnum


class Format(IntEnum):
    """A document format."""

    BINARY = 0
    DOTENV = 1
    INI = 2
    JSON = 3
    YAML = 4


_STRING_TO_FORMAT = {
    "binary": Format.BINARY,
    "dotenv": Format.DOTENV,
    "ini": Format.INI,
    "json": Format.JSON,
    "yaml": Format.YAML,
}


def format_from_string(format_string: str) -> Format:
    """Return the format named by ``format_string``, or BINARY if unknown."""
    return _STRING_TO_FORMAT.get(format_string, Format.BINARY)


def is_yaml_file(path: str) -> bool:
    return path.endswith((".yaml", ".yml"))


def is_json_file(path: str) -> bool:
    return path.endswith(".json")


def is_env_file(path: str) -> bool:
    return path.endswith(".env")


def is_ini_file(path: str) -> bool:
    return path.endswith(".ini")


def format_for_path(path: str) -> Format:
    """Guess the format from the file extension, defaulting to BINARY."""
    if is_yaml_file(path):
        return Format.YAML
    if is_json_file(path):
        return Format.JSON
    if is_env_file(path):
        return Format.DOTENV
    if is_ini_file(path):
        return Format.INI
    return Format.BINARY


def format_for_path_or_string(path: str, format_string: str) -> Format:
    """Use ``format_string`` if it names a format, else guess from ``path``."""
    found = _STRING_TO_FORMAT.get(format_string)
    return found if found is not None else format_for_path(path)