"""``.env`` file parsing for container environments.

A stack directory may hold a ``.env`` file whose variables are passed to
every function container. Parsing is pure Python and handles comments,
``export`` prefixes and quoted values.
"""

from __future__ import annotations

import re
from pathlib import Path

ENV_FILE = ".env"

_VAR_RE = re.compile(
    r"""
    ^\s*
    (?:export\s+)?            # optional "export " prefix
    (?P<key>[A-Za-z_]\w*)
    \s*=\s*
    (?P<value>.*)
    $
    """,
    re.VERBOSE,
)


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse *path* into a ``{key: value}`` mapping.

    Returns an empty mapping when the file does not exist. Lines that are
    not ``KEY=VALUE`` assignments are skipped.
    """
    if not path.is_file():
        return {}

    result: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _VAR_RE.match(line)
        if match is None:
            continue
        value = match.group("value").strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        elif " #" in value:
            value = value[: value.index(" #")].rstrip()
        result[match.group("key")] = value
    return result


__all__ = ["ENV_FILE", "parse_env_file"]
