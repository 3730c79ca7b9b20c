from __future__ import annotations

from pathlib import Path
from typing import Iterable


def parse_key_value_lines(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``key=value`` and ``key: value`` lines.

    Blank lines and lines starting with ``#`` are ignored, as are lines with
    neither separator. For ``:`` lines an inline ``#`` comment is dropped.
    Surrounding single or double quotes are stripped from values; later keys
    override earlier ones.
    """
    result: dict[str, str] = {}
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        key, separator, value = line.partition("=")
        if not separator:
            key, separator, value = line.partition(":")
            if not separator:
                continue
            value = value.split("#", 1)[0]

        result[key.strip()] = value.strip().strip("'\"")
    return result


def read_key_value_file(path: str | Path) -> dict[str, str]:
    with Path(path).open(encoding="utf-8") as handle:
        return parse_key_value_lines(handle)
