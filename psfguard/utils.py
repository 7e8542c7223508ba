"""Small string helpers used when listing images."""

from __future__ import annotations

import json
import re

_PATH_SEPARATORS = re.compile(r"[\\/]")


def truncate_string(s: str, max_len: int) -> str:
    """Return ``s`` shortened to ``max_len`` characters, ending in '...' if cut."""
    if len(s) <= max_len:
        return s
    if max_len < 3:
        raise ValueError(f"max_len must be at least 3 to truncate, got {max_len}")
    return s[: max_len - 3] + "..."


def extract_filename(metadata: str) -> str | None:
    """Return the bare file name from the ``FileName`` field of a JSON document.

    Both Windows and POSIX separators are recognised. Returns ``None`` when the
    text is not JSON, is not an object, or has no string ``FileName``.
    """
    try:
        document = json.loads(metadata)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(document, dict):
        return None
    path = document.get("FileName")
    if not isinstance(path, str):
        return None
    return _PATH_SEPARATORS.split(path)[-1]