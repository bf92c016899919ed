"""Content digests used to decide whether an installed file is still ours."""

from __future__ import annotations

import hashlib
from pathlib import Path

_CHUNK = 1024 * 1024


def checksum(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def file_checksum(path: str | Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def matches(path: str | Path, expected: str) -> bool:
    """True iff ``path`` is an existing regular file whose digest equals ``expected``."""
    p = Path(path)
    if not p.is_file():
        return False
    return file_checksum(p) == str(expected).lower()
