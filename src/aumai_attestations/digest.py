"""SHA-256 content digests shared by the builder and the verifier."""

from __future__ import annotations

import hashlib
from pathlib import Path

_CHUNK_SIZE = 65536


def digest(contents: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of *contents*."""
    return hashlib.sha256(contents).hexdigest()


def digest_file(file_path: str | Path) -> str:
    """Return the hex-encoded SHA-256 digest of the file at *file_path*."""
    hasher = hashlib.sha256()
    with Path(file_path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


__all__ = ["digest", "digest_file"]
