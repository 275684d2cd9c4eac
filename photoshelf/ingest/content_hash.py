from __future__ import annotations

import re
from hashlib import sha256
from pathlib import Path
from typing import BinaryIO

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "compute_sha256",
    "sha256_stream",
    "is_content_hash",
]

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def sha256_stream(handle: BinaryIO, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Return a hexadecimal SHA256 digest of everything left in ``handle``.

    Args:
        handle: A binary stream positioned at the first byte to hash.
        chunk_size: The chunk size to use when reading the stream.

    Returns:
        The hexadecimal SHA256 digest.
    """
    digest = sha256()
    while chunk := handle.read(chunk_size):
        digest.update(chunk)
    return digest.hexdigest()


def compute_sha256(path: Path, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Return a hexadecimal SHA256 digest for the file.

    The file is streamed, so arbitrarily large videos never sit in memory.
    ``OSError`` from opening or reading propagates to the caller.

    Args:
        path: The path to the file.
        chunk_size: The chunk size to use when reading the file.

    Returns:
        The hexadecimal SHA256 digest.
    """
    with path.open("rb") as handle:
        return sha256_stream(handle, chunk_size=chunk_size)


def is_content_hash(value: str) -> bool:
    return bool(_HEX_DIGEST.match(value))
