"""Archive integrity checksums."""

from __future__ import annotations

import hashlib
import hmac
import pathlib
from typing import Union

from caskit.core.logging_manager import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 65536
ALGORITHM = "SHA-256"


def generate_checksum(path: Union[str, pathlib.Path]) -> str:
    """Hex encoded SHA-256 digest of a file's bytes.

    Raises:
        OSError: If the file cannot be read
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_checksum(path: Union[str, pathlib.Path], expected: str) -> bool:
    """Check a file against an expected hex digest.

    An unreadable file does not match.
    """
    try:
        actual = generate_checksum(path)
    except OSError as e:
        logger.error("Failed to verify checksum", path=str(path), error=str(e))
        return False
    return hmac.compare_digest(actual, expected.strip().lower())
