"""Cryptographic digests reported as artifact metadata."""

from __future__ import annotations

import hashlib
from typing import Callable, Dict, Tuple

# Title shown in the report -> hashlib constructor name.
DIGESTS: Tuple[Tuple[str, str], ...] = (
    ("MD5", "md5"),
    ("SHA1", "sha1"),
    ("SHA256", "sha256"),
)


def _hexdigest(algorithm: str) -> Callable[[bytes], str]:
    def _digest(data: bytes) -> str:
        return hashlib.new(algorithm, data).hexdigest()

    _digest.__name__ = algorithm
    return _digest


md5 = _hexdigest("md5")
sha1 = _hexdigest("sha1")
sha256 = _hexdigest("sha256")

_BY_TITLE: Dict[str, Callable[[bytes], str]] = {"MD5": md5, "SHA1": sha1, "SHA256": sha256}


def digest(title: str, data: bytes) -> str:
    """Return the hex digest registered under ``title`` (``MD5``, ``SHA1`` or ``SHA256``)."""
    try:
        return _BY_TITLE[title.upper()](data)
    except KeyError:
        raise ValueError(f"Unsupported digest: {title}") from None


__all__ = ["DIGESTS", "digest", "md5", "sha1", "sha256"]
